import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300.0


@dataclass
class CacheEntry:
    key: Hashable
    value: Any
    stored_at: float
    ttl: float
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at >= self.ttl

    def age(self, now: float) -> float:
        return now - self.stored_at


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    entry_count: int = 0
    hit_rate: float = 0.0
    keys: List[str] = field(default_factory=list)

    def update_hit_rate(self):
        total = self.hits + self.misses
        self.hit_rate = self.hits / total if total > 0 else 0.0


class SchemaCache:
    def __init__(self, ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic):
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Hashable, CacheEntry] = {}
        self._stats = CacheStats()

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            return None

        if entry.is_expired(self._clock()):
            del self._entries[key]
            self._stats.misses += 1
            self._stats.evictions += 1
            logger.debug(f"Cache entry expired: {key}")
            return None

        entry.access_count += 1
        self._stats.hits += 1
        return entry.value

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            stored_at=self._clock(),
            ttl=ttl if ttl is not None else self.ttl,
        )

    def contains(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self._clock())

    def delete(self, key: Hashable) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        logger.info(f"Schema cache cleared ({count} entries)")
        return count

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> CacheStats:
        self._stats.entry_count = len(self._entries)
        self._stats.keys = [_format_key(key) for key in self._entries]
        self._stats.update_hit_rate()
        return self._stats


def _format_key(key: Hashable) -> str:
    if isinstance(key, tuple):
        return "_".join("all" if part is None else str(part) for part in key)
    return str(key)
