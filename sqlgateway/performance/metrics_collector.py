import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional

import psutil

from sqlgateway.database.connection_manager import ConnectionManager
from sqlgateway.events import EventBus, EventType, QueryExecutedEvent, QueryFailedEvent
from sqlgateway.performance.models import (
    ConnectionPoolSnapshot,
    PerformanceMetric,
    PerformanceThresholds,
    QuerySnapshot,
    SystemSnapshot,
)

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 1000
THROUGHPUT_WINDOW = 60.0


@dataclass(frozen=True)
class QuerySample:
    recorded_at: float
    duration: float
    success: bool


class MetricsCollector:
    def __init__(self, connection_manager: ConnectionManager,
                 thresholds: Optional[PerformanceThresholds] = None,
                 event_bus: Optional[EventBus] = None,
                 buffer_size: int = DEFAULT_BUFFER_SIZE,
                 disk_path: str = "/",
                 clock: Callable[[], float] = time.monotonic,
                 process: Optional[psutil.Process] = None):
        self.connection_manager = connection_manager
        self.thresholds = thresholds or PerformanceThresholds()
        self.disk_path = disk_path
        self._clock = clock
        self._samples: Deque[QuerySample] = deque(maxlen=buffer_size)
        self._process = process or psutil.Process()
        self._cpu_count = psutil.cpu_count() or 1
        # first cpu_percent call only primes the counter
        self._sample_cpu()

        if event_bus is not None:
            event_bus.subscribe(EventType.QUERY_EXECUTED, self._on_query_executed)
            event_bus.subscribe(EventType.QUERY_FAILED, self._on_query_failed)

    def record_query(self, duration: float, success: bool = True) -> None:
        self._samples.append(QuerySample(recorded_at=self._clock(), duration=float(duration), success=success))

    def _on_query_executed(self, event: QueryExecutedEvent) -> None:
        self.record_query(event.execution_time, event.success)

    def _on_query_failed(self, event: QueryFailedEvent) -> None:
        self.record_query(event.execution_time, success=False)

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    def collect(self) -> PerformanceMetric:
        return PerformanceMetric(
            connection_pool=self.collect_pool(),
            queries=self.collect_queries(),
            system=self.collect_system(),
        )

    def collect_pool(self) -> ConnectionPoolSnapshot:
        status = self.connection_manager.get_pool_status()
        max_size = status.get("max", 0)
        active = status.get("active", 0)
        utilization = round(active / max_size * 100, 2) if max_size else 0.0
        return ConnectionPoolSnapshot(
            total=status.get("total", 0),
            active=active,
            idle=status.get("idle", 0),
            max_size=max_size,
            utilization=utilization,
        )

    def collect_queries(self) -> QuerySnapshot:
        samples = list(self._samples)
        if not samples:
            return QuerySnapshot()

        durations = [sample.duration for sample in samples]
        window_start = self._clock() - THROUGHPUT_WINDOW
        recent = sum(1 for sample in samples if sample.recorded_at >= window_start)
        failed = sum(1 for sample in samples if not sample.success)

        return QuerySnapshot(
            count=len(samples),
            slow_count=sum(1 for duration in durations if duration > self.thresholds.slow_query_ms),
            average_time=round(sum(durations) / len(durations), 3),
            min_time=min(durations),
            max_time=max(durations),
            throughput=round(recent / THROUGHPUT_WINDOW, 3),
            error_rate=round(failed / len(samples) * 100, 2),
        )

    def collect_system(self) -> SystemSnapshot:
        return SystemSnapshot(
            cpu_percent=self._sample_cpu(),
            memory_percent=self._sample(lambda: self._process.memory_percent(), "memory"),
            disk_percent=self._sample(lambda: psutil.disk_usage(self.disk_path).percent, "disk"),
        )

    def _sample_cpu(self) -> float:
        return self._sample(lambda: self._process.cpu_percent(interval=None) / self._cpu_count, "cpu")

    def _sample(self, reader: Callable[[], float], name: str) -> float:
        try:
            return round(min(max(float(reader()), 0.0), 100.0), 2)
        except (psutil.Error, OSError) as e:
            logger.warning(f"Could not sample {name} usage: {e}")
            return 0.0

    def reset(self) -> None:
        self._samples.clear()
