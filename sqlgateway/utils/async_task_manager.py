import asyncio
import logging
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Coroutine, Dict, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AsyncTaskManager:
    """Owns one event loop running on a background thread.

    Synchronous callers (the HTTP surface) submit coroutines through ``run`` so
    that every coroutine touching gateway state executes on the same loop.
    """

    def __init__(self, default_timeout: Optional[float] = 300.0, name: str = "sqlgateway-loop"):
        self.default_timeout = default_timeout
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._metrics = {
            "submitted": 0,
            "completed": 0,
            "failed": 0,
            "timed_out": 0,
        }

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise RuntimeError("AsyncTaskManager is not started")
        return self._loop

    def start(self) -> None:
        if self.is_running:
            return

        self._ready.clear()
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()
        self._ready.wait()
        logger.info("AsyncTaskManager started")

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.call_soon(self._ready.set)
        self._loop.run_forever()

    def run(self, coro: Coroutine[Any, Any, T], timeout: Optional[float] = None) -> T:
        if not self.is_running:
            coro.close()
            raise RuntimeError("AsyncTaskManager is not started")

        self._metrics["submitted"] += 1
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            result = future.result(timeout if timeout is not None else self.default_timeout)
        except FutureTimeoutError:
            future.cancel()
            self._metrics["timed_out"] += 1
            raise
        except Exception:
            self._metrics["failed"] += 1
            raise

        self._metrics["completed"] += 1
        return result

    def stop(self, timeout: float = 10.0) -> None:
        if not self.is_running:
            return

        loop = self._loop

        async def cancel_pending():
            current = asyncio.current_task()
            pending = [task for task in asyncio.all_tasks() if task is not current]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        try:
            asyncio.run_coroutine_threadsafe(cancel_pending(), loop).result(timeout)
        except FutureTimeoutError:
            logger.warning("Timed out cancelling pending tasks during shutdown")

        loop.call_soon_threadsafe(loop.stop)
        self._thread.join(timeout)
        loop.close()
        self._loop = None
        self._thread = None
        logger.info("AsyncTaskManager stopped")

    def get_metrics(self) -> Dict[str, int]:
        return dict(self._metrics)

    def __enter__(self) -> "AsyncTaskManager":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
