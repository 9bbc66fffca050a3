"""
Calls with a deadline on a bounded worker pool.

A call that misses its deadline cannot be interrupted. If it has not started
yet it is cancelled; otherwise it keeps its worker until it returns, and is
tracked and logged as abandoned until then.
"""

from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeout
from typing import Any, Callable, Optional
import threading
import structlog

logger = structlog.get_logger(__name__)


class DeadlineRunner:
    """Bounded pool shared by every call of one service instance."""

    def __init__(self, name: str, max_workers: int):
        self.name = name
        self.max_workers = max_workers
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._abandoned: set[Future] = set()
        self._lock = threading.Lock()

    def call(self, fn: Callable[..., Any], *args, timeout: float, context: Optional[dict] = None) -> Any:
        """
        Run fn(*args) and wait at most `timeout` seconds.

        Raises:
            concurrent.futures.TimeoutError: Deadline missed
            Exception: Whatever fn raised
        """
        future = self._pool.submit(fn, *args)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout:
            self._abandon(future, context or {})
            raise

    @property
    def abandoned(self) -> int:
        """Timed-out calls still running."""
        with self._lock:
            return len(self._abandoned)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def _abandon(self, future: Future, context: dict) -> None:
        if future.cancel():
            logger.warning("deadline_call_cancelled", pool=self.name, **context)
            return

        with self._lock:
            self._abandoned.add(future)
            pending = len(self._abandoned)

        logger.warning(
            "deadline_call_abandoned",
            pool=self.name,
            abandoned=pending,
            max_workers=self.max_workers,
            **context
        )
        future.add_done_callback(lambda done: self._finished(done, context))

    def _finished(self, future: Future, context: dict) -> None:
        with self._lock:
            self._abandoned.discard(future)

        error = future.exception() if not future.cancelled() else None
        logger.info(
            "abandoned_call_finished",
            pool=self.name,
            error=str(error) if error else None,
            **context
        )
