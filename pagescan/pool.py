from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

from pagescan.errors import ScanRejected

LOGGER = logging.getLogger(__name__)


class ScanPool:
    """Bounded executor for scan runs.

    Each run holds a whole browser process, so at most ``max_workers`` run at
    once and at most ``max_queued`` wait behind them. Anything beyond that is
    rejected rather than queued without limit.
    """

    def __init__(self, max_workers: int = 2, max_queued: int = 8) -> None:
        self.max_workers = max(1, int(max_workers))
        self.max_queued = max(0, int(max_queued))
        self._slots = threading.BoundedSemaphore(self.max_workers + self.max_queued)
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="page-scan")
        self._pending = 0
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> "ScanPool":
        execution = settings.get("execution", {})
        return cls(
            max_workers=int(execution.get("max_concurrent_scans", 2)),
            max_queued=int(execution.get("max_queued_scans", 8)),
        )

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._pending

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        if not self._slots.acquire(blocking=False):
            LOGGER.warning("Scan pool saturated (%s running, %s queued)", self.max_workers, self.max_queued)
            raise ScanRejected("Too many scans in progress, retry later")
        with self._lock:
            self._pending += 1
        try:
            return self._executor.submit(self._run, fn, args, kwargs)
        except RuntimeError:
            self._release()
            raise

    def _run(self, fn: Callable[..., Any], args: tuple, kwargs: dict) -> Any:
        try:
            return fn(*args, **kwargs)
        finally:
            self._release()

    def _release(self) -> None:
        with self._lock:
            self._pending -= 1
        self._slots.release()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
