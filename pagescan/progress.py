"""Process-wide progress state for scan runs.

One ``ProgressStore`` is built at process start and handed to both the
orchestrator (writer) and the HTTP gateway (reader). Each run id owns its own
lock, so runs never contend with each other; the store-wide lock only guards
insertion and removal of keys.
"""
from __future__ import annotations

import copy
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from pagescan.errors import StoreKeyNotFound
from pagescan.models import Finding, ProgressEvent, Stage

LOGGER = logging.getLogger(__name__)

DEFAULT_CONSOLE_CAPACITY = 1000
DEFAULT_TTL = timedelta(hours=24)
DEFAULT_SWEEP_INTERVAL_SECONDS = 3600

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ConsoleEntry:
    seq: int
    timestamp: datetime
    line: str


@dataclass
class ProgressSnapshot:
    scan_id: str
    progress: ProgressEvent
    console_output: list[str]
    is_complete: bool
    error: str | None = None
    vulnerabilities: list[Finding] | None = None
    console_cursor: int = 0
    last_console_at: datetime | None = None

    @property
    def status(self) -> str:
        if not self.is_complete:
            return "scanning"
        return "failed" if self.error else "completed"


@dataclass
class _Entry:
    capacity: int
    progress: ProgressEvent = field(default_factory=lambda: ProgressEvent(Stage.INITIAL_CRAWL, 0, "Starting scan..."))
    is_complete: bool = False
    error: str | None = None
    vulnerabilities: list[Finding] | None = None
    seq: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)
    console: deque[ConsoleEntry] = field(init=False)

    def __post_init__(self) -> None:
        self.console = deque(maxlen=self.capacity)


class ProgressStore:
    def __init__(
        self,
        clock: Clock = utc_now,
        ttl: timedelta = DEFAULT_TTL,
        console_capacity: int = DEFAULT_CONSOLE_CAPACITY,
    ) -> None:
        self._clock = clock
        self._ttl = ttl
        self._capacity = console_capacity
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._sweeper: threading.Thread | None = None
        self._stop = threading.Event()

    @classmethod
    def from_settings(cls, settings: dict) -> "ProgressStore":
        progress = settings.get("progress", {})
        return cls(
            ttl=timedelta(hours=float(progress.get("ttl_hours", 24))),
            console_capacity=int(progress.get("console_capacity", DEFAULT_CONSOLE_CAPACITY)),
        )

    def _entry(self, scan_id: str, action: str) -> _Entry | None:
        with self._lock:
            entry = self._entries.get(scan_id)
        if entry is None:
            LOGGER.warning("Attempted to %s non-existent scan progress: %s", action, scan_id)
        return entry

    def init(self, scan_id: str) -> None:
        with self._lock:
            self._entries[scan_id] = _Entry(capacity=self._capacity)
        LOGGER.info("Initialized progress tracking for scan %s", scan_id)

    def has(self, scan_id: str) -> bool:
        with self._lock:
            return scan_id in self._entries

    def update(
        self,
        scan_id: str,
        stage: Stage | None = None,
        percent: int | None = None,
        message: str | None = None,
    ) -> None:
        entry = self._entry(scan_id, "update")
        if entry is None:
            return
        with entry.lock:
            current = entry.progress
            entry.progress = ProgressEvent(
                stage=stage if stage is not None else current.stage,
                percent=percent if percent is not None else current.percent,
                message=message if message is not None else current.message,
            )
        LOGGER.debug("Updated progress for scan %s: %s", scan_id, entry.progress)

    def publish(self, scan_id: str, event: ProgressEvent) -> None:
        self.update(scan_id, stage=event.stage, percent=event.percent, message=event.message)

    def append_console(self, scan_id: str, message: str) -> None:
        entry = self._entry(scan_id, "add console output to")
        if entry is None:
            return
        self._append(entry, message)

    def _append(self, entry: _Entry, message: str) -> None:
        now = self._clock()
        line = message if message.startswith("[") else f"[{now.isoformat()}] {message}"
        with entry.lock:
            entry.seq += 1
            entry.console.append(ConsoleEntry(seq=entry.seq, timestamp=now, line=line))

    def complete(self, scan_id: str, findings: list[Finding]) -> None:
        entry = self._entry(scan_id, "complete")
        if entry is None:
            return
        with entry.lock:
            entry.progress = ProgressEvent(Stage.COMPLETED, 100, "Scan completed successfully")
            entry.is_complete = True
            entry.vulnerabilities = list(findings)
        self._append(entry, f"Scan completed with {len(findings)} vulnerabilities found.")
        LOGGER.info("Marked scan %s as complete with %s vulnerabilities", scan_id, len(findings))

    def fail(self, scan_id: str, error: str) -> None:
        entry = self._entry(scan_id, "fail")
        if entry is None:
            return
        with entry.lock:
            entry.is_complete = True
            entry.error = error
        self._append(entry, f"Scan failed: {error}")
        LOGGER.info("Marked scan %s as failed: %s", scan_id, error)

    def get(self, scan_id: str) -> ProgressSnapshot | None:
        with self._lock:
            entry = self._entries.get(scan_id)
        if entry is None:
            return None
        with entry.lock:
            last = entry.console[-1] if entry.console else None
            return ProgressSnapshot(
                scan_id=scan_id,
                progress=entry.progress,
                console_output=[item.line for item in entry.console],
                is_complete=entry.is_complete,
                error=entry.error,
                vulnerabilities=copy.deepcopy(entry.vulnerabilities),
                console_cursor=entry.seq,
                last_console_at=last.timestamp if last else None,
            )

    def require(self, scan_id: str) -> ProgressSnapshot:
        snapshot = self.get(scan_id)
        if snapshot is None:
            raise StoreKeyNotFound(scan_id)
        return snapshot

    def console_since(self, scan_id: str, cursor: int) -> tuple[list[str], int]:
        """Lines appended after ``cursor``; lines already evicted are skipped."""
        with self._lock:
            entry = self._entries.get(scan_id)
        if entry is None:
            return [], cursor
        with entry.lock:
            lines = [item.line for item in entry.console if item.seq > cursor]
            return lines, entry.seq

    def cleanup(self, scan_id: str) -> None:
        with self._lock:
            removed = self._entries.pop(scan_id, None)
        if removed is not None:
            LOGGER.info("Cleaned up progress data for scan %s", scan_id)

    def sweep(self) -> int:
        cutoff = self._clock() - self._ttl
        with self._lock:
            candidates = list(self._entries.items())
        expired = []
        for scan_id, entry in candidates:
            with entry.lock:
                if not entry.is_complete or not entry.console:
                    continue
                if entry.console[-1].timestamp < cutoff:
                    expired.append(scan_id)
        for scan_id in expired:
            self.cleanup(scan_id)
        if expired:
            LOGGER.info("Progress sweep evicted %s scans", len(expired))
        return len(expired)

    def start_sweeper(self, interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS) -> None:
        if self._sweeper and self._sweeper.is_alive():
            return
        self._stop.clear()

        def _loop() -> None:
            while not self._stop.wait(interval_seconds):
                try:
                    self.sweep()
                except Exception:  # noqa: BLE001
                    LOGGER.exception("Progress sweep failed")

        self._sweeper = threading.Thread(target=_loop, name="progress-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._stop.set()
        if self._sweeper:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
