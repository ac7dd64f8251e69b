from __future__ import annotations

import logging
from typing import Callable

from pagescan.models import ProgressEvent, Stage

LOGGER = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressEvent], None]


class ProgressChannel:
    """Single source of stage transitions for a run.

    Every listener receives the same ``ProgressEvent`` objects in the same
    order. Stages only move forward and the percentage never goes down;
    a lower percentage is raised to the last one emitted.
    """

    def __init__(self, listeners: list[ProgressListener] | None = None) -> None:
        self._listeners: list[ProgressListener] = list(listeners or [])
        self._last: ProgressEvent | None = None

    def subscribe(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    @property
    def last(self) -> ProgressEvent | None:
        return self._last

    @property
    def closed(self) -> bool:
        return self._last is not None and self._last.stage == Stage.COMPLETED

    def advance(self, stage: Stage, percent: int, message: str) -> ProgressEvent:
        if self.closed:
            raise ValueError("progress channel already reached the completed stage")
        percent = max(0, min(100, int(percent)))
        if self._last is not None:
            if stage.index < self._last.stage.index:
                raise ValueError(f"stage cannot move back from {self._last.stage.value} to {stage.value}")
            percent = max(percent, self._last.percent)
        event = ProgressEvent(stage=stage, percent=percent, message=message)
        self._last = event
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Progress listener failed for %s", event)
        return event

    def abort(self, message: str) -> ProgressEvent | None:
        if self.closed:
            return None
        return self.advance(Stage.COMPLETED, 100, message)
