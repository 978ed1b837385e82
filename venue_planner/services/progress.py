"""Run-scoped progress tracking.

A ``ProgressTracker`` owns the single ``AiAnalysisProgress`` of one pipeline
run. Only the run writes to it; every write bumps ``last_updated`` and pushes a
copy to the publishers, so pollers never see the live object.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Callable, Sequence

from venue_planner.errors import ProgressRegressionError
from venue_planner.models.progress import (
    STEP_NAMES,
    STEP_PERCENTAGES,
    AiAnalysisProgress,
    AnalysisStep,
    utcnow,
)

log = logging.getLogger(__name__)


class ProgressPublisher:
    def publish(self, snapshot: AiAnalysisProgress) -> None:
        raise NotImplementedError


class ProgressTracker:
    def __init__(
        self,
        run_id: str,
        event_id: str,
        publishers: Sequence[ProgressPublisher] = (),
        clock: Callable = utcnow,
    ) -> None:
        self._clock = clock
        self._publishers = list(publishers)
        self._lock = threading.Lock()
        self._progress = AiAnalysisProgress(run_id=run_id, event_id=event_id, last_updated=clock())
        self._publish()

    @property
    def run_id(self) -> str:
        return self._progress.run_id

    def snapshot(self) -> AiAnalysisProgress:
        with self._lock:
            return copy.deepcopy(self._progress)

    def advance(self, step: AnalysisStep, **counters) -> None:
        """Move to ``step`` (same or later) and set step counters."""

        with self._lock:
            p = self._progress
            if step < p.current_step:
                raise ProgressRegressionError(
                    f"run {p.run_id}: cannot go back from step {int(p.current_step)} to {int(step)}"
                )
            p.current_step = step
            p.current_step_name = STEP_NAMES[step]
            p.progress_percentage = max(p.progress_percentage, STEP_PERCENTAGES[step])
            self._apply(counters)
        self._publish()

    def record(self, **counters) -> None:
        with self._lock:
            self._apply(counters)
        self._publish()

    def warn(self, message: str) -> None:
        with self._lock:
            self._progress.warnings.append(message)
            self._touch()
        self._publish()

    def fail(self, message: str) -> None:
        with self._lock:
            self._progress.failed = True
            self._progress.error = message
            self._touch()
        self._publish()

    def _apply(self, counters) -> None:
        for name, value in counters.items():
            if name in ("run_id", "event_id", "current_step", "progress_percentage", "last_updated"):
                raise AttributeError(f"{name} is managed by the tracker")
            if not hasattr(self._progress, name):
                raise AttributeError(f"unknown progress field {name!r}")
            setattr(self._progress, name, value)
        self._touch()

    def _touch(self) -> None:
        now = self._clock()
        if now < self._progress.last_updated:
            now = self._progress.last_updated
        self._progress.last_updated = now

    def _publish(self) -> None:
        if not self._publishers:
            return
        snap = self.snapshot()
        for pub in self._publishers:
            try:
                pub.publish(snap)
            except Exception as e:
                # observability only; the run carries on
                log.warning("Progress publish to %s failed: %s", type(pub).__name__, e)
