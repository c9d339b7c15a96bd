"""Unified progress reporting across heterogeneous sub-operations.

Model downloads, inference steps and ffmpeg invocations all report their own
0-100 progress. The ProgressReporter maps each of them into a band of the
run's single 0-100 scale, and enforces the two reporting invariants:

- progress never decreases within a run
- stages are entered in the fixed order, never skipped or repeated
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .events import EventBus, ProgressEvent, StageEvent
from .types import Stage

logger = logging.getLogger(__name__)

SubProgress = Callable[[float], None]

# Overall percentage band owned by each stage.
STAGE_BANDS: Dict[Stage, Tuple[float, float]] = {
    Stage.ANALYZING: (0.0, 10.0),
    Stage.INTERPOLATING: (10.0, 60.0),
    Stage.GENERATING: (60.0, 80.0),
    Stage.FINALIZING: (80.0, 100.0),
    Stage.COMPLETE: (100.0, 100.0),
}


@dataclass
class ProgressSpan:
    """Maps a sub-operation's 0-100 progress onto [start, end] of the run."""

    reporter: "ProgressReporter"
    start: float
    end: float

    def __call__(self, percent: float) -> None:
        fraction = min(max(percent, 0.0), 100.0) / 100.0
        self.reporter.report(self.start + (self.end - self.start) * fraction)

    def sub(self, start_percent: float, end_percent: float) -> "ProgressSpan":
        """Narrow this span to a slice of itself (percentages of the span)."""
        width = self.end - self.start
        return ProgressSpan(
            self.reporter,
            self.start + width * start_percent / 100.0,
            self.start + width * end_percent / 100.0,
        )

    def complete(self) -> None:
        self.reporter.report(self.end)


class ProgressReporter:
    """Emits stage and progress events for one run.

    Args:
        bus: Event bus to emit on
        run_id: Run identifier attached to every event
        source: Component name used as event source
    """

    def __init__(self, bus: EventBus, run_id: Optional[str] = None, source: str = "pipeline") -> None:
        self.bus = bus
        self.run_id = run_id
        self.source = source
        self._stage: Optional[Stage] = None
        self._percent = 0.0
        self._emitted = False
        self._closed = False

    @property
    def stage(self) -> Optional[Stage]:
        return self._stage

    @property
    def percent(self) -> float:
        return self._percent

    @property
    def closed(self) -> bool:
        return self._closed

    def enter(self, stage: Stage) -> ProgressSpan:
        """Enter the next stage and return the span it owns.

        Raises:
            ValueError: If the stage is out of order or the reporter is closed
        """
        if self._closed:
            raise ValueError("Progress reporter is closed")
        if self._stage is not None and stage.order <= self._stage.order:
            raise ValueError(f"Cannot enter {stage.value} after {self._stage.value}")

        self._stage = stage
        logger.debug(f"Run {self.run_id} entering stage {stage.value}")
        self.bus.emit(StageEvent(self.source, stage, run_id=self.run_id))

        start, end = STAGE_BANDS[stage]
        self.report(start)
        return ProgressSpan(self, max(start, self._percent), end)

    def remaining(self, stage: Stage) -> ProgressSpan:
        """Span from the current percentage to the end of stage's band."""
        _, end = STAGE_BANDS[stage]
        return ProgressSpan(self, min(self._percent, end), end)

    def report(self, percent: float) -> None:
        """Emit overall progress, clamped so it never decreases."""
        if self._closed:
            return
        percent = round(min(max(percent, 0.0), 100.0), 2)
        if percent < self._percent:
            return
        if percent == self._percent and self._emitted:
            return
        self._percent = percent
        self._emitted = True
        self.bus.emit(ProgressEvent(self.source, percent, stage=self._stage, run_id=self.run_id))

    def close(self) -> None:
        """Stop emitting; later reports are dropped."""
        self._closed = True
