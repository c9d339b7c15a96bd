"""Run notifications.

Everything a run tells the outside world goes through an :class:`EventBus`
as a typed :class:`Event`. The pipeline's plain ``on_stage_change`` /
``on_progress`` / ``on_mode_change`` callbacks are bus subscribers too,
wrapped by :class:`CallbackObserver`.

    >>> bus = EventBus()
    >>> bus.subscribe(EventType.PROGRESS, lambda e: print(e.percent))
    >>> bus.emit(ProgressEvent("pipeline", 42.0))
    42.0
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Deque, Dict, List, Optional

from .types import ProcessingMode, Stage

logger = logging.getLogger(__name__)

_sequence = itertools.count(1)


class EventType(Enum):
    STAGE_CHANGED = auto()
    PROGRESS = auto()
    MODE_CHANGED = auto()
    # A successful run ends on STAGE_CHANGED(COMPLETE); these two end the others.
    FAILED = auto()
    CANCELLED = auto()


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


@dataclass
class Event:
    """One notification from a run.

    ``data`` carries the type-specific payload; the subclasses below fill it
    in and expose the interesting keys as properties. ``sequence`` increases
    monotonically across the process and orders events emitted in the same
    clock tick.
    """

    event_type: EventType
    source: str
    data: Dict[str, Any] = field(default_factory=dict)
    run_id: Optional[str] = None
    created: float = field(default_factory=time.time)
    sequence: int = field(default_factory=lambda: next(_sequence))

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view; enum payload values are flattened to their values."""
        return {
            "event_type": self.event_type.name,
            "source": self.source,
            "run_id": self.run_id,
            "sequence": self.sequence,
            "created": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.created)),
            "data": {key: _plain(value) for key, value in self.data.items()},
        }


class StageEvent(Event):
    def __init__(self, source: str, stage: Stage, **extra: Any) -> None:
        super().__init__(EventType.STAGE_CHANGED, source, {"stage": stage}, **extra)

    @property
    def stage(self) -> Stage:
        return self.data["stage"]


class ProgressEvent(Event):
    """Overall run progress, 0 to 100, tagged with the stage it was reported in."""

    def __init__(self, source: str, percent: float, stage: Optional[Stage] = None, **extra: Any) -> None:
        super().__init__(EventType.PROGRESS, source, {"percent": percent, "stage": stage}, **extra)

    @property
    def percent(self) -> float:
        return self.data["percent"]


class ModeChangedEvent(Event):
    """Bridge synthesis mode chosen, or switched to fallback with a ``reason``."""

    def __init__(
        self, source: str, mode: ProcessingMode, reason: Optional[str] = None, **extra: Any
    ) -> None:
        super().__init__(EventType.MODE_CHANGED, source, {"mode": mode, "reason": reason}, **extra)

    @property
    def mode(self) -> ProcessingMode:
        return self.data["mode"]


class RunFailedEvent(Event):
    def __init__(
        self,
        source: str,
        error_type: str,
        error_message: str,
        stage: Optional[Stage] = None,
        **extra: Any,
    ) -> None:
        payload = {"error_type": error_type, "error_message": error_message, "stage": stage}
        super().__init__(EventType.FAILED, source, payload, **extra)


class RunCancelledEvent(Event):
    def __init__(self, source: str, stage: Optional[Stage] = None, **extra: Any) -> None:
        super().__init__(EventType.CANCELLED, source, {"stage": stage}, **extra)


EventCallback = Callable[[Event], None]


class EventBus:
    """Synchronous publish/subscribe hub shared by one pipeline.

    Subscriptions are keyed by event type, with ``None`` meaning every type.
    ``emit`` delivers in the calling thread: typed subscribers first, then
    catch-all ones, each group in subscription order. A subscriber that
    raises is logged and the remaining ones still run.

    Args:
        enable_history: Keep emitted events for :meth:`get_history`
        history_size: Most recent events kept when history is on
    """

    def __init__(self, enable_history: bool = False, history_size: int = 1000) -> None:
        self._lock = threading.RLock()
        self._routes: Dict[Optional[EventType], List[EventCallback]] = {}
        self._history: Optional[Deque[Event]] = (
            deque(maxlen=history_size) if enable_history else None
        )

    def subscribe(self, event_type: Optional[EventType], callback: EventCallback) -> None:
        """Register ``callback``; registering the same pair twice is a no-op."""
        with self._lock:
            route = self._routes.setdefault(event_type, [])
            if callback not in route:
                route.append(callback)

    def unsubscribe(self, event_type: Optional[EventType], callback: EventCallback) -> bool:
        """Drop a registration. Returns False when it was not there."""
        with self._lock:
            route = self._routes.get(event_type)
            if not route or callback not in route:
                return False
            route.remove(callback)
            return True

    def emit(self, event: Event) -> None:
        with self._lock:
            if self._history is not None:
                self._history.append(event)
            targets = list(self._routes.get(event.event_type, ()))
            targets.extend(self._routes.get(None, ()))

        for callback in targets:
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber %r failed handling %s", callback, event.event_type.name)

    def get_subscriber_count(self, event_type: Optional[EventType] = None) -> int:
        """Subscribers for ``event_type``, or across all routes when None."""
        with self._lock:
            if event_type is not None:
                return len(self._routes.get(event_type, ()))
            return sum(len(route) for route in self._routes.values())

    def get_history(
        self, event_type: Optional[EventType] = None, limit: Optional[int] = None
    ) -> List[Event]:
        """Kept events, oldest first; always empty when history is off."""
        with self._lock:
            kept = list(self._history or ())
        if event_type is not None:
            kept = [event for event in kept if event.event_type is event_type]
        return kept[-limit:] if limit is not None else kept

    def clear_history(self) -> None:
        with self._lock:
            if self._history is not None:
                self._history.clear()


class CallbackObserver:
    """Forwards bus events to the pipeline's plain callbacks.

    Stage changes arrive as :class:`Stage`, progress as a float percentage
    and mode changes as the :class:`ProcessingMode` string value. Callbacks
    left as None are skipped.
    """

    def __init__(
        self,
        on_stage_change: Optional[Callable[[Stage], None]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
        on_mode_change: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.on_stage_change = on_stage_change
        self.on_progress = on_progress
        self.on_mode_change = on_mode_change
        self._handlers: Dict[EventType, EventCallback] = {
            EventType.STAGE_CHANGED: self._stage,
            EventType.PROGRESS: self._progress,
            EventType.MODE_CHANGED: self._mode,
        }

    def attach(self, bus: EventBus) -> None:
        for event_type, handler in self._handlers.items():
            bus.subscribe(event_type, handler)

    def detach(self, bus: EventBus) -> None:
        for event_type, handler in self._handlers.items():
            bus.unsubscribe(event_type, handler)

    def _stage(self, event: Event) -> None:
        if self.on_stage_change is not None:
            self.on_stage_change(event.data["stage"])

    def _progress(self, event: Event) -> None:
        if self.on_progress is not None:
            self.on_progress(event.data["percent"])

    def _mode(self, event: Event) -> None:
        if self.on_mode_change is not None:
            self.on_mode_change(event.data["mode"].value)
