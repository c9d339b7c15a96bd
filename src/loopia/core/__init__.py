"""Core building blocks shared by every pipeline stage."""

from .cancellation import CancellationToken
from .events import (
    CallbackObserver,
    Event,
    EventBus,
    EventType,
    ModeChangedEvent,
    ProgressEvent,
    RunCancelledEvent,
    RunFailedEvent,
    StageEvent,
)
from .progress import STAGE_BANDS, ProgressReporter, ProgressSpan
from .types import (
    BridgeClip,
    BridgeResult,
    BridgeStrategy,
    EncodeSettings,
    LoopUnit,
    OutputHandle,
    PipelineOutcome,
    ProcessingMode,
    ProcessingRequest,
    RunStatus,
    SourceVideo,
    Stage,
    VideoProbe,
)

__all__ = [
    "CancellationToken",
    "CallbackObserver",
    "Event",
    "EventBus",
    "EventType",
    "ModeChangedEvent",
    "ProgressEvent",
    "RunCancelledEvent",
    "RunFailedEvent",
    "StageEvent",
    "STAGE_BANDS",
    "ProgressReporter",
    "ProgressSpan",
    "BridgeClip",
    "BridgeResult",
    "BridgeStrategy",
    "EncodeSettings",
    "LoopUnit",
    "OutputHandle",
    "PipelineOutcome",
    "ProcessingMode",
    "ProcessingRequest",
    "RunStatus",
    "SourceVideo",
    "Stage",
    "VideoProbe",
]
