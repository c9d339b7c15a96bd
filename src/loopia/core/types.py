"""Core type definitions for the Loopia pipeline.

This module provides the data model shared between pipeline stages:
- SourceVideo: immutable handle to the uploaded clip
- ProcessingRequest: source plus target duration
- BridgeResult / BridgeClip: output of bridge synthesis
- LoopUnit: one main body + bridge cycle
- OutputHandle / PipelineOutcome: what a run produces

Example usage:

    >>> from loopia.core.types import SourceVideo, ProcessingRequest
    >>>
    >>> source = SourceVideo.from_path("clip.mp4")
    >>> request = ProcessingRequest(source=source, target_duration_minutes=5)
    >>> print(request.target_seconds)
    300.0
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, TypeAlias, Union

import numpy as np
from numpy.typing import NDArray

from ..exceptions import ConfigurationError

if TYPE_CHECKING:
    from ..exceptions import LoopiaError


# =============================================================================
# Type Aliases
# =============================================================================

ImageArray: TypeAlias = NDArray[np.uint8]
FloatTensor: TypeAlias = NDArray[np.float32]
PathLike: TypeAlias = Union[str, Path]


# =============================================================================
# Enumerations
# =============================================================================


class Stage(str, Enum):
    """Named pipeline stages, in the order a run passes through them."""
    ANALYZING = "analyzing"
    INTERPOLATING = "interpolating"
    GENERATING = "generating"
    FINALIZING = "finalizing"
    COMPLETE = "complete"

    @property
    def order(self) -> int:
        """Position of this stage in the fixed stage sequence."""
        return list(Stage).index(self)


class ProcessingMode(str, Enum):
    """Mode notifications delivered to the caller."""
    AI = "ai"
    FALLBACK = "fallback"
    FALLBACK_DUE_TO_ERROR = "fallback-due-to-error"


class BridgeStrategy(str, Enum):
    """Which bridge synthesis path to run."""
    AI = "ai"
    FALLBACK = "fallback"


class RunStatus(str, Enum):
    """Terminal status of a run."""
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


# =============================================================================
# Source and request
# =============================================================================


@dataclass(frozen=True)
class VideoProbe:
    """Metadata read from a clip by ffprobe."""
    duration_seconds: float
    width: int
    height: int
    fps: float = 30.0
    codec: Optional[str] = None


@dataclass(frozen=True)
class SourceVideo:
    """Immutable handle to the uploaded clip.

    Attributes:
        data: Raw container bytes
        duration_seconds: Clip duration (0 until analyzed)
        width: Pixel width (0 until analyzed)
        height: Pixel height (0 until analyzed)
        fps: Frame rate of the video stream
        codec: Video codec name reported by ffprobe
        name: Filename used when staging the clip
    """
    data: bytes
    duration_seconds: float = 0.0
    width: int = 0
    height: int = 0
    fps: float = 30.0
    codec: Optional[str] = None
    name: str = "input.mp4"

    @classmethod
    def from_path(cls, path: PathLike) -> "SourceVideo":
        """Read a clip from disk. Metadata is filled in during analysis."""
        path = Path(path)
        suffix = path.suffix.lower() or ".mp4"
        return cls(data=path.read_bytes(), name=f"input{suffix}")

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def estimated_bitrate(self) -> float:
        """Bytes per second, derived from container size and duration."""
        if self.duration_seconds <= 0:
            return 0.0
        return self.size_bytes / self.duration_seconds

    def with_probe(self, probe: VideoProbe) -> "SourceVideo":
        """Return a copy carrying the probed metadata."""
        return replace(
            self,
            duration_seconds=probe.duration_seconds,
            width=probe.width,
            height=probe.height,
            fps=probe.fps,
            codec=probe.codec,
        )


@dataclass(frozen=True)
class ProcessingRequest:
    """A source clip and the requested output length."""
    source: SourceVideo
    target_duration_minutes: float

    def __post_init__(self) -> None:
        if not self.target_duration_minutes or self.target_duration_minutes <= 0:
            raise ConfigurationError(
                "target_duration_minutes must be positive",
                config_key="target_duration_minutes",
                config_value=self.target_duration_minutes,
            )

    @property
    def target_seconds(self) -> float:
        return float(self.target_duration_minutes) * 60.0


# =============================================================================
# Intermediate products
# =============================================================================


@dataclass
class BridgeResult:
    """Interpolated frames produced for the AI bridge.

    Attributes:
        frames: Ordered frames, A to B temporal direction
        width: Frame width used for inference
        height: Frame height used for inference
        original_width: Source width frames are upscaled to
        original_height: Source height frames are upscaled to
    """
    frames: List[ImageArray] = field(default_factory=list)
    width: int = 0
    height: int = 0
    original_width: int = 0
    original_height: int = 0

    @property
    def step_count(self) -> int:
        return len(self.frames)


@dataclass(frozen=True)
class BridgeClip:
    """A transition clip in scratch storage.

    head_trim and tail_trim are the seconds at the start and end of the
    source that the bridge replaces.
    """
    name: str
    duration_seconds: float
    strategy: BridgeStrategy
    head_trim: float = 0.0
    tail_trim: float = 0.0


@dataclass(frozen=True)
class LoopUnit:
    """One full cycle (main body + bridge) in scratch storage."""
    name: str
    duration_seconds: float


@dataclass(frozen=True)
class EncodeSettings:
    """libx264 settings applied to every re-encode within one run."""
    crf: int = 23
    preset: str = "fast"
    maxrate_kbps: Optional[int] = None
    compressed: bool = False

    def to_args(self) -> List[str]:
        args = [
            "-c:v", "libx264",
            "-preset", self.preset,
            "-crf", str(self.crf),
            "-pix_fmt", "yuv420p",
        ]
        if self.maxrate_kbps:
            args.extend([
                "-maxrate", f"{self.maxrate_kbps}k",
                "-bufsize", f"{self.maxrate_kbps * 2}k",
            ])
        return args


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class OutputHandle:
    """The finished looping video."""
    data: bytes
    duration_seconds: float
    repeat_count: int
    mode: ProcessingMode
    compressed: bool = False

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    def save(self, path: PathLike) -> Path:
        """Write the video to disk and return the path."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.data)
        return path


@dataclass(frozen=True)
class PipelineOutcome:
    """Exactly one of these is produced per run."""
    status: RunStatus
    output: Optional[OutputHandle] = None
    error: Optional["LoopiaError"] = None

    @property
    def is_complete(self) -> bool:
        return self.status is RunStatus.COMPLETE

    @property
    def is_failed(self) -> bool:
        return self.status is RunStatus.FAILED

    @property
    def is_cancelled(self) -> bool:
        return self.status is RunStatus.CANCELLED
