"""Loopia - seamless video loop generation with AI frame interpolation."""
__version__ = "0.4.0"

from .config import LoopConfig, load_config
from .core.types import (
    OutputHandle,
    PipelineOutcome,
    ProcessingMode,
    RunStatus,
    SourceVideo,
    Stage,
)
from .exceptions import (
    ConfigurationError,
    EngineInitError,
    InterpolationError,
    LoopiaError,
    ModelLoadError,
    PipelineError,
    RunCancelled,
    RunInProgressError,
    ScratchError,
    SourceUnreadableError,
    TranscodeError,
)
from .pipeline import LoopPipeline, RunHandle

__all__ = [
    "__version__",
    # Configuration
    "LoopConfig",
    "load_config",
    # Pipeline
    "LoopPipeline",
    "RunHandle",
    # Types
    "OutputHandle",
    "PipelineOutcome",
    "ProcessingMode",
    "RunStatus",
    "SourceVideo",
    "Stage",
    # Exceptions
    "ConfigurationError",
    "EngineInitError",
    "InterpolationError",
    "LoopiaError",
    "ModelLoadError",
    "PipelineError",
    "RunCancelled",
    "RunInProgressError",
    "ScratchError",
    "SourceUnreadableError",
    "TranscodeError",
]
