"""Native engines: ffmpeg codec engine and ONNX frame interpolation."""

from .codec import CodecEngine, ScratchSession
from .context import EngineContext, get_engine_context, reset_engine_context
from .interpolator import FrameInterpolationEngine, align_dimensions

__all__ = [
    "CodecEngine",
    "ScratchSession",
    "EngineContext",
    "get_engine_context",
    "reset_engine_context",
    "FrameInterpolationEngine",
    "align_dimensions",
]
