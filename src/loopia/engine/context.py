"""Process-wide owner of the expensive engine resources.

The codec engine, model store and interpolation engine are constructed on
first use and shared by every pipeline that uses the same context. Each of
them initializes at most once no matter how many runs await it.
"""

import logging
import threading
from typing import Optional

from ..config import LoopConfig, load_config
from .codec import CodecEngine
from .interpolator import FrameInterpolationEngine
from ..utils.model_store import ModelStore

logger = logging.getLogger(__name__)


class EngineContext:
    """Lazily constructed engines sharing one configuration."""

    def __init__(
        self,
        config: Optional[LoopConfig] = None,
        codec: Optional[CodecEngine] = None,
        interpolator: Optional[FrameInterpolationEngine] = None,
        model_store: Optional[ModelStore] = None,
    ) -> None:
        self.config = config or LoopConfig()
        self._codec = codec
        self._interpolator = interpolator
        self._model_store = model_store
        self._lock = threading.Lock()

    @property
    def codec(self) -> CodecEngine:
        with self._lock:
            if self._codec is None:
                self._codec = CodecEngine(
                    ffmpeg_path=self.config.ffmpeg_path,
                    ffprobe_path=self.config.ffprobe_path,
                    scratch_parent=self.config.scratch_dir,
                )
            return self._codec

    @property
    def model_store(self) -> ModelStore:
        with self._lock:
            if self._model_store is None:
                self._model_store = ModelStore(
                    self.config.model_dir,
                    retries=self.config.download_retries,
                    retry_delay=self.config.download_retry_delay,
                )
            return self._model_store

    @property
    def interpolator(self) -> FrameInterpolationEngine:
        store = self.model_store
        with self._lock:
            if self._interpolator is None:
                self._interpolator = FrameInterpolationEngine(self.config, store=store)
            return self._interpolator

    def close(self) -> None:
        """Release the loaded model and remove the codec scratch directory."""
        with self._lock:
            if self._interpolator is not None:
                self._interpolator.release()
            codec = self._codec
            self._codec = None
        if codec is not None and codec.ready:
            codec.close()


_global_context: Optional[EngineContext] = None
_context_lock = threading.Lock()


def get_engine_context(config: Optional[LoopConfig] = None) -> EngineContext:
    """Get or create the process default context.

    Args:
        config: Configuration (only used on first call; defaults to load_config())
    """
    global _global_context

    with _context_lock:
        if _global_context is None:
            _global_context = EngineContext(config or load_config())
            logger.debug("Created default engine context")
        return _global_context


def reset_engine_context() -> None:
    """Close and forget the process default context."""
    global _global_context

    with _context_lock:
        if _global_context is not None:
            _global_context.close()
            _global_context = None
