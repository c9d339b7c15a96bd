"""AI frame interpolation with a RIFE ONNX model.

Synthesizes intermediate frames between two images. The model is fetched
through the persistent ModelStore and loaded into an onnxruntime
InferenceSession on the best available execution provider:

    1. GPU general-purpose compute (CUDA, ROCm)
    2. GPU graphics backends (DirectML, CoreML)
    3. CPU

Model input contract: ``img0`` and ``img1`` are float32 NCHW RGB tensors in
[0, 1] whose spatial dimensions are multiples of 32, ``timestep`` is a
float32 tensor of shape [1, 1, 1, 1] holding t in (0, 1).
"""

import asyncio
import logging
import math
from typing import AsyncIterator, Callable, List, Optional, Tuple

import cv2
import numpy as np

from ..config import LoopConfig
from ..core.types import FloatTensor, ImageArray
from ..exceptions import InterpolationError, ModelLoadError
from ..utils.model_store import ModelStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

GPU_COMPUTE_PROVIDERS = ("CUDAExecutionProvider", "ROCMExecutionProvider")
GPU_GRAPHICS_PROVIDERS = ("DmlExecutionProvider", "CoreMLExecutionProvider")
CPU_PROVIDER = "CPUExecutionProvider"
PROVIDER_PRIORITY = GPU_COMPUTE_PROVIDERS + GPU_GRAPHICS_PROVIDERS + (CPU_PROVIDER,)

# Share of ensure_model_ready progress spent on the download.
DOWNLOAD_SHARE = 80.0


def align_dimensions(width: int, height: int, alignment: int = 32) -> Tuple[int, int]:
    """Round width and height up to the next multiple of alignment."""
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid dimensions: {width}x{height}")
    return (
        int(math.ceil(width / alignment) * alignment),
        int(math.ceil(height / alignment) * alignment),
    )


def interpolation_times(steps: int) -> List[float]:
    """Timesteps of the frames generated between two images, ascending."""
    return [i / (steps + 1) for i in range(1, steps + 1)]


def to_tensor(image: ImageArray) -> FloatTensor:
    """HxWx3 uint8 RGB image -> 1x3xHxW float32 tensor in [0, 1]."""
    tensor = image.astype(np.float32) / 255.0
    return np.ascontiguousarray(tensor.transpose(2, 0, 1)[np.newaxis, ...])


def from_tensor(tensor: FloatTensor) -> ImageArray:
    """1x3xHxW (or 3xHxW) float tensor -> HxWx3 uint8 image."""
    array = np.asarray(tensor, dtype=np.float32)
    if array.ndim == 4:
        array = array[0]
    image = np.rint(array.transpose(1, 2, 0) * 255.0)
    return np.clip(image, 0, 255).astype(np.uint8)


def ordered_providers(available: List[str]) -> List[str]:
    """Available execution providers in backend priority order."""
    return [p for p in PROVIDER_PRIORITY if p in available]


class FrameInterpolationEngine:
    """Lazily loaded RIFE interpolation session.

    Args:
        config: Loop configuration (model location, step count, alignment)
        store: Model cache; built from config.model_dir when omitted
    """

    def __init__(self, config: LoopConfig, store: Optional[ModelStore] = None) -> None:
        self.config = config
        self.store = store or ModelStore(
            config.model_dir,
            retries=config.download_retries,
            retry_delay=config.download_retry_delay,
        )
        self.backend: Optional[str] = None
        self._session = None
        self._init_lock = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self._session is not None

    # ------------------------------------------------------------------
    # Capability
    # ------------------------------------------------------------------

    @staticmethod
    def available_providers() -> List[str]:
        """Execution providers the installed onnxruntime build offers."""
        try:
            import onnxruntime as ort
        except ImportError:
            return []
        return list(ort.get_available_providers())

    def is_available(self) -> bool:
        """Whether the AI path can be attempted. Does not load anything."""
        if not self.config.ai_enabled:
            return False
        providers = self.available_providers()
        if not providers:
            return False
        has_gpu = any(p in providers for p in GPU_COMPUTE_PROVIDERS + GPU_GRAPHICS_PROVIDERS)
        return has_gpu or (self.config.allow_cpu_inference and CPU_PROVIDER in providers)

    # ------------------------------------------------------------------
    # Model loading
    # ------------------------------------------------------------------

    async def ensure_model_ready(self, progress_callback: Optional[ProgressCallback] = None):
        """Fetch and load the model once; concurrent callers share the attempt.

        Returns:
            The onnxruntime InferenceSession

        Raises:
            ModelLoadError: If the model cannot be fetched or no backend loads it
        """
        if self._session is not None:
            return self._session

        async with self._init_lock:
            if self._session is None:
                loop = asyncio.get_running_loop()
                report = None
                if progress_callback is not None:
                    def report(percent: float) -> None:
                        loop.call_soon_threadsafe(progress_callback, percent)
                self._session = await loop.run_in_executor(None, self._load_session, report)
        return self._session

    def _load_session(self, progress_callback: Optional[ProgressCallback]):
        try:
            import onnxruntime as ort
        except ImportError as e:
            raise ModelLoadError("onnxruntime is not installed", model_id=self.config.model_id, cause=e)

        def download_progress(percent: float) -> None:
            if progress_callback:
                progress_callback(percent * DOWNLOAD_SHARE / 100.0)

        model_path = self.store.fetch(
            self.config.model_id,
            self.config.model_version,
            self.config.model_url,
            sha256=self.config.model_sha256,
            progress_callback=download_progress,
        )

        sess_options = ort.SessionOptions()
        sess_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL

        candidates = ordered_providers(list(ort.get_available_providers()))
        if CPU_PROVIDER not in candidates:
            candidates.append(CPU_PROVIDER)

        last_error: Optional[Exception] = None
        for provider in candidates:
            try:
                session = ort.InferenceSession(str(model_path), sess_options, providers=[provider])
            except Exception as e:
                logger.warning(f"Backend {provider} could not load the model: {e}")
                last_error = e
                continue

            self.backend = provider
            logger.info(f"Interpolation model loaded on {provider}")
            if progress_callback:
                progress_callback(100.0)
            return session

        raise ModelLoadError(
            "No inference backend could load the interpolation model",
            model_id=self.config.model_id,
            backend=", ".join(candidates),
            cause=last_error,
        )

    def release(self) -> None:
        """Drop the loaded session; the next call reloads from the cache."""
        self._session = None
        self.backend = None

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    async def interpolate(
        self,
        frame_a: ImageArray,
        frame_b: ImageArray,
        steps: Optional[int] = None,
    ) -> AsyncIterator[ImageArray]:
        """Yield ``steps`` frames between frame_a and frame_b in increasing t.

        Frames are resized to aligned dimensions before inference and the
        yielded frames keep the aligned size.

        Raises:
            ModelLoadError: If the model is not loadable
            InterpolationError: If the inputs are invalid or inference fails
        """
        if steps is None:
            steps = self.config.interpolation_steps
        if steps < 1:
            raise InterpolationError(f"steps must be at least 1, got {steps}")
        if frame_a.shape != frame_b.shape or frame_a.ndim != 3 or frame_a.shape[2] != 3:
            raise InterpolationError(
                f"Frames must be equally sized HxWx3 images, got {frame_a.shape} and {frame_b.shape}"
            )

        session = await self.ensure_model_ready()

        height, width = frame_a.shape[:2]
        aligned_w, aligned_h = align_dimensions(width, height, self.config.frame_alignment)
        if (aligned_w, aligned_h) != (width, height):
            frame_a = cv2.resize(frame_a, (aligned_w, aligned_h), interpolation=cv2.INTER_LINEAR)
            frame_b = cv2.resize(frame_b, (aligned_w, aligned_h), interpolation=cv2.INTER_LINEAR)

        tensor_a = to_tensor(frame_a)
        tensor_b = to_tensor(frame_b)
        output_names = [o.name for o in session.get_outputs()]
        output_index = output_names.index("output") if "output" in output_names else 0

        loop = asyncio.get_running_loop()
        for step, t in enumerate(interpolation_times(steps), start=1):
            feeds = {
                "img0": tensor_a,
                "img1": tensor_b,
                "timestep": np.full((1, 1, 1, 1), t, dtype=np.float32),
            }
            try:
                outputs = await loop.run_in_executor(None, session.run, None, feeds)
            except Exception as e:
                raise InterpolationError(f"Inference failed at t={t:.3f}: {e}", step=step, cause=e)

            logger.debug(f"Interpolated step {step}/{steps} (t={t:.3f})")
            yield from_tensor(outputs[output_index])
