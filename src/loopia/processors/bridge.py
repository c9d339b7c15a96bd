"""Bridge synthesis: the transition clip from a source's last frame to its first.

Two strategies produce the same BridgeClip contract:

AI:
    Grab the frame just before the end and the frame just after the start,
    interpolate between them with the RIFE model at a reduced working
    resolution, upscale the generated frames back to source resolution and
    encode them as a short clip.

Fallback:
    Cut a short window from the end and an equally long window from the
    start and blend them with one native ffmpeg filter (``xfade`` crossfade,
    or ``minterpolate`` motion interpolation). No neural inference.

The bridge replaces ``tail_trim`` seconds at the end and ``head_trim``
seconds at the start of the source; the loop assembler trims the main body
accordingly.
"""

import logging
from typing import Callable, List, Optional, Tuple

import cv2
import numpy as np

from ..config import LoopConfig
from ..core.types import (
    BridgeClip,
    BridgeResult,
    BridgeStrategy,
    EncodeSettings,
    ImageArray,
    SourceVideo,
)
from ..engine.codec import ScratchSession
from ..engine.interpolator import FrameInterpolationEngine
from ..exceptions import InterpolationError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

BRIDGE_CLIP = "bridge.mp4"
FRAME_DIR = "bridge_frames"
FRAME_PATTERN = "frame_%04d.png"


def _noop(_percent: float) -> None:
    pass


def _span(callback: ProgressCallback, start: float, end: float) -> ProgressCallback:
    """Map 0-100 of a sub-step onto [start, end] of callback."""
    def report(percent: float) -> None:
        callback(start + (end - start) * min(max(percent, 0.0), 100.0) / 100.0)
    return report


def fmt_seconds(value: float) -> str:
    return f"{value:.3f}"


def working_size(width: int, height: int, max_edge: int) -> Tuple[int, int]:
    """Scale (width, height) so the long edge is at most max_edge; even dims."""
    scale = min(1.0, max_edge / max(width, height))
    w = max(2, int(round(width * scale / 2.0)) * 2)
    h = max(2, int(round(height * scale / 2.0)) * 2)
    return w, h


def bridge_input_fps(steps: int, bridge_duration: float, min_fps: float) -> float:
    """Frame rate the bridge frames are read at, floored at min_fps."""
    return max(steps / bridge_duration, min_fps)


def blend_window(duration: float, blend_seconds: float, fraction: float) -> float:
    """Length of the fallback windows, capped relative to the source length."""
    return min(blend_seconds, fraction * duration)


def decode_image(data: bytes) -> ImageArray:
    """Decode PNG bytes into an RGB uint8 array."""
    image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    if image is None:
        raise InterpolationError("Could not decode extracted frame")
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


def encode_image(image: ImageArray) -> bytes:
    """Encode an RGB uint8 array as PNG bytes."""
    ok, buffer = cv2.imencode(".png", cv2.cvtColor(image, cv2.COLOR_RGB2BGR))
    if not ok:
        raise InterpolationError("Could not encode bridge frame")
    return buffer.tobytes()


class BridgeSynthesizer:
    """Produces the bridge clip with the AI or the fallback strategy.

    Failures propagate to the caller; there is no fallback inside the
    synthesizer itself.
    """

    def __init__(
        self,
        config: LoopConfig,
        interpolator: Optional[FrameInterpolationEngine] = None,
    ) -> None:
        self.config = config
        self.interpolator = interpolator

    async def synthesize(
        self,
        session: ScratchSession,
        source_name: str,
        source: SourceVideo,
        strategy: BridgeStrategy,
        settings: EncodeSettings,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> BridgeClip:
        """Build the bridge clip in scratch storage.

        Args:
            session: Scratch session of the run
            source_name: Scratch name of the staged source clip
            source: Analyzed source metadata
            strategy: Which synthesis path to run
            settings: Encoder settings of the run
            progress_callback: Receives 0-100
        """
        progress = progress_callback or _noop
        if strategy is BridgeStrategy.AI:
            clip = await self._synthesize_ai(session, source_name, source, settings, progress)
        else:
            clip = await self._synthesize_fallback(session, source_name, source, settings, progress)
        progress(100.0)
        logger.info(
            f"Bridge ready ({clip.strategy.value}, {clip.duration_seconds:.3f}s, "
            f"trims {clip.head_trim:.3f}s/{clip.tail_trim:.3f}s)"
        )
        return clip

    # ------------------------------------------------------------------
    # AI strategy
    # ------------------------------------------------------------------

    async def extract_frame(
        self,
        session: ScratchSession,
        source_name: str,
        timestamp: float,
        size: Tuple[int, int],
        local_name: str,
    ) -> ImageArray:
        """Grab one frame at timestamp, scaled to size, as an RGB array."""
        width, height = size
        await session.run(
            [
                "-ss", fmt_seconds(max(timestamp, 0.0)),
                "-i", source_name,
                "-frames:v", "1",
                "-vf", f"scale={width}:{height}",
                session.name(local_name),
            ],
            outputs=[local_name],
        )
        return decode_image(await session.read(local_name))

    async def build_bridge_result(
        self,
        session: ScratchSession,
        source_name: str,
        source: SourceVideo,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> BridgeResult:
        """Extract the boundary frames and interpolate between them.

        Frames are returned at inference resolution, ordered from the source's
        end towards its start.
        """
        if self.interpolator is None:
            raise InterpolationError("No interpolation engine configured")

        progress = progress_callback or _noop
        steps = self.config.interpolation_steps
        epsilon = self.config.edge_epsilon

        await self.interpolator.ensure_model_ready(_span(progress, 0.0, 50.0))

        size = working_size(source.width, source.height, self.config.max_inference_edge)
        last = await self.extract_frame(
            session, source_name, source.duration_seconds - epsilon, size, "bridge_last.png"
        )
        progress(55.0)
        first = await self.extract_frame(session, source_name, epsilon, size, "bridge_first.png")
        progress(60.0)

        frames: List[ImageArray] = []
        async for frame in self.interpolator.interpolate(last, first, steps):
            session.token.raise_if_cancelled()
            frames.append(frame)
            progress(60.0 + 40.0 * len(frames) / steps)

        height, width = frames[0].shape[:2] if frames else (size[1], size[0])
        return BridgeResult(
            frames=frames,
            width=width,
            height=height,
            original_width=source.width,
            original_height=source.height,
        )

    async def _synthesize_ai(
        self,
        session: ScratchSession,
        source_name: str,
        source: SourceVideo,
        settings: EncodeSettings,
        progress: ProgressCallback,
    ) -> BridgeClip:
        result = await self.build_bridge_result(
            session, source_name, source, _span(progress, 0.0, 75.0)
        )

        target = (result.original_width, result.original_height)
        for index, frame in enumerate(result.frames, start=1):
            upscaled = frame
            if (result.width, result.height) != target:
                upscaled = cv2.resize(frame, target, interpolation=cv2.INTER_CUBIC)
            await session.stage(f"{FRAME_DIR}/{FRAME_PATTERN % index}", encode_image(upscaled))
        progress(85.0)

        input_fps = bridge_input_fps(
            result.step_count, self.config.bridge_duration, self.config.min_bridge_fps
        )
        duration = result.step_count / input_fps
        await session.run(
            [
                "-framerate", f"{input_fps:g}",
                "-i", session.name(f"{FRAME_DIR}/{FRAME_PATTERN}"),
                *settings.to_args(),
                "-r", f"{source.fps:g}",
                "-an",
                session.name(BRIDGE_CLIP),
            ],
            outputs=[BRIDGE_CLIP],
            progress_callback=_span(progress, 85.0, 100.0),
            duration_hint=duration,
        )
        # Staged frames are no longer needed once encoded
        for index in range(1, result.step_count + 1):
            await session.remove(f"{FRAME_DIR}/{FRAME_PATTERN % index}")

        return BridgeClip(
            name=BRIDGE_CLIP,
            duration_seconds=duration,
            strategy=BridgeStrategy.AI,
            head_trim=self.config.edge_epsilon,
            tail_trim=self.config.edge_epsilon,
        )

    # ------------------------------------------------------------------
    # Fallback strategy
    # ------------------------------------------------------------------

    async def _extract_window(
        self,
        session: ScratchSession,
        source_name: str,
        source: SourceVideo,
        start: float,
        length: float,
        local_name: str,
        settings: EncodeSettings,
        progress: ProgressCallback,
    ) -> None:
        await session.run(
            [
                "-ss", fmt_seconds(start),
                "-i", source_name,
                "-t", fmt_seconds(length),
                *settings.to_args(),
                "-r", f"{source.fps:g}",
                "-an",
                session.name(local_name),
            ],
            outputs=[local_name],
            progress_callback=progress,
            duration_hint=length,
        )

    def fallback_filter_graph(self, window: float, fps: float) -> str:
        """filter_complex joining input 0 (tail window) into input 1 (head window)."""
        if self.config.fallback_filter == "minterpolate":
            return (
                "[0:v][1:v]concat=n=2:v=1:a=0,"
                f"minterpolate=fps={self.config.minterpolate_fps}:mi_mode=mci:"
                "mc_mode=aobmc:me_mode=bidir:vsbmc=1,"
                f"trim=start={window / 2:.3f}:duration={window:.3f},"
                f"setpts=PTS-STARTPTS,fps={fps:g}[v]"
            )
        return (
            f"[0:v][1:v]xfade=transition=fade:duration={window:.3f}:offset=0,"
            "format=yuv420p[v]"
        )

    async def _synthesize_fallback(
        self,
        session: ScratchSession,
        source_name: str,
        source: SourceVideo,
        settings: EncodeSettings,
        progress: ProgressCallback,
    ) -> BridgeClip:
        window = blend_window(
            source.duration_seconds, self.config.blend_seconds, self.config.blend_fraction
        )
        logger.debug(f"Fallback bridge window {window:.3f}s ({self.config.fallback_filter})")

        await self._extract_window(
            session, source_name, source, source.duration_seconds - window, window,
            "tail_window.mp4", settings, _span(progress, 0.0, 30.0),
        )
        await self._extract_window(
            session, source_name, source, 0.0, window,
            "head_window.mp4", settings, _span(progress, 30.0, 60.0),
        )

        await session.run(
            [
                "-i", session.name("tail_window.mp4"),
                "-i", session.name("head_window.mp4"),
                "-filter_complex", self.fallback_filter_graph(window, source.fps),
                "-map", "[v]",
                *settings.to_args(),
                "-r", f"{source.fps:g}",
                "-an",
                session.name(BRIDGE_CLIP),
            ],
            outputs=[BRIDGE_CLIP],
            progress_callback=_span(progress, 60.0, 100.0),
            duration_hint=window,
        )

        return BridgeClip(
            name=BRIDGE_CLIP,
            duration_seconds=window,
            strategy=BridgeStrategy.FALLBACK,
            head_trim=window,
            tail_trim=window,
        )
