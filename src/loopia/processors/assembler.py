"""Loop assembly: main body + bridge into one unit, then repeat to length.

Only the loop unit is ever re-encoded. Expanding it to the target duration
is a stream copy (``-stream_loop``), so the cost of the final step does not
depend on how long the output is.
"""

import logging
import math
from typing import Callable, Optional

from ..config import LoopConfig
from ..core.types import BridgeClip, EncodeSettings, LoopUnit, SourceVideo
from ..engine.codec import ScratchSession
from ..exceptions import PipelineError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

BYTES_PER_MB = 1_000_000
MIN_MAXRATE_KBPS = 500
MAXRATE_HEADROOM = 0.9

MAIN_CLIP = "main.mp4"
CONCAT_LIST = "concat.txt"
LOOP_UNIT = "loop_unit.mp4"
FINAL_OUTPUT = "output.mp4"


def _noop(_percent: float) -> None:
    pass


def _span(callback: ProgressCallback, start: float, end: float) -> ProgressCallback:
    def report(percent: float) -> None:
        callback(start + (end - start) * min(max(percent, 0.0), 100.0) / 100.0)
    return report


def compute_repeat_count(unit_seconds: float, target_minutes: float) -> int:
    """Number of extra loop iterations needed to reach the target duration.

    The result is the smallest n >= 0 with unit_seconds * (n + 1) >= target.

    Raises:
        ValueError: If unit_seconds is not positive
    """
    if unit_seconds <= 0:
        raise ValueError(f"Loop unit duration must be positive, got {unit_seconds}")

    target_seconds = target_minutes * 60.0
    repeat = max(0, math.ceil(target_seconds / unit_seconds) - 1)
    # Float division can overshoot ceil by one (e.g. 0.3 / 0.1)
    while repeat > 0 and unit_seconds * repeat >= target_seconds:
        repeat -= 1
    while unit_seconds * (repeat + 1) < target_seconds:
        repeat += 1
    return repeat


class LoopAssembler:
    """Builds the loop unit and expands it to the target duration."""

    def __init__(self, config: LoopConfig) -> None:
        self.config = config

    # ------------------------------------------------------------------
    # Compression policy
    # ------------------------------------------------------------------

    def projected_size_bytes(self, source: SourceVideo, target_minutes: float) -> float:
        return source.estimated_bitrate * target_minutes * 60.0

    def estimate_compression_need(self, source: SourceVideo, target_minutes: float) -> bool:
        """Whether the output must be re-encoded at reduced quality.

        True when the projected size (source bitrate x target duration)
        exceeds the size ceiling, or the target exceeds the duration
        threshold. Both comparisons are strict.
        """
        ceiling = self.config.size_ceiling_mb * BYTES_PER_MB
        projected = self.projected_size_bytes(source, target_minutes)
        return projected > ceiling or target_minutes > self.config.duration_threshold_minutes

    def select_encode_settings(self, source: SourceVideo, target_minutes: float) -> EncodeSettings:
        """Encoder settings for every re-encode of one run."""
        if not self.estimate_compression_need(source, target_minutes):
            return EncodeSettings(crf=self.config.crf, preset=self.config.preset)

        # Bitrate at which the whole output fits under the ceiling
        ceiling_bits = self.config.size_ceiling_mb * BYTES_PER_MB * 8
        fitting_kbps = ceiling_bits / (target_minutes * 60.0) / 1000.0
        maxrate = max(MIN_MAXRATE_KBPS, int(round(fitting_kbps * MAXRATE_HEADROOM)))

        logger.info(
            f"Compression enabled for {target_minutes:g} min output "
            f"(projected {self.projected_size_bytes(source, target_minutes) / BYTES_PER_MB:.0f} MB, "
            f"maxrate {maxrate} kbps)"
        )
        return EncodeSettings(
            crf=self.config.compressed_crf,
            preset=self.config.preset,
            maxrate_kbps=maxrate,
            compressed=True,
        )

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    async def build_loop_unit(
        self,
        session: ScratchSession,
        source_name: str,
        source: SourceVideo,
        bridge: BridgeClip,
        settings: EncodeSettings,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> LoopUnit:
        """Trim the source to its main body and join it with the bridge.

        Raises:
            PipelineError: If the source is too short for the bridge's trims
            TranscodeError: If a native invocation fails
        """
        progress = progress_callback or _noop
        main_start = bridge.head_trim
        main_length = source.duration_seconds - bridge.head_trim - bridge.tail_trim
        if main_length <= 0:
            raise PipelineError(
                f"Source of {source.duration_seconds:.3f}s is too short for a "
                f"{bridge.head_trim + bridge.tail_trim:.3f}s bridge overlap",
                stage="generating",
            )

        await session.run(
            [
                "-ss", f"{main_start:.3f}",
                "-i", source_name,
                "-t", f"{main_length:.3f}",
                *settings.to_args(),
                "-r", f"{source.fps:g}",
                "-an",
                session.name(MAIN_CLIP),
            ],
            outputs=[MAIN_CLIP],
            progress_callback=_span(progress, 0.0, 60.0),
            duration_hint=main_length,
        )

        main_probe = await session.probe(MAIN_CLIP)
        bridge_probe = await session.probe(bridge.name)
        unit_seconds = main_length + bridge.duration_seconds

        compatible = (
            main_probe.codec == bridge_probe.codec
            and (main_probe.width, main_probe.height) == (bridge_probe.width, bridge_probe.height)
        )
        if compatible:
            # Concat demuxer resolves entries relative to the list file
            listing = f"file '{MAIN_CLIP}'\nfile '{bridge.name}'\n"
            await session.stage(CONCAT_LIST, listing.encode())
            await session.run(
                [
                    "-f", "concat",
                    "-safe", "0",
                    "-i", session.name(CONCAT_LIST),
                    "-c", "copy",
                    session.name(LOOP_UNIT),
                ],
                outputs=[LOOP_UNIT],
                progress_callback=_span(progress, 60.0, 100.0),
                duration_hint=unit_seconds,
            )
        else:
            logger.warning(
                f"Main body ({main_probe.codec} {main_probe.width}x{main_probe.height}) and bridge "
                f"({bridge_probe.codec} {bridge_probe.width}x{bridge_probe.height}) differ; re-encoding"
            )
            await session.run(
                [
                    "-i", session.name(MAIN_CLIP),
                    "-i", session.name(bridge.name),
                    "-filter_complex",
                    f"[1:v]scale={main_probe.width}:{main_probe.height},setsar=1[b];"
                    "[0:v]setsar=1[m];[m][b]concat=n=2:v=1:a=0[v]",
                    "-map", "[v]",
                    *settings.to_args(),
                    "-r", f"{source.fps:g}",
                    "-an",
                    session.name(LOOP_UNIT),
                ],
                outputs=[LOOP_UNIT],
                progress_callback=_span(progress, 60.0, 100.0),
                duration_hint=unit_seconds,
            )

        progress(100.0)
        logger.info(f"Loop unit ready: {unit_seconds:.3f}s (main {main_length:.3f}s)")
        return LoopUnit(name=LOOP_UNIT, duration_seconds=unit_seconds)

    async def expand_loop(
        self,
        session: ScratchSession,
        unit: LoopUnit,
        repeat_count: int,
        target_seconds: float,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> str:
        """Repeat the unit without re-encoding and cut at the target duration.

        Returns:
            Run-local name of the final output
        """
        await session.run(
            [
                "-stream_loop", str(repeat_count),
                "-i", session.name(unit.name),
                "-t", f"{target_seconds:.3f}",
                "-c", "copy",
                "-movflags", "+faststart",
                session.name(FINAL_OUTPUT),
            ],
            outputs=[FINAL_OUTPUT],
            progress_callback=progress_callback,
            duration_hint=target_seconds,
        )
        logger.info(f"Expanded loop unit {repeat_count} extra times to {target_seconds:.1f}s")
        return FINAL_OUTPUT
