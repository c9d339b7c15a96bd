"""Command-line interface for Loopia.

    loopia clip.mp4 -m 10                     10 minute loop next to the input
    loopia clip.mp4 -m 60 -o long.mp4 --no-ai fallback bridge only

Exit codes: 0 success, 1 failure, 2 bad arguments, 130 cancelled (Ctrl+C).
"""

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from tqdm import tqdm

from . import __version__
from .config import FALLBACK_FILTERS, LoopConfig, load_config
from .core.types import PipelineOutcome, SourceVideo, Stage
from .engine.context import EngineContext
from .pipeline import LoopPipeline
from .utils.logging import LogConfig, configure_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


def _positive_minutes(value: str) -> float:
    try:
        minutes = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}")
    if minutes <= 0:
        raise argparse.ArgumentTypeError("target duration must be positive")
    return minutes


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loopia",
        description="Turn a short clip into a long, seamlessly looping video.",
    )
    parser.add_argument("input", type=Path, help="Source video clip")
    parser.add_argument(
        "-m", "--minutes",
        type=_positive_minutes,
        required=True,
        help="Target output duration in minutes",
    )
    parser.add_argument(
        "-o", "--output",
        type=Path,
        default=None,
        help="Output MP4 (default: <input>_loop_<minutes>min.mp4)",
    )
    parser.add_argument(
        "--no-ai",
        action="store_true",
        help="Skip AI interpolation and always use the filter-based bridge",
    )
    parser.add_argument(
        "--allow-cpu",
        action="store_true",
        help="Run AI interpolation even when no GPU backend is available",
    )
    parser.add_argument(
        "--fallback-filter",
        choices=FALLBACK_FILTERS,
        default=None,
        help="Native filter used for the fallback bridge",
    )
    parser.add_argument("--config", type=Path, default=None, help="JSON configuration file")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Log verbosity (default: WARNING)",
    )
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default="text",
        help="Log output format",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def default_output_path(input_path: Path, minutes: float) -> Path:
    return input_path.with_name(f"{input_path.stem}_loop_{minutes:g}min.mp4")


def build_config(args: argparse.Namespace) -> LoopConfig:
    """Configuration file/environment plus command-line overrides."""
    config = load_config(args.config)
    overrides = {}
    if args.no_ai:
        overrides["ai_enabled"] = False
    if args.allow_cpu:
        overrides["allow_cpu_inference"] = True
    if args.fallback_filter:
        overrides["fallback_filter"] = args.fallback_filter
    return replace(config, **overrides) if overrides else config


async def run_loop(
    config: LoopConfig,
    input_path: Path,
    output_path: Path,
    minutes: float,
) -> int:
    """Run one loop generation with a terminal progress bar."""
    context = EngineContext(config)
    pipeline = LoopPipeline(context=context)
    source = SourceVideo.from_path(input_path)
    loop = asyncio.get_running_loop()

    with tqdm(total=100, desc="Starting", unit="%", ncols=100,
              bar_format="{desc:<14} {percentage:3.0f}%|{bar}| [{elapsed}]") as pbar:

        def on_stage(stage: Stage) -> None:
            pbar.set_description(stage.value.capitalize())

        def on_progress(percent: float) -> None:
            pbar.n = percent
            pbar.refresh()

        def on_mode(mode: str) -> None:
            tqdm.write(f"Bridge mode: {mode}")

        handle = await pipeline.start_run(
            source,
            minutes,
            on_stage_change=on_stage,
            on_progress=on_progress,
            on_mode_change=on_mode,
        )

        signal_installed = False
        try:
            loop.add_signal_handler(signal.SIGINT, handle.cancel, "interrupted")
            signal_installed = True
        except (NotImplementedError, RuntimeError):
            pass

        try:
            outcome: PipelineOutcome = await handle.outcome()
        finally:
            if signal_installed:
                loop.remove_signal_handler(signal.SIGINT)
            context.close()

    if outcome.is_cancelled:
        print("Cancelled.", file=sys.stderr)
        return EXIT_CANCELLED
    if outcome.is_failed:
        print(f"Error: {outcome.error}", file=sys.stderr)
        return EXIT_FAILED

    assert outcome.output is not None
    saved = outcome.output.save(output_path)
    compressed = " (compressed)" if outcome.output.compressed else ""
    print(
        f"Wrote {saved} ({outcome.output.size_bytes / 1e6:.1f} MB, "
        f"{outcome.output.duration_seconds / 60:g} min, {outcome.output.repeat_count} repeats, "
        f"{outcome.output.mode.value}){compressed}"
    )
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point of the ``loopia`` command."""
    parser = create_parser()
    args = parser.parse_args(argv)

    configure_logging(LogConfig(log_level=args.log_level, log_format=args.log_format))

    if not args.input.is_file():
        print(f"Error: input file not found: {args.input}", file=sys.stderr)
        return EXIT_USAGE

    try:
        config = build_config(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    output_path = args.output or default_output_path(args.input, args.minutes)
    try:
        return asyncio.run(run_loop(config, args.input, output_path, args.minutes))
    except KeyboardInterrupt:
        return EXIT_CANCELLED


if __name__ == "__main__":
    sys.exit(main())
