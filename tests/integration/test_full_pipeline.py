"""End-to-end tests against the real ffmpeg binary.

These generate a short synthetic clip with ffmpeg's testsrc2 source and run
complete loop generations through the real codec engine. The AI path uses a
linear-blend interpolator so no model download is needed.
"""
import asyncio
import json
import os
import subprocess
import sys
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from loopia.config import LoopConfig
from loopia.core.types import SourceVideo, Stage
from loopia.engine.context import EngineContext
from loopia.exceptions import SourceUnreadableError
from loopia.pipeline import LoopPipeline

# Mark all tests in this module as integration tests
pytestmark = [pytest.mark.integration]


def probe_file(path: Path) -> Dict:
    result = subprocess.run(
        ["ffprobe", "-v", "error", "-print_format", "json", "-show_format", "-show_streams", str(path)],
        capture_output=True,
        text=True,
        timeout=30,
    )
    assert result.returncode == 0, result.stderr
    return json.loads(result.stdout)


def run_cli_command(args: List[str], timeout: int = 180, env: Optional[Dict[str, str]] = None) -> Tuple[int, str, str]:
    """Run ``python -m loopia`` and return (return_code, stdout, stderr)."""
    run_env = os.environ.copy()
    src = Path(__file__).resolve().parents[2] / "src"
    run_env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(src), run_env.get("PYTHONPATH")]))
    if env:
        run_env.update(env)
    result = subprocess.run(
        [sys.executable, "-m", "loopia", *args],
        capture_output=True,
        text=True,
        timeout=timeout,
        env=run_env,
    )
    return result.returncode, result.stdout, result.stderr


@pytest.fixture
def integration_config(temp_dir) -> LoopConfig:
    return LoopConfig(
        scratch_dir=temp_dir / "scratch",
        model_dir=temp_dir / "models",
        preset="ultrafast",
    )


class TestFallbackLoop:
    """Full runs with the filter-based bridge."""

    @pytest.mark.parametrize("fallback_filter", ["xfade", "minterpolate"])
    def test_half_minute_loop(self, test_video_3s, integration_config, fallback_filter):
        """A 3 s clip becomes a 30 s MP4 with the requested length."""
        config = replace(integration_config, ai_enabled=False, fallback_filter=fallback_filter)
        context = EngineContext(config)
        pipeline = LoopPipeline(context=context)
        stages: List[Stage] = []
        modes: List[str] = []
        progress: List[float] = []

        async def scenario():
            try:
                outcome = await pipeline.run(
                    SourceVideo.from_path(test_video_3s),
                    0.5,
                    on_stage_change=stages.append,
                    on_progress=progress.append,
                    on_mode_change=modes.append,
                )
                return outcome, list(context.codec.scratch_dir.iterdir())
            finally:
                context.close()

        outcome, leftovers = asyncio.run(scenario())

        assert outcome.is_complete, outcome.error
        assert leftovers == []
        assert stages == list(Stage)
        assert modes == ["fallback"]
        assert progress[-1] == 100.0
        assert progress == sorted(progress)

        output_path = outcome.output.save(integration_config.scratch_dir.parent / "loop.mp4")
        info = probe_file(output_path)
        video = [s for s in info["streams"] if s["codec_type"] == "video"]
        assert len(video) == 1
        assert abs(float(info["format"]["duration"]) - 30.0) < 1.5
        assert outcome.output.repeat_count >= 10

    def test_scratch_removed_on_close(self, test_video_3s, integration_config):
        context = EngineContext(replace(integration_config, ai_enabled=False))
        pipeline = LoopPipeline(context=context)

        async def scenario():
            outcome = await pipeline.run(SourceVideo.from_path(test_video_3s), 0.1)
            scratch = context.codec.scratch_dir
            context.close()
            return outcome, scratch

        outcome, scratch = asyncio.run(scenario())

        assert outcome.is_complete
        assert not scratch.exists()


class TestAILoop:
    """Full runs through the AI bridge path with a stand-in interpolator."""

    def test_ai_bridge_with_real_codec(self, test_video_3s, integration_config, fake_interpolator):
        context = EngineContext(integration_config, interpolator=fake_interpolator)
        pipeline = LoopPipeline(context=context)
        modes: List[str] = []

        async def scenario():
            try:
                return await pipeline.run(SourceVideo.from_path(test_video_3s), 0.25, on_mode_change=modes.append)
            finally:
                context.close()

        outcome = asyncio.run(scenario())

        assert outcome.is_complete, outcome.error
        assert modes == ["ai"]
        assert len(fake_interpolator.timesteps) == integration_config.interpolation_steps
        info = probe_file(outcome.output.save(integration_config.scratch_dir.parent / "ai_loop.mp4"))
        assert abs(float(info["format"]["duration"]) - 15.0) < 1.5

    def test_ai_failure_falls_back(self, test_video_3s, integration_config, fake_interpolator):
        fake_interpolator.fail_step = 3
        context = EngineContext(integration_config, interpolator=fake_interpolator)
        pipeline = LoopPipeline(context=context)
        modes: List[str] = []

        async def scenario():
            try:
                return await pipeline.run(SourceVideo.from_path(test_video_3s), 0.25, on_mode_change=modes.append)
            finally:
                context.close()

        outcome = asyncio.run(scenario())

        assert outcome.is_complete, outcome.error
        assert modes == ["ai", "fallback-due-to-error"]


class TestUnreadableSource:

    def test_garbage_input(self, has_ffmpeg, integration_config):
        if not has_ffmpeg:
            pytest.skip("ffmpeg not available")
        context = EngineContext(integration_config)
        pipeline = LoopPipeline(context=context)

        async def scenario():
            try:
                return await pipeline.run(SourceVideo(data=b"definitely not a video"), 1)
            finally:
                context.close()

        outcome = asyncio.run(scenario())

        assert outcome.is_failed
        assert isinstance(outcome.error, SourceUnreadableError)


class TestCommandLine:
    """Runs of the ``loopia`` command in a subprocess."""

    def test_cli_writes_loop(self, test_video_3s, temp_dir):
        output = temp_dir / "cli_loop.mp4"
        code, stdout, stderr = run_cli_command(
            [str(test_video_3s), "-m", "0.2", "-o", str(output), "--no-ai"],
            env={"LOOPIA_SCRATCH_DIR": str(temp_dir / "scratch"), "LOOPIA_PRESET": "ultrafast"},
        )

        assert code == 0, stderr
        assert "Wrote" in stdout
        assert abs(float(probe_file(output)["format"]["duration"]) - 12.0) < 1.5

    def test_cli_missing_input(self, temp_dir):
        code, _, stderr = run_cli_command([str(temp_dir / "nope.mp4"), "-m", "1"])
        assert code == 2
        assert "not found" in stderr
