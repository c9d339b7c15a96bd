"""Tests for CLI interface."""
import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from loopia.cli import (
    EXIT_CANCELLED,
    EXIT_FAILED,
    EXIT_OK,
    EXIT_USAGE,
    build_config,
    create_parser,
    default_output_path,
    main,
    run_loop,
)
from loopia.config import LoopConfig


@pytest.fixture
def no_user_config(temp_dir, monkeypatch):
    """Keep ~/.loopia/config.json and LOOPIA_* variables out of the tests."""
    monkeypatch.setattr("loopia.config.DEFAULT_CONFIG_PATH", temp_dir / "absent.json")
    for name in ("LOOPIA_AI_ENABLED", "LOOPIA_FALLBACK_FILTER", "LOOPIA_ALLOW_CPU_INFERENCE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clip(temp_dir) -> Path:
    path = temp_dir / "clip.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypisom" + b"\x00" * 64)
    return path


class TestArgumentParsing:
    """Test CLI argument parsing."""

    def test_minimal_arguments(self):
        args = create_parser().parse_args(["clip.mp4", "-m", "10"])

        assert args.input == Path("clip.mp4")
        assert args.minutes == 10.0
        assert args.output is None
        assert args.no_ai is False
        assert args.log_level == "WARNING"

    def test_all_options(self):
        args = create_parser().parse_args([
            "clip.mp4",
            "--minutes", "2.5",
            "-o", "out.mp4",
            "--no-ai",
            "--allow-cpu",
            "--fallback-filter", "minterpolate",
            "--log-level", "DEBUG",
            "--log-format", "json",
        ])

        assert args.minutes == 2.5
        assert args.output == Path("out.mp4")
        assert args.no_ai is True
        assert args.allow_cpu is True
        assert args.fallback_filter == "minterpolate"
        assert args.log_format == "json"

    @pytest.mark.parametrize("minutes", ["0", "-3", "ten"])
    def test_rejects_invalid_minutes(self, minutes):
        """Non-positive or non-numeric durations are usage errors."""
        with pytest.raises(SystemExit) as exc_info:
            create_parser().parse_args(["clip.mp4", "-m", minutes])
        assert exc_info.value.code == 2

    def test_minutes_required(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["clip.mp4"])

    def test_unknown_fallback_filter(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["clip.mp4", "-m", "1", "--fallback-filter", "wipe"])


class TestHelpers:

    def test_default_output_path(self):
        assert default_output_path(Path("/videos/clip.mov"), 10) == Path("/videos/clip_loop_10min.mp4")
        assert default_output_path(Path("clip.mp4"), 0.5) == Path("clip_loop_0.5min.mp4")

    def test_build_config_overrides(self, no_user_config):
        """Command-line flags override the loaded configuration."""
        args = create_parser().parse_args(
            ["clip.mp4", "-m", "1", "--no-ai", "--allow-cpu", "--fallback-filter", "minterpolate"]
        )
        config = build_config(args)

        assert config.ai_enabled is False
        assert config.allow_cpu_inference is True
        assert config.fallback_filter == "minterpolate"

    def test_build_config_from_file(self, temp_dir, no_user_config):
        config_file = temp_dir / "loopia.json"
        LoopConfig(crf=20, fallback_filter="minterpolate").save(config_file)
        args = create_parser().parse_args(["clip.mp4", "-m", "1", "--config", str(config_file)])

        config = build_config(args)

        assert config.crf == 20
        assert config.fallback_filter == "minterpolate"


class TestMain:
    """Tests for the entry point."""

    def test_missing_input(self, temp_dir, capsys):
        code = main([str(temp_dir / "missing.mp4"), "-m", "1"])

        assert code == EXIT_USAGE
        assert "not found" in capsys.readouterr().err

    def test_missing_config_file(self, clip, temp_dir, no_user_config):
        code = main([str(clip), "-m", "1", "--config", str(temp_dir / "nope.json")])
        assert code == EXIT_USAGE

    def test_invalid_config_file(self, clip, temp_dir, no_user_config):
        bad = temp_dir / "bad.json"
        bad.write_text('{"crf": 99}')
        assert main([str(clip), "-m", "1", "--config", str(bad)]) == EXIT_USAGE

    def test_dispatches_run(self, clip, no_user_config):
        """Valid arguments run the loop with the default output path."""
        with patch("loopia.cli.run_loop", new=AsyncMock(return_value=EXIT_OK)) as run:
            code = main([str(clip), "-m", "3", "--no-ai"])

        assert code == EXIT_OK
        config, input_path, output_path, minutes = run.await_args.args
        assert config.ai_enabled is False
        assert input_path == clip
        assert output_path == clip.with_name("clip_loop_3min.mp4")
        assert minutes == 3.0

    def test_propagates_run_exit_code(self, clip, no_user_config):
        with patch("loopia.cli.run_loop", new=AsyncMock(return_value=EXIT_FAILED)):
            assert main([str(clip), "-m", "3"]) == EXIT_FAILED

    def test_keyboard_interrupt(self, clip, no_user_config):
        with patch("loopia.cli.run_loop", new=AsyncMock(side_effect=KeyboardInterrupt)):
            assert main([str(clip), "-m", "3"]) == EXIT_CANCELLED


class TestRunLoop:
    """Tests for run_loop against the fake engines."""

    def test_writes_output(self, clip, temp_dir, fake_context, capsys):
        output = temp_dir / "out" / "loop.mp4"
        with patch("loopia.cli.EngineContext", return_value=fake_context):
            code = asyncio.run(run_loop(fake_context.config, clip, output, 5))

        assert code == EXIT_OK
        assert output.read_bytes().startswith(b"video:")
        assert "Wrote" in capsys.readouterr().out

    def test_reports_failure(self, clip, temp_dir, fake_context, fake_codec, capsys):
        fake_codec.fail_on = "loop_unit.mp4"
        output = temp_dir / "loop.mp4"
        with patch("loopia.cli.EngineContext", return_value=fake_context):
            code = asyncio.run(run_loop(fake_context.config, clip, output, 5))

        assert code == EXIT_FAILED
        assert not output.exists()
        assert "Error" in capsys.readouterr().err
