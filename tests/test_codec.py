"""Tests for the ffmpeg codec engine adapter and scratch sessions."""
import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from loopia.core.cancellation import CancellationToken
from loopia.engine.codec import (
    CodecEngine,
    ScratchSession,
    parse_framerate,
    parse_probe_output,
    parse_progress_line,
)
from loopia.exceptions import (
    EngineInitError,
    RunCancelled,
    ScratchIOError,
    ScratchNotFoundError,
    TranscodeError,
)


def version_process(returncode: int = 0):
    process = MagicMock()
    process.communicate = AsyncMock(return_value=(b"ffmpeg version 6.1 Copyright\n", b""))
    process.returncode = returncode
    return process


def streaming_process(stdout: bytes, stderr: bytes, returncode: int):
    """Process mock whose pipes are real StreamReaders (build inside a loop)."""
    out = asyncio.StreamReader()
    out.feed_data(stdout)
    out.feed_eof()
    err = asyncio.StreamReader()
    err.feed_data(stderr)
    err.feed_eof()

    process = MagicMock()
    process.stdout = out
    process.stderr = err
    process.wait = AsyncMock(return_value=returncode)
    return process


async def ready_engine(scratch_parent: Path) -> CodecEngine:
    engine = CodecEngine(scratch_parent=scratch_parent)
    with patch("loopia.engine.codec.shutil.which", return_value="/usr/bin/ffmpeg"), \
         patch("loopia.engine.codec.asyncio.create_subprocess_exec",
               new=AsyncMock(return_value=version_process())):
        await engine.ensure_ready()
    return engine


class TestParsers:
    """Tests for ffmpeg/ffprobe output parsing."""

    def test_progress_line(self):
        """out_time_us is converted into a percentage of the expected duration."""
        assert parse_progress_line("out_time_us=5000000\n", 10.0) == 50.0
        assert parse_progress_line("out_time_ms=2500000", 10.0) == 25.0

    def test_progress_end(self):
        assert parse_progress_line("progress=end", None) == 100.0

    def test_progress_ignores_other_lines(self):
        assert parse_progress_line("frame=42", 10.0) is None
        assert parse_progress_line("out_time_us=N/A", 10.0) is None
        assert parse_progress_line("out_time_us=1000", None) is None

    def test_progress_is_clamped(self):
        assert parse_progress_line("out_time_us=20000000", 10.0) == 100.0

    def test_framerate(self):
        assert parse_framerate("30000/1001") == pytest.approx(29.97, abs=0.01)
        assert parse_framerate("25") == 25.0
        assert parse_framerate("0/0") is None
        assert parse_framerate(None) is None
        assert parse_framerate("garbage") is None

    def test_probe_output(self):
        """Duration, dimensions, fps and codec are read from ffprobe JSON."""
        raw = json.dumps({
            "streams": [
                {"codec_type": "audio", "codec_name": "aac"},
                {"codec_type": "video", "codec_name": "h264", "width": 1280,
                 "height": 720, "avg_frame_rate": "24/1", "r_frame_rate": "24/1"},
            ],
            "format": {"duration": "12.5"},
        })
        probe = parse_probe_output(raw)

        assert probe.duration_seconds == 12.5
        assert (probe.width, probe.height) == (1280, 720)
        assert probe.fps == 24.0
        assert probe.codec == "h264"

    def test_probe_output_without_video(self):
        with pytest.raises(ValueError):
            parse_probe_output(json.dumps({"streams": [], "format": {"duration": "3"}}))

    def test_probe_output_without_duration(self):
        raw = json.dumps({"streams": [{"codec_type": "video", "width": 2, "height": 2}], "format": {}})
        with pytest.raises(ValueError):
            parse_probe_output(raw)


class TestInitialization:
    """Tests for ensure_ready."""

    def test_missing_ffmpeg(self, temp_dir):
        """A missing binary raises EngineInitError."""
        engine = CodecEngine(scratch_parent=temp_dir)
        with patch("loopia.engine.codec.shutil.which", return_value=None):
            with pytest.raises(EngineInitError):
                asyncio.run(engine.ensure_ready())
        assert not engine.ready

    def test_explicit_path_must_exist(self, temp_dir):
        engine = CodecEngine(ffmpeg_path=str(temp_dir / "nope" / "ffmpeg"))
        with pytest.raises(EngineInitError):
            asyncio.run(engine.ensure_ready())

    def test_successful_init(self, temp_dir):
        """Init verifies the runtime and creates a private scratch directory."""
        reports = []
        engine = CodecEngine(scratch_parent=temp_dir)
        with patch("loopia.engine.codec.shutil.which", return_value="/usr/bin/ffmpeg"), \
             patch("loopia.engine.codec.asyncio.create_subprocess_exec",
                   new=AsyncMock(return_value=version_process())):
            result = asyncio.run(engine.ensure_ready(reports.append))

        assert result is engine
        assert engine.ready
        assert engine.version.startswith("ffmpeg version 6.1")
        assert engine.scratch_dir.parent == temp_dir
        assert engine.scratch_dir.name.startswith("loopia_")
        assert reports[0] == 0.0 and reports[-1] == 100.0

    def test_concurrent_callers_share_one_init(self, temp_dir):
        """Concurrent ensure_ready calls run the initialization once."""
        engine = CodecEngine(scratch_parent=temp_dir)
        spawn = AsyncMock(return_value=version_process())

        async def scenario():
            return await asyncio.gather(engine.ensure_ready(), engine.ensure_ready(), engine.ensure_ready())

        with patch("loopia.engine.codec.shutil.which", return_value="/usr/bin/ffmpeg"), \
             patch("loopia.engine.codec.asyncio.create_subprocess_exec", new=spawn):
            results = asyncio.run(scenario())

        assert all(r is engine for r in results)
        assert spawn.await_count == 1

    def test_failed_init_is_retried(self, temp_dir):
        """A failed attempt is not cached."""
        engine = CodecEngine(scratch_parent=temp_dir)
        with patch("loopia.engine.codec.shutil.which", return_value=None):
            with pytest.raises(EngineInitError):
                asyncio.run(engine.ensure_ready())

        with patch("loopia.engine.codec.shutil.which", return_value="/usr/bin/ffmpeg"), \
             patch("loopia.engine.codec.asyncio.create_subprocess_exec",
                   new=AsyncMock(return_value=version_process())):
            asyncio.run(engine.ensure_ready())
        assert engine.ready

    def test_broken_runtime(self, temp_dir):
        """A non-zero ffmpeg -version exit is an init failure."""
        engine = CodecEngine(scratch_parent=temp_dir)
        with patch("loopia.engine.codec.shutil.which", return_value="/usr/bin/ffmpeg"), \
             patch("loopia.engine.codec.asyncio.create_subprocess_exec",
                   new=AsyncMock(return_value=version_process(returncode=1))):
            with pytest.raises(EngineInitError):
                asyncio.run(engine.ensure_ready())


class TestScratchFilesystem:
    """Tests for stage/read/remove."""

    def test_stage_and_read(self, temp_dir):
        async def scenario():
            engine = await ready_engine(temp_dir)
            await engine.stage("run-a/input.mp4", b"payload")
            return engine, await engine.read("run-a/input.mp4")

        engine, data = asyncio.run(scenario())
        assert data == b"payload"
        assert (engine.scratch_dir / "run-a" / "input.mp4").exists()

    def test_read_missing(self, temp_dir):
        async def scenario():
            engine = await ready_engine(temp_dir)
            await engine.read("run-a/missing.mp4")

        with pytest.raises(ScratchNotFoundError):
            asyncio.run(scenario())

    def test_names_cannot_escape(self, temp_dir):
        """Names resolving outside scratch storage are rejected."""
        async def scenario():
            engine = await ready_engine(temp_dir)
            await engine.stage("../escaped.bin", b"x")

        with pytest.raises(ScratchIOError):
            asyncio.run(scenario())
        assert not (temp_dir / "escaped.bin").exists()

    def test_remove_never_raises(self, temp_dir):
        async def scenario():
            engine = await ready_engine(temp_dir)
            await engine.stage("run-a/a.bin", b"x")
            await engine.remove("run-a/a.bin")
            await engine.remove("run-a/a.bin")
            await engine.remove("run-a")
            return engine

        engine = asyncio.run(scenario())
        assert not (engine.scratch_dir / "run-a").exists()

    def test_close_removes_scratch(self, temp_dir):
        engine = asyncio.run(ready_engine(temp_dir))
        scratch = engine.scratch_dir
        engine.close()
        assert not scratch.exists()
        assert not engine.ready


class TestRun:
    """Tests for native invocations."""

    def test_progress_and_arguments(self, temp_dir):
        """Base flags are prepended and progress lines are reported."""
        reports = []

        async def scenario():
            engine = await ready_engine(temp_dir)
            process = streaming_process(b"frame=1\nout_time_us=1000000\nprogress=end\n", b"", 0)
            spawn = AsyncMock(return_value=process)
            with patch("loopia.engine.codec.asyncio.create_subprocess_exec", new=spawn):
                await engine.run(["-i", "in.mp4", "out.mp4"], reports.append, duration_hint=2.0)
            return engine, spawn

        engine, spawn = asyncio.run(scenario())
        args = spawn.await_args.args
        assert args[0] == "/usr/bin/ffmpeg"
        assert list(args[1:10]) == ["-hide_banner", "-nostdin", "-y", "-loglevel", "error", "-progress", "pipe:1", "-i", "in.mp4"]
        assert spawn.await_args.kwargs["cwd"] == str(engine.scratch_dir)
        assert reports == [50.0, 100.0]

    def test_non_zero_exit(self, temp_dir):
        """A failing invocation raises TranscodeError with the native message."""
        async def scenario():
            engine = await ready_engine(temp_dir)
            process = streaming_process(b"", b"Invalid data found when processing input\n", 1)
            with patch("loopia.engine.codec.asyncio.create_subprocess_exec",
                       new=AsyncMock(return_value=process)):
                await engine.run(["-i", "broken.mp4", "out.mp4"])

        with pytest.raises(TranscodeError) as exc_info:
            asyncio.run(scenario())

        error = exc_info.value
        assert error.return_code == 1
        assert "Invalid data" in error.native_message
        assert "broken.mp4" in error.command

    def test_run_requires_init(self):
        with pytest.raises(EngineInitError):
            asyncio.run(CodecEngine().run(["-version"]))

    def test_cancelled_invocation_kills_process(self, temp_dir):
        """Cancelling the awaiting task terminates and reaps ffmpeg."""
        async def scenario():
            engine = await ready_engine(temp_dir)
            process = MagicMock()
            process.stdout = asyncio.StreamReader()
            process.stderr = asyncio.StreamReader()
            process.returncode = None
            process.wait = AsyncMock(return_value=-9)
            with patch("loopia.engine.codec.asyncio.create_subprocess_exec",
                       new=AsyncMock(return_value=process)):
                task = asyncio.create_task(engine.run(["-i", "in.mp4", "out.mp4"]))
                for _ in range(5):
                    await asyncio.sleep(0)
                task.cancel()
                with pytest.raises(asyncio.CancelledError):
                    await task
            return process

        process = asyncio.run(scenario())
        process.kill.assert_called_once()
        process.wait.assert_awaited()

    def test_cancelled_probe_kills_process(self, temp_dir):
        async def scenario():
            engine = await ready_engine(temp_dir)
            await engine.stage("in.mp4", b"data")

            async def never_finishes():
                await asyncio.Event().wait()

            process = MagicMock()
            process.returncode = None
            process.communicate = AsyncMock(side_effect=never_finishes)
            process.wait = AsyncMock(return_value=-9)
            with patch("loopia.engine.codec.asyncio.create_subprocess_exec",
                       new=AsyncMock(return_value=process)):
                task = asyncio.create_task(engine.probe("in.mp4"))
                for _ in range(5):
                    await asyncio.sleep(0)
                task.cancel()
                with pytest.raises(asyncio.CancelledError):
                    await task
            return process

        process = asyncio.run(scenario())
        process.kill.assert_called_once()
        process.wait.assert_awaited()


class TestScratchSession:
    """Tests for per-run scratch tracking."""

    def test_names_are_prefixed(self, fake_codec):
        session = ScratchSession(fake_codec, "r1")
        assert session.name("main.mp4") == "run-r1/main.mp4"

    def test_cleanup_removes_everything(self, fake_codec):
        """Staged and produced artifacts are removed on cleanup."""
        fake_codec.ready = True
        session = ScratchSession(fake_codec, "r1")

        async def scenario():
            await session.stage("input.mp4", b"x")
            await session.run(["-i", session.name("input.mp4"), session.name("out.mp4")], outputs=["out.mp4"])
            await session.cleanup()

        asyncio.run(scenario())
        assert fake_codec.files == {}
        assert session.artifacts == []

    def test_rollback_only_removes_later_artifacts(self, fake_codec):
        fake_codec.ready = True
        session = ScratchSession(fake_codec, "r1")

        async def scenario():
            await session.stage("input.mp4", b"x")
            marker = session.checkpoint()
            await session.stage("frame.png", b"y")
            await session.run([session.name("bridge.mp4")], outputs=["bridge.mp4"])
            await session.rollback(marker)

        asyncio.run(scenario())
        assert list(fake_codec.files) == ["run-r1/input.mp4"]
        assert session.artifacts == ["input.mp4"]

    def test_cancelled_before_invocation(self, fake_codec):
        """A cancelled token stops the session before calling the engine."""
        token = CancellationToken("r1")
        token.cancel()
        session = ScratchSession(fake_codec, "r1", token)

        with pytest.raises(RunCancelled):
            asyncio.run(session.run(["out.mp4"]))
        assert fake_codec.commands == []

    def test_cancelled_during_invocation(self, fake_codec):
        """Cancellation requested while ffmpeg runs is observed afterwards."""
        token = CancellationToken("r1")
        session = ScratchSession(fake_codec, "r1", token)
        fake_codec.on_run = lambda args: token.cancel()

        with pytest.raises(RunCancelled):
            asyncio.run(session.run([session.name("out.mp4")], outputs=["out.mp4"]))
        assert len(fake_codec.commands) == 1
        assert "out.mp4" in session.artifacts
