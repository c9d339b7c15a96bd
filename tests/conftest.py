"""Shared pytest fixtures for Loopia tests."""
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Dict, List, Optional

import cv2
import numpy as np
import pytest

from loopia.config import LoopConfig
from loopia.core.types import SourceVideo, VideoProbe
from loopia.engine.context import EngineContext
from loopia.exceptions import (
    InterpolationError,
    ModelLoadError,
    ScratchNotFoundError,
    TranscodeError,
)


# ============================================================================
# ffmpeg helpers
# ============================================================================

def check_ffmpeg_available() -> bool:
    """Check if ffmpeg and ffprobe are available for real transcodes."""
    if not shutil.which("ffmpeg") or not shutil.which("ffprobe"):
        return False
    try:
        result = subprocess.run(["ffmpeg", "-version"], capture_output=True, timeout=5)
        return result.returncode == 0
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return False


def generate_test_video_ffmpeg(
    output_path: Path,
    duration_seconds: float = 3.0,
    width: int = 320,
    height: int = 240,
    fps: float = 24.0,
) -> bool:
    """Generate a silent H.264 test clip with ffmpeg's testsrc2 pattern."""
    cmd = [
        "ffmpeg", "-y",
        "-f", "lavfi",
        "-i", f"testsrc2=duration={duration_seconds}:size={width}x{height}:rate={fps}",
        "-c:v", "libx264",
        "-pix_fmt", "yuv420p",
        "-preset", "ultrafast",
        "-crf", "28",
        str(output_path),
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, timeout=60)
        return result.returncode == 0 and output_path.exists()
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return False


def solid_png(width: int = 64, height: int = 36, value: int = 128) -> bytes:
    """PNG bytes of a solid grey image."""
    ok, buffer = cv2.imencode(".png", np.full((height, width, 3), value, dtype=np.uint8))
    assert ok
    return buffer.tobytes()


# ============================================================================
# Fake engines
# ============================================================================

class FakeCodecEngine:
    """In-memory stand-in for CodecEngine.

    Every run() records its arguments and "writes" its last argument (the
    output name). PNG outputs get real PNG bytes so frame decoding works.
    """

    def __init__(self, probe: Optional[VideoProbe] = None) -> None:
        self.files: Dict[str, bytes] = {}
        self.commands: List[List[str]] = []
        self.ready = False
        self.init_calls = 0
        self.probe_result = probe or VideoProbe(
            duration_seconds=10.0, width=640, height=360, fps=30.0, codec="h264"
        )
        self.probe_overrides: Dict[str, VideoProbe] = {}
        self.probe_error: Optional[Exception] = None
        self.fail_on: Optional[str] = None
        self.on_run: Optional[Callable[[List[str]], None]] = None

    async def ensure_ready(self, progress_callback=None):
        self.init_calls += 1
        if progress_callback:
            progress_callback(0.0)
            progress_callback(100.0)
        self.ready = True
        return self

    def exists(self, name: str) -> bool:
        return name in self.files

    async def stage(self, name: str, data: bytes) -> None:
        self.files[name] = data

    async def run(self, args, progress_callback=None, duration_hint=None) -> str:
        args = [str(a) for a in args]
        self.commands.append(args)
        if self.on_run:
            self.on_run(args)
        if self.fail_on and any(self.fail_on in a for a in args):
            raise TranscodeError(
                "ffmpeg exited with status 1",
                command=args,
                native_message="simulated failure",
                return_code=1,
            )
        if progress_callback:
            progress_callback(50.0)
            progress_callback(100.0)
        output = args[-1]
        if output.endswith(".png"):
            self.files[output] = solid_png()
        else:
            self.files[output] = f"video:{output}".encode()
        return ""

    async def probe(self, name: str) -> VideoProbe:
        if self.probe_error is not None:
            raise self.probe_error
        if name not in self.files:
            raise ScratchNotFoundError(f"Artifact not found: {name}", name=name)
        for suffix, probe in self.probe_overrides.items():
            if name.endswith(suffix):
                return probe
        return self.probe_result

    async def read(self, name: str) -> bytes:
        if name not in self.files:
            raise ScratchNotFoundError(f"Artifact not found: {name}", name=name)
        return self.files[name]

    async def remove(self, name: str) -> None:
        self.files.pop(name, None)
        for key in [k for k in self.files if k.startswith(name + "/")]:
            del self.files[key]

    def close(self) -> None:
        self.ready = False


class FakeInterpolationEngine:
    """Linear blend in place of RIFE inference."""

    def __init__(
        self,
        available: bool = True,
        fail_load: bool = False,
        fail_step: Optional[int] = None,
    ) -> None:
        self.available = available
        self.fail_load = fail_load
        self.fail_step = fail_step
        self.load_calls = 0
        self.timesteps: List[float] = []

    def is_available(self) -> bool:
        return self.available

    async def ensure_model_ready(self, progress_callback=None):
        self.load_calls += 1
        if self.fail_load:
            raise ModelLoadError("simulated load failure", model_id="rife")
        if progress_callback:
            progress_callback(100.0)
        return object()

    async def interpolate(self, frame_a, frame_b, steps=None):
        if steps is None:
            steps = 8
        for i in range(1, steps + 1):
            if self.fail_step == i:
                raise InterpolationError("simulated inference failure", step=i)
            t = i / (steps + 1)
            self.timesteps.append(t)
            blended = frame_a.astype(np.float32) * (1 - t) + frame_b.astype(np.float32) * t
            yield np.clip(np.rint(blended), 0, 255).astype(np.uint8)

    def release(self) -> None:
        pass


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    if temp_path.exists():
        shutil.rmtree(temp_path)


@pytest.fixture
def loop_config(temp_dir) -> LoopConfig:
    """Default configuration with the model cache inside temp_dir."""
    return LoopConfig(model_dir=temp_dir / "models", download_retry_delay=0.0)


@pytest.fixture
def fake_codec() -> FakeCodecEngine:
    return FakeCodecEngine()


@pytest.fixture
def fake_interpolator() -> FakeInterpolationEngine:
    return FakeInterpolationEngine()


@pytest.fixture
def fake_context(loop_config, fake_codec, fake_interpolator) -> EngineContext:
    """Engine context wired to the fake engines."""
    return EngineContext(loop_config, codec=fake_codec, interpolator=fake_interpolator)


@pytest.fixture
def sample_source() -> SourceVideo:
    """Source clip whose metadata comes from the fake codec's probe."""
    return SourceVideo(data=b"\x00\x00\x00\x18ftypisom" + b"\x00" * 1000)


@pytest.fixture(scope="session")
def has_ffmpeg() -> bool:
    return check_ffmpeg_available()


@pytest.fixture(scope="session")
def test_video_3s(tmp_path_factory, has_ffmpeg) -> Path:
    """Generate a 3-second 320x240 clip; skips when ffmpeg is unavailable."""
    if not has_ffmpeg:
        pytest.skip("ffmpeg not available")
    path = tmp_path_factory.mktemp("videos") / "clip_3s.mp4"
    if not generate_test_video_ffmpeg(path, duration_seconds=3.0):
        pytest.skip("ffmpeg could not generate a test video")
    return path
