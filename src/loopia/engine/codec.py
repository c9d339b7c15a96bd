"""Codec engine adapter over the ffmpeg/ffprobe executables.

The engine owns a private scratch directory. Callers never see filesystem
paths: they stage bytes under a name, run ffmpeg invocations whose arguments
refer to those names (ffmpeg runs with the scratch directory as its working
directory), read results back and remove what they created.

Native invocations run as asyncio subprocesses, so a long transcode suspends
the calling task without blocking the event loop.
"""

import asyncio
import json
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from ..core.cancellation import CancellationToken
from ..core.types import VideoProbe
from ..exceptions import (
    EngineInitError,
    ScratchIOError,
    ScratchNotFoundError,
    TranscodeError,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

# Prepended to every ffmpeg invocation. -progress pipe:1 streams key=value
# progress lines on stdout.
FFMPEG_BASE_ARGS = [
    "-hide_banner",
    "-nostdin",
    "-y",
    "-loglevel", "error",
    "-progress", "pipe:1",
]

DEFAULT_FPS = 30.0


def parse_framerate(value: Optional[str]) -> Optional[float]:
    """Parse ffprobe framerate strings like 30000/1001 safely."""
    if not value:
        return None
    try:
        if "/" in value:
            num, den = value.split("/", maxsplit=1)
            denominator = float(den)
            if denominator == 0:
                return None
            fps = float(num) / denominator
        else:
            fps = float(value)
    except (TypeError, ValueError):
        return None
    if fps <= 0 or fps > 240:
        return None
    return fps


def parse_progress_line(line: str, duration_hint: Optional[float]) -> Optional[float]:
    """Convert one ``-progress`` output line into a 0-100 percentage.

    Returns None for lines that carry no position information.
    """
    key, sep, value = line.strip().partition("=")
    if not sep:
        return None
    if key == "progress" and value == "end":
        return 100.0
    if key not in ("out_time_us", "out_time_ms") or not duration_hint or duration_hint <= 0:
        return None
    try:
        # ffmpeg reports microseconds under both keys
        seconds = int(value) / 1_000_000
    except ValueError:
        return None
    return min(max(seconds / duration_hint * 100.0, 0.0), 100.0)


def parse_probe_output(raw: str) -> VideoProbe:
    """Build a VideoProbe from ffprobe JSON output.

    Raises:
        ValueError: If the output has no usable video stream or duration
    """
    info = json.loads(raw)
    video_stream = next(
        (s for s in info.get("streams", []) if s.get("codec_type") == "video"),
        None,
    )
    if video_stream is None:
        raise ValueError("no video stream")

    duration = info.get("format", {}).get("duration") or video_stream.get("duration")
    try:
        duration_seconds = float(duration)
    except (TypeError, ValueError):
        raise ValueError(f"invalid duration: {duration!r}")
    if duration_seconds <= 0:
        raise ValueError(f"non-positive duration: {duration_seconds}")

    width = int(video_stream.get("width") or 0)
    height = int(video_stream.get("height") or 0)
    if width <= 0 or height <= 0:
        raise ValueError(f"invalid dimensions: {width}x{height}")

    fps = (
        parse_framerate(video_stream.get("avg_frame_rate"))
        or parse_framerate(video_stream.get("r_frame_rate"))
        or DEFAULT_FPS
    )

    return VideoProbe(
        duration_seconds=duration_seconds,
        width=width,
        height=height,
        fps=fps,
        codec=video_stream.get("codec_name"),
    )


async def _reap(process: asyncio.subprocess.Process) -> None:
    """Kill an interrupted child and wait for it so it cannot outlive its run."""
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


class CodecEngine:
    """Lazily initialized ffmpeg runtime with a private scratch filesystem.

    Args:
        ffmpeg_path: Explicit ffmpeg binary (None = search PATH)
        ffprobe_path: Explicit ffprobe binary (None = search PATH)
        scratch_parent: Directory to create the scratch dir in (None = system temp)
    """

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        ffprobe_path: Optional[str] = None,
        scratch_parent: Optional[Path] = None,
    ) -> None:
        self._ffmpeg_hint = ffmpeg_path
        self._ffprobe_hint = ffprobe_path
        self._scratch_parent = scratch_parent

        self.ffmpeg: Optional[str] = None
        self.ffprobe: Optional[str] = None
        self.version: Optional[str] = None
        self._scratch_dir: Optional[Path] = None
        self._ready = False

        self._init_lock = asyncio.Lock()
        self._exec_lock = asyncio.Lock()

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def scratch_dir(self) -> Path:
        if self._scratch_dir is None:
            raise EngineInitError("Codec engine is not initialized", component="scratch")
        return self._scratch_dir

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def ensure_ready(self, progress_callback: Optional[ProgressCallback] = None) -> "CodecEngine":
        """Initialize the engine once; concurrent callers share the attempt.

        Raises:
            EngineInitError: If the runtime cannot be loaded
        """
        if self._ready:
            return self

        async with self._init_lock:
            if not self._ready:
                await self._initialize(progress_callback)
        return self

    async def _initialize(self, progress_callback: Optional[ProgressCallback]) -> None:
        report = progress_callback or (lambda _p: None)
        report(0.0)

        ffmpeg = self._resolve_binary(self._ffmpeg_hint, "ffmpeg")
        ffprobe = self._resolve_binary(self._ffprobe_hint, "ffprobe")
        report(30.0)

        try:
            process = await asyncio.create_subprocess_exec(
                ffmpeg, "-version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
        except OSError as e:
            raise EngineInitError(f"Cannot execute ffmpeg: {e}", component="ffmpeg", cause=e)
        if process.returncode != 0:
            raise EngineInitError(
                f"ffmpeg -version exited with {process.returncode}: {stderr.decode(errors='replace')}",
                component="ffmpeg",
            )
        lines = stdout.decode(errors="replace").splitlines()
        version = lines[0] if lines else "unknown"
        report(70.0)

        try:
            if self._scratch_parent is not None:
                Path(self._scratch_parent).mkdir(parents=True, exist_ok=True)
            scratch = Path(tempfile.mkdtemp(
                prefix="loopia_",
                dir=str(self._scratch_parent) if self._scratch_parent else None,
            ))
        except OSError as e:
            raise EngineInitError(f"Cannot create scratch directory: {e}", component="scratch", cause=e)

        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.version = version
        self._scratch_dir = scratch
        self._ready = True
        report(100.0)
        logger.info(f"Codec engine ready ({version}), scratch at {scratch}")

    @staticmethod
    def _resolve_binary(explicit: Optional[str], name: str) -> str:
        if explicit:
            candidate = Path(explicit).expanduser()
            if not candidate.is_file():
                raise EngineInitError(f"{name} not found at: {candidate}", component=name)
            return str(candidate)

        found = shutil.which(name)
        if not found:
            raise EngineInitError(
                f"{name} not found. Please install FFmpeg:\n"
                "  Ubuntu/Debian: sudo apt-get install ffmpeg\n"
                "  macOS: brew install ffmpeg\n"
                "  Windows: Download from https://ffmpeg.org/download.html",
                component=name,
            )
        return found

    def close(self) -> None:
        """Delete the scratch directory. The next ensure_ready starts over."""
        scratch = self._scratch_dir
        self._ready = False
        self._scratch_dir = None
        if scratch is not None:
            shutil.rmtree(scratch, ignore_errors=True)
            logger.debug(f"Removed scratch directory {scratch}")

    # ------------------------------------------------------------------
    # Scratch filesystem
    # ------------------------------------------------------------------

    def _path(self, name: str) -> Path:
        root = self.scratch_dir.resolve()
        path = (root / name).resolve()
        if path == root or root not in path.parents:
            raise ScratchIOError("Artifact name escapes scratch storage", name=name)
        return path

    def exists(self, name: str) -> bool:
        return self._path(name).exists()

    async def stage(self, name: str, data: bytes) -> None:
        """Write bytes into scratch storage under name.

        Raises:
            ScratchIOError: If the write cannot complete
        """
        path = self._path(name)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, _write)
        except OSError as e:
            raise ScratchIOError(f"Failed to stage {name}: {e}", name=name, cause=e)
        logger.debug(f"Staged {name} ({len(data)} bytes)")

    async def read(self, name: str) -> bytes:
        """Read a finished artifact.

        Raises:
            ScratchNotFoundError: If the artifact does not exist
        """
        path = self._path(name)
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, path.read_bytes)
        except FileNotFoundError as e:
            raise ScratchNotFoundError(f"Artifact not found: {name}", name=name, cause=e)
        except OSError as e:
            raise ScratchIOError(f"Failed to read {name}: {e}", name=name, cause=e)

    async def remove(self, name: str) -> None:
        """Delete an artifact (file or directory). Never raises."""
        try:
            path = self._path(name)
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()
        except FileNotFoundError:
            pass
        except Exception as e:
            logger.warning(f"Failed to remove scratch artifact {name}: {e}")

    # ------------------------------------------------------------------
    # Native invocations
    # ------------------------------------------------------------------

    async def run(
        self,
        args: Sequence[str],
        progress_callback: Optional[ProgressCallback] = None,
        duration_hint: Optional[float] = None,
    ) -> str:
        """Execute one ffmpeg invocation inside scratch storage.

        Args:
            args: ffmpeg arguments (without the binary), names relative to scratch
            progress_callback: Receives 0-100 while the invocation runs
            duration_hint: Expected output duration, needed for percentages

        Returns:
            stderr output of the invocation

        Raises:
            TranscodeError: On a non-zero exit
        """
        if not self._ready or self.ffmpeg is None:
            raise EngineInitError("Codec engine is not initialized", component="ffmpeg")

        cmd = [self.ffmpeg, *FFMPEG_BASE_ARGS, *[str(a) for a in args]]
        logger.debug(f"Running: {' '.join(cmd)}")

        async with self._exec_lock:
            try:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=str(self.scratch_dir),
                )
            except OSError as e:
                raise TranscodeError(f"Failed to start ffmpeg: {e}", command=cmd, cause=e)

            async def _pump_progress() -> None:
                assert process.stdout is not None
                async for raw in process.stdout:
                    percent = parse_progress_line(raw.decode(errors="replace"), duration_hint)
                    if percent is not None and progress_callback:
                        progress_callback(percent)

            assert process.stderr is not None
            try:
                _, stderr = await asyncio.gather(_pump_progress(), process.stderr.read())
                returncode = await process.wait()
            except BaseException:
                await _reap(process)
                raise

        native_message = stderr.decode(errors="replace").strip()
        if returncode != 0:
            logger.error(f"ffmpeg exited with {returncode}: {native_message[-500:]}")
            raise TranscodeError(
                f"ffmpeg exited with status {returncode}",
                command=cmd,
                native_message=native_message,
                return_code=returncode,
            )
        if native_message:
            logger.debug(f"ffmpeg output: {native_message}")
        return native_message

    async def probe(self, name: str) -> VideoProbe:
        """Read duration, dimensions, frame rate and codec of an artifact.

        Raises:
            ScratchNotFoundError: If the artifact does not exist
            TranscodeError: If ffprobe fails or reports no usable video
        """
        if not self._ready or self.ffprobe is None:
            raise EngineInitError("Codec engine is not initialized", component="ffprobe")
        if not self.exists(name):
            raise ScratchNotFoundError(f"Artifact not found: {name}", name=name)

        cmd = [
            self.ffprobe,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            name,
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.scratch_dir),
            )
        except OSError as e:
            raise TranscodeError(f"Failed to start ffprobe: {e}", command=cmd, cause=e)
        try:
            stdout, stderr = await process.communicate()
        except BaseException:
            await _reap(process)
            raise

        native_message = stderr.decode(errors="replace").strip()
        if process.returncode != 0:
            raise TranscodeError(
                f"ffprobe exited with status {process.returncode}",
                command=cmd,
                native_message=native_message,
                return_code=process.returncode,
            )
        try:
            return parse_probe_output(stdout.decode(errors="replace"))
        except (ValueError, json.JSONDecodeError) as e:
            raise TranscodeError(
                f"Unusable ffprobe output for {name}: {e}",
                command=cmd,
                native_message=native_message,
                cause=e,
            )


class ScratchSession:
    """Per-run view of the codec engine's scratch storage.

    All names are placed under a run directory and every artifact the run
    stages or produces is recorded, so the run can always remove exactly what
    it created. Native invocations check the run's cancellation token before
    and after executing.
    """

    def __init__(
        self,
        engine: CodecEngine,
        run_id: str,
        token: Optional[CancellationToken] = None,
    ) -> None:
        self.engine = engine
        self.run_id = run_id
        self.token = token or CancellationToken(run_id)
        self.prefix = f"run-{run_id}"
        self._artifacts: List[str] = []

    @property
    def artifacts(self) -> List[str]:
        return list(self._artifacts)

    def name(self, local: str) -> str:
        """Scratch name of a run-local artifact."""
        return f"{self.prefix}/{local}"

    def track(self, local: str) -> str:
        """Record an artifact for cleanup and return its scratch name."""
        if local not in self._artifacts:
            self._artifacts.append(local)
        return self.name(local)

    def checkpoint(self) -> int:
        """Marker for rollback(): the number of artifacts recorded so far."""
        return len(self._artifacts)

    async def rollback(self, marker: int) -> None:
        """Remove every artifact recorded after marker."""
        discarded = self._artifacts[marker:]
        del self._artifacts[marker:]
        for local in reversed(discarded):
            await self.engine.remove(self.name(local))
        if discarded:
            logger.debug(f"Run {self.run_id}: discarded {len(discarded)} artifacts")

    async def stage(self, local: str, data: bytes) -> str:
        self.token.raise_if_cancelled()
        name = self.track(local)
        await self.engine.stage(name, data)
        return name

    async def run(
        self,
        args: Sequence[str],
        outputs: Sequence[str] = (),
        progress_callback: Optional[ProgressCallback] = None,
        duration_hint: Optional[float] = None,
    ) -> str:
        """Run one native invocation; outputs are run-local names it writes."""
        self.token.raise_if_cancelled()
        for local in outputs:
            self.track(local)
        stderr = await self.engine.run(
            args,
            progress_callback=progress_callback,
            duration_hint=duration_hint,
        )
        self.token.raise_if_cancelled()
        return stderr

    async def probe(self, local: str) -> VideoProbe:
        return await self.engine.probe(self.name(local))

    async def read(self, local: str) -> bytes:
        return await self.engine.read(self.name(local))

    async def remove(self, local: str) -> None:
        if local in self._artifacts:
            self._artifacts.remove(local)
        await self.engine.remove(self.name(local))

    async def cleanup(self) -> None:
        """Best-effort removal of everything this run created."""
        count = len(self._artifacts)
        for local in reversed(self._artifacts):
            await self.engine.remove(self.name(local))
        self._artifacts.clear()
        if self.engine.ready:
            await self.engine.remove(self.prefix)
        logger.debug(f"Run {self.run_id}: cleaned up {count} scratch artifacts")
