"""Pipeline orchestrator for seamless loop generation.

A run moves through a fixed sequence of stages:

    ANALYZING -> INTERPOLATING -> GENERATING -> FINALIZING -> COMPLETE

and ends in exactly one terminal outcome: complete, failed or cancelled.
Progress for the whole run is reported on one 0-100 scale (see
loopia.core.progress for the band of each stage).

The only failure handled inside a run is the AI bridge: if the AI attempt
fails, its partial artifacts are discarded and the fallback bridge is built
instead, once. Every other failure ends the run.

Example usage:
    >>> pipeline = LoopPipeline(config=LoopConfig())
    >>> handle = await pipeline.start_run(
    ...     SourceVideo.from_path("clip.mp4"),
    ...     target_minutes=5,
    ...     on_progress=lambda p: print(f"{p:.0f}%"),
    ... )
    >>> output = await handle.result()
    >>> output.save("loop.mp4")
"""

import asyncio
import logging
import uuid
from typing import Callable, List, Optional, Tuple

from .config import LoopConfig
from .core.cancellation import CancellationToken
from .core.events import (
    CallbackObserver,
    EventBus,
    ModeChangedEvent,
    RunCancelledEvent,
    RunFailedEvent,
)
from .core.progress import ProgressReporter, ProgressSpan
from .core.types import (
    BridgeClip,
    BridgeStrategy,
    EncodeSettings,
    OutputHandle,
    PipelineOutcome,
    ProcessingMode,
    ProcessingRequest,
    RunStatus,
    SourceVideo,
    Stage,
)
from .engine.codec import ScratchSession
from .engine.context import EngineContext, get_engine_context
from .exceptions import (
    LoopiaError,
    PipelineError,
    RunCancelled,
    RunInProgressError,
    ScratchError,
    SourceUnreadableError,
    TranscodeError,
)
from .processors.assembler import LoopAssembler, compute_repeat_count
from .processors.bridge import BridgeSynthesizer
from .utils.logging import get_logger

logger = logging.getLogger(__name__)
run_log = get_logger("runs")

EVENT_SOURCE = "pipeline"

# Shorter clips leave no main body once the bridge trims are applied
MIN_SOURCE_SECONDS = 0.5


class RunHandle:
    """Handle to one in-flight run.

    Attributes:
        run_id: Identifier attached to every event of the run
        token: Cancellation token shared with every stage
    """

    def __init__(self, run_id: str, task: "asyncio.Task[PipelineOutcome]", token: CancellationToken) -> None:
        self.run_id = run_id
        self.token = token
        self._task = task

    def done(self) -> bool:
        return self._task.done()

    def cancel(self, reason: Optional[str] = None) -> None:
        """Request cooperative cancellation. Idempotent."""
        self.token.cancel(reason)

    async def outcome(self) -> PipelineOutcome:
        """Wait for the run and return its terminal outcome.

        Failures and token cancellation are reported through the outcome.
        Only cancelling the underlying task itself (``asyncio.Task.cancel``
        rather than :meth:`cancel`) propagates, as ``asyncio.CancelledError``.
        """
        return await self._task

    async def result(self) -> OutputHandle:
        """Wait for the run and return the output.

        Raises:
            LoopiaError: If the run failed
            RunCancelled: If the run was cancelled
        """
        outcome = await self._task
        if outcome.status is RunStatus.CANCELLED:
            raise RunCancelled(self.run_id)
        if outcome.status is RunStatus.FAILED:
            assert outcome.error is not None
            raise outcome.error
        assert outcome.output is not None
        return outcome.output


class LoopPipeline:
    """Turns a short clip into a seamlessly looping video of a target length.

    At most one run is active per pipeline; starting another while one is
    active raises RunInProgressError.

    Args:
        config: Loop configuration (ignored when context is given)
        context: Engine context to use (default: process-wide context)
        bus: Event bus for stage, progress and mode events
    """

    def __init__(
        self,
        config: Optional[LoopConfig] = None,
        context: Optional[EngineContext] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        if context is None:
            context = EngineContext(config) if config is not None else get_engine_context()
        self.context = context
        self.config = context.config
        self.bus = bus or EventBus()
        self.assembler = LoopAssembler(self.config)
        self._active: Optional[RunHandle] = None

    @property
    def active_run(self) -> Optional[RunHandle]:
        if self._active is not None and not self._active.done():
            return self._active
        return None

    def is_ai_backend_available(self) -> bool:
        """Whether a run would attempt the AI bridge. Does not load anything."""
        return self.context.interpolator.is_available()

    def cancel(self, handle: Optional[RunHandle] = None) -> None:
        """Cancel a run (default: the active one). Idempotent."""
        target = handle or self._active
        if target is not None:
            target.cancel()

    async def start_run(
        self,
        source: SourceVideo,
        target_minutes: float,
        on_stage_change: Optional[Callable[[Stage], None]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
        on_mode_change: Optional[Callable[[str], None]] = None,
        observer: Optional[CallbackObserver] = None,
    ) -> RunHandle:
        """Start a run in the background and return its handle.

        Raises:
            RunInProgressError: If another run is active on this pipeline
            ConfigurationError: If target_minutes is not positive
        """
        active = self.active_run
        if active is not None:
            raise RunInProgressError(active.run_id)

        request = ProcessingRequest(source=source, target_duration_minutes=target_minutes)

        observers: List[CallbackObserver] = []
        if on_stage_change or on_progress or on_mode_change:
            observers.append(CallbackObserver(on_stage_change, on_progress, on_mode_change))
        if observer is not None:
            observers.append(observer)

        run_id = uuid.uuid4().hex[:12]
        token = CancellationToken(run_id)
        for obs in observers:
            obs.attach(self.bus)

        task = asyncio.create_task(self._execute(request, run_id, token, observers))
        handle = RunHandle(run_id, task, token)
        self._active = handle
        logger.info(
            f"Run {run_id} started: {source.size_bytes} bytes -> {request.target_duration_minutes:g} min"
        )
        return handle

    async def run(
        self,
        source: SourceVideo,
        target_minutes: float,
        on_stage_change: Optional[Callable[[Stage], None]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
        on_mode_change: Optional[Callable[[str], None]] = None,
    ) -> PipelineOutcome:
        """Start a run and wait for its outcome."""
        handle = await self.start_run(
            source,
            target_minutes,
            on_stage_change=on_stage_change,
            on_progress=on_progress,
            on_mode_change=on_mode_change,
        )
        return await handle.outcome()

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def _execute(
        self,
        request: ProcessingRequest,
        run_id: str,
        token: CancellationToken,
        observers: List[CallbackObserver],
    ) -> PipelineOutcome:
        reporter = ProgressReporter(self.bus, run_id=run_id, source=EVENT_SOURCE)
        session = ScratchSession(self.context.codec, run_id, token)

        try:
            output = await self._run_stages(request, session, reporter)
            await session.cleanup()
            # Observers are still attached so callers see the terminal stage.
            reporter.enter(Stage.COMPLETE)
            reporter.close()
        except RunCancelled:
            await session.cleanup()
            run_log.info("Run cancelled", run_id=run_id, stage=self._stage_name(reporter))
            self.bus.emit(RunCancelledEvent(EVENT_SOURCE, stage=reporter.stage, run_id=run_id))
            reporter.close()
            return PipelineOutcome(status=RunStatus.CANCELLED)
        except asyncio.CancelledError:
            # Task cancelled from outside rather than through the token
            await session.cleanup()
            reporter.close()
            raise
        except Exception as e:
            if isinstance(e, LoopiaError):
                error = e
                logger.error(f"Run {run_id} failed during {self._stage_name(reporter)}: {e}")
            else:
                error = PipelineError(
                    f"Unexpected failure: {e}",
                    stage=self._stage_name(reporter),
                    cause=e,
                )
                logger.exception(f"Run {run_id} failed unexpectedly")
            await session.cleanup()
            self.bus.emit(RunFailedEvent(
                EVENT_SOURCE,
                error_type=type(error).__name__,
                error_message=str(error),
                stage=reporter.stage,
                run_id=run_id,
            ))
            reporter.close()
            return PipelineOutcome(status=RunStatus.FAILED, error=error)
        finally:
            for obs in observers:
                obs.detach(self.bus)

        run_log.info(
            "Run complete",
            run_id=run_id,
            duration_seconds=output.duration_seconds,
            repeat_count=output.repeat_count,
            size_bytes=output.size_bytes,
            mode=output.mode.value,
            compressed=output.compressed,
        )
        return PipelineOutcome(status=RunStatus.COMPLETE, output=output)

    @staticmethod
    def _stage_name(reporter: ProgressReporter) -> str:
        return reporter.stage.value if reporter.stage else "startup"

    async def _run_stages(
        self,
        request: ProcessingRequest,
        session: ScratchSession,
        reporter: ProgressReporter,
    ) -> OutputHandle:
        token = session.token
        target_minutes = request.target_duration_minutes

        # Analyzing
        span = reporter.enter(Stage.ANALYZING)
        await session.engine.ensure_ready(span.sub(0.0, 50.0))
        token.raise_if_cancelled()
        source_name, source = await self._analyze(session, request.source)
        span(80.0)
        settings = self.assembler.select_encode_settings(source, target_minutes)
        span.complete()
        token.raise_if_cancelled()

        # Interpolating
        span = reporter.enter(Stage.INTERPOLATING)
        bridge, mode = await self._synthesize_bridge(session, source_name, source, settings, reporter, span)
        token.raise_if_cancelled()

        # Generating
        span = reporter.enter(Stage.GENERATING)
        unit = await self.assembler.build_loop_unit(
            session, source_name, source, bridge, settings, span.sub(0.0, 95.0)
        )
        repeat_count = compute_repeat_count(unit.duration_seconds, target_minutes)
        span.complete()
        token.raise_if_cancelled()

        # Finalizing
        span = reporter.enter(Stage.FINALIZING)
        output_name = await self.assembler.expand_loop(
            session, unit, repeat_count, request.target_seconds, span.sub(0.0, 90.0)
        )
        data = await session.read(output_name)
        span.complete()

        return OutputHandle(
            data=data,
            duration_seconds=request.target_seconds,
            repeat_count=repeat_count,
            mode=mode,
            compressed=settings.compressed,
        )

    async def _analyze(self, session: ScratchSession, source: SourceVideo) -> Tuple[str, SourceVideo]:
        """Stage the input and read its metadata."""
        source_name = await session.stage(source.name, source.data)
        try:
            probe = await session.probe(source.name)
        except (TranscodeError, ScratchError) as e:
            raise SourceUnreadableError(
                f"Cannot read video metadata: {e.message}",
                source_name=source.name,
                cause=e,
            )
        if probe.duration_seconds < MIN_SOURCE_SECONDS:
            raise SourceUnreadableError(
                f"Source is too short to loop ({probe.duration_seconds:.3f}s)",
                source_name=source.name,
            )

        logger.info(
            f"Source: {probe.width}x{probe.height} @ {probe.fps:.2f} fps, "
            f"{probe.duration_seconds:.2f}s, codec {probe.codec}"
        )
        return source_name, source.with_probe(probe)

    async def _synthesize_bridge(
        self,
        session: ScratchSession,
        source_name: str,
        source: SourceVideo,
        settings: EncodeSettings,
        reporter: ProgressReporter,
        span: ProgressSpan,
    ) -> Tuple[BridgeClip, ProcessingMode]:
        """Run the AI bridge if possible, the fallback otherwise or on failure."""
        synthesizer = BridgeSynthesizer(self.config, self.context.interpolator)

        if self.is_ai_backend_available():
            self._emit_mode(session.run_id, ProcessingMode.AI)
            marker = session.checkpoint()
            try:
                bridge = await synthesizer.synthesize(
                    session, source_name, source, BridgeStrategy.AI, settings, span
                )
                return bridge, ProcessingMode.AI
            except RunCancelled:
                raise
            except Exception as e:
                logger.warning(f"AI bridge failed, switching to fallback: {e!r}")
                await session.rollback(marker)
                self._emit_mode(session.run_id, ProcessingMode.FALLBACK_DUE_TO_ERROR, reason=str(e))
                mode = ProcessingMode.FALLBACK_DUE_TO_ERROR
                span = reporter.remaining(Stage.INTERPOLATING)
        else:
            logger.info("AI backend unavailable, using fallback bridge")
            self._emit_mode(session.run_id, ProcessingMode.FALLBACK)
            mode = ProcessingMode.FALLBACK

        session.token.raise_if_cancelled()
        bridge = await synthesizer.synthesize(
            session, source_name, source, BridgeStrategy.FALLBACK, settings, span
        )
        return bridge, mode

    def _emit_mode(self, run_id: str, mode: ProcessingMode, reason: Optional[str] = None) -> None:
        self.bus.emit(ModeChangedEvent(EVENT_SOURCE, mode, reason=reason, run_id=run_id))
