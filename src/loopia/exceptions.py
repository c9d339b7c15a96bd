"""Exception types raised by Loopia.

Every failure that ends a loop-generation run derives from
:class:`LoopiaError` so callers can branch on type instead of message::

    LoopiaError
    +-- ConfigurationError
    +-- SourceUnreadableError
    +-- EngineInitError
    +-- ModelLoadError
    +-- InterpolationError
    +-- TranscodeError
    +-- ScratchError
    |   +-- ScratchIOError
    |   +-- ScratchNotFoundError
    +-- RunInProgressError
    +-- PipelineError

:class:`RunCancelled` is not a failure and stays outside this tree.
"""

from typing import Any, Dict, List, Optional, Sequence


class LoopiaError(Exception):
    """Common base carrying a message, context fields and an optional cause.

    Keyword context passed by subclasses lands in ``details``; entries whose
    value is None or empty are left out. ``cause`` is also chained as
    ``__cause__`` so tracebacks show the underlying error.
    """

    def __init__(self, message: str, *, cause: Optional[BaseException] = None, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = {
            key: value for key, value in context.items() if value is not None and value != ""
        }
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if not self.details:
            return self.message
        context = ", ".join(f"{key}={value}" for key, value in self.details.items())
        return f"{self.message} [{context}]"

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form used in failure events and JSON logs."""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "details": dict(self.details),
            "cause": None if self.cause is None else str(self.cause),
        }


class ConfigurationError(LoopiaError):
    """A setting or request parameter is out of range."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[Any] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, cause=cause, config_key=config_key, config_value=config_value)


class SourceUnreadableError(LoopiaError):
    """ffprobe could not get usable metadata out of the input clip."""

    def __init__(self, message: str, source_name: Optional[str] = None, cause: Optional[BaseException] = None) -> None:
        super().__init__(message, cause=cause, source=source_name)


class EngineInitError(LoopiaError):
    """The codec runtime is unusable: missing ffmpeg/ffprobe, or no scratch directory.

    ``component`` names the part that failed (``ffmpeg``, ``ffprobe`` or ``scratch``).
    """

    def __init__(self, message: str, component: Optional[str] = None, cause: Optional[BaseException] = None) -> None:
        super().__init__(message, cause=cause, component=component)


class ModelLoadError(LoopiaError):
    def __init__(
        self,
        message: str,
        model_id: Optional[str] = None,
        backend: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, cause=cause, model_id=model_id, backend=backend)


class InterpolationError(LoopiaError):
    """Inference failed on intermediate frame ``step`` (1-based)."""

    def __init__(self, message: str, step: Optional[int] = None, cause: Optional[BaseException] = None) -> None:
        super().__init__(message, cause=cause, step=step)


class TranscodeError(LoopiaError):
    """ffmpeg or ffprobe exited abnormally.

    The full stderr is kept on ``native_message``; ``details`` carries only
    its last 500 characters, which is where ffmpeg prints the actual error.
    """

    def __init__(
        self,
        message: str,
        command: Optional[Sequence[str]] = None,
        native_message: str = "",
        return_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        self.command: List[str] = [str(arg) for arg in command or ()]
        self.native_message = native_message
        self.return_code = return_code
        super().__init__(
            message,
            cause=cause,
            command=" ".join(self.command),
            return_code=return_code,
            stderr=native_message[-500:],
        )


class ScratchError(LoopiaError):
    """Scratch storage failure for the artifact ``name``."""

    def __init__(self, message: str, name: Optional[str] = None, cause: Optional[BaseException] = None) -> None:
        super().__init__(message, cause=cause, name=name)
        self.name = name


class ScratchIOError(ScratchError):
    pass


class ScratchNotFoundError(ScratchError):
    pass


class RunInProgressError(LoopiaError):
    """The pipeline already has an active run; only one runs at a time."""

    def __init__(self, active_run_id: str) -> None:
        super().__init__("Another run is already in progress", active_run=active_run_id)
        self.active_run_id = active_run_id


class PipelineError(LoopiaError):
    """Anything unexpected raised inside a stage, wrapped with the stage name."""

    def __init__(self, message: str, stage: Optional[str] = None, cause: Optional[BaseException] = None) -> None:
        super().__init__(message, cause=cause, stage=stage)


class RunCancelled(Exception):
    """The run stopped at a checkpoint because cancellation was requested."""

    def __init__(self, run_id: Optional[str] = None) -> None:
        super().__init__(f"Run {run_id} was cancelled" if run_id else "Run was cancelled")
        self.run_id = run_id
