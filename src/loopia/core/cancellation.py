"""Cooperative cancellation for pipeline runs."""

import logging
import threading
from typing import Optional

from ..exceptions import RunCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """Shared cancellation flag passed through every stage entry point.

    Cancellation is cooperative: setting the flag never interrupts a native
    invocation that is already running. Stages poll the token at suspension
    points (stage boundaries, before and after each native call) and stop by
    raising RunCancelled.

    The flag is backed by a threading.Event so it can be set from signal
    handlers or other threads as well as from the event loop.
    """

    def __init__(self, run_id: Optional[str] = None) -> None:
        self.run_id = run_id
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        """Request cancellation. Idempotent."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.info(f"Cancellation requested for run {self.run_id}" + (f": {reason}" if reason else ""))

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self) -> None:
        """Raise RunCancelled when cancellation has been requested."""
        if self._event.is_set():
            raise RunCancelled(self.run_id)
