"""Cancellation scope shared by every stage of a run.

A single :class:`CancelToken` is created at process start and passed by
reference into each component. Signal handlers and failing tasks cancel it;
long-running loops poll it.
"""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable
from types import FrameType

from undock.errors import OperationCancelledError

logger = logging.getLogger(__name__)


class CancelToken:
    """Thread-safe cancellation flag with optional parent scope."""

    def __init__(self, parent: CancelToken | None = None) -> None:
        self._event = threading.Event()
        self._parent = parent
        self._reason: str | None = None
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        """Whether this token or any parent has been cancelled."""
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> str | None:
        """Reason given to the first cancel() call in this scope chain."""
        if self._event.is_set():
            return self._reason
        if self._parent is not None:
            return self._parent.reason
        return None

    def cancel(self, reason: str = "operation cancelled") -> None:
        """Cancel this scope. Only the first reason is kept."""
        with self._lock:
            if not self._event.is_set():
                self._reason = reason
                self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise OperationCancelledError if the scope is cancelled."""
        if self.cancelled:
            raise OperationCancelledError(self.reason or "operation cancelled")

    def child(self) -> CancelToken:
        """Create a nested scope that also observes this one."""
        return CancelToken(parent=self)


def install_signal_handlers(
    token: CancelToken,
    signals: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM),
) -> Callable[[], None]:
    """Cancel ``token`` when one of ``signals`` is received.

    Must be called from the main thread.

    Returns:
        Callable restoring the previous handlers.
    """
    previous: dict[signal.Signals, object] = {}

    def _handler(signum: int, frame: FrameType | None) -> None:
        name = signal.Signals(signum).name
        logger.warning("caught signal %s", name)
        token.cancel(f"caught signal {name}")

    for sig in signals:
        previous[sig] = signal.getsignal(sig)
        signal.signal(sig, _handler)

    def _restore() -> None:
        for sig, handler in previous.items():
            signal.signal(sig, handler)  # type: ignore[arg-type]

    return _restore


__all__ = ["CancelToken", "install_signal_handlers"]
