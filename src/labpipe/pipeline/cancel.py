"""Cooperative cancellation for running pipelines.

A ``CancelToken`` is set by the pipeline timeout timer (or by a failing
parallel branch) and polled by step handlers. Child tokens observe their
parent, so cancelling a run also cancels every branch it spawned while a
branch group can be cancelled on its own.
"""

from __future__ import annotations

import threading
import time

#: Interval used when waiting on a token that has a parent.
POLL_INTERVAL = 0.05


class CancelToken:
    """Thread-safe cancellation flag with an optional parent.

    Examples:
        >>> token = CancelToken()
        >>> child = token.child()
        >>> token.cancel("timeout")
        >>> child.cancelled, child.reason
        (True, 'timeout')
    """

    def __init__(self, parent: CancelToken | None = None) -> None:
        self._event = threading.Event()
        self._parent = parent
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation. Only the first reason is kept."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        """Whether this token or one of its ancestors was cancelled."""
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> str | None:
        """Reason given by the first cancellation in the chain."""
        if self._event.is_set():
            return self._reason
        return self._parent.reason if self._parent is not None else None

    def wait(self, timeout: float | None) -> bool:
        """Block until cancelled or ``timeout`` seconds elapse.

        Returns:
            True if the token was cancelled, False on timeout.
        """
        if self._parent is None:
            return self._event.wait(timeout)
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.cancelled:
            remaining = POLL_INTERVAL if deadline is None else min(POLL_INTERVAL, deadline - time.monotonic())
            if remaining <= 0:
                return False
            self._event.wait(remaining)
        return True

    def child(self) -> CancelToken:
        """Create a token cancelled together with this one."""
        return CancelToken(parent=self)


__all__ = [
    "POLL_INTERVAL",
    "CancelToken",
]
