"""Cancellable deadline token passed to every read and write call."""

from __future__ import annotations

import threading
import time
from typing import Optional

from .errors import CancelledError


class Context:
    """Deadline and cancellation flag shared by the statements of one call.

    A child context is cancelled together with its parent and never outlives
    the parent's deadline.
    """

    __slots__ = ("_deadline", "_event", "_parent")

    def __init__(self, timeout: Optional[float] = None, *, _parent: Optional[Context] = None):
        if timeout is not None and timeout < 0:
            raise ValueError("timeout must be >= 0")
        deadline = time.monotonic() + timeout if timeout is not None else None
        if _parent is not None and _parent._deadline is not None:
            deadline = _parent._deadline if deadline is None else min(deadline, _parent._deadline)
        self._deadline = deadline
        self._event = threading.Event()
        self._parent = _parent

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def done(self) -> bool:
        return self.cancelled or self.expired

    def cancel(self) -> None:
        self._event.set()

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(self._deadline - time.monotonic(), 0.0)

    def child(self, timeout: Optional[float] = None) -> Context:
        return Context(timeout, _parent=self)

    def check(self) -> None:
        if self.cancelled:
            raise CancelledError("operation cancelled")
        if self.expired:
            raise CancelledError("deadline exceeded")

    def __repr__(self) -> str:
        return f"Context(remaining={self.remaining()!r}, cancelled={self.cancelled})"


def background() -> Context:
    """Context that is never cancelled and has no deadline."""
    return Context()
