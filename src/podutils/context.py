"""Cancellable, deadline-bound run context shared by entrypoint and sidecar."""

from __future__ import annotations

import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager


class RunContext:
    """Scoped cancellation token with an optional monotonic deadline.

    A context is *done* once it was cancelled explicitly or its deadline
    passed. Child contexts inherit cancellation from their parent and may
    carry a tighter deadline of their own.
    """

    def __init__(
        self,
        *,
        timeout: float | None = None,
        parent: RunContext | None = None,
    ) -> None:
        self._event = threading.Event()
        self._parent = parent
        self._reason: str | None = None
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        if parent is not None and parent._deadline is not None:
            if self._deadline is None or parent._deadline < self._deadline:
                self._deadline = parent._deadline

    def child(self, *, timeout: float | None = None) -> RunContext:
        return RunContext(timeout=timeout, parent=self)

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

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

    @property
    def reason(self) -> str | None:
        """Why the context finished, or None while it is still live."""

        if self._event.is_set():
            return self._reason
        if self._parent is not None and self._parent.cancelled:
            return self._parent.reason
        if self.expired:
            return "deadline exceeded"
        return None

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds`` or until the context is done.

        Returns True when the context is done.
        """

        end = time.monotonic() + max(0.0, seconds)
        while not self.done:
            now = time.monotonic()
            if now >= end:
                return False
            step = min(0.1, end - now)
            remaining = self.remaining()
            if remaining is not None:
                step = min(step, remaining)
            self._event.wait(step)
        return True


@contextmanager
def install_signal_cancellation(
    ctx: RunContext,
    *,
    ignore: bool = False,
) -> Iterator[None]:
    """Route SIGINT/SIGTERM into ``ctx.cancel`` for the duration of the block.

    With ``ignore=True`` both signals are swallowed instead, so the caller keeps
    running until its own deadline.
    """

    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        if ignore:
            return
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        ctx.cancel(reason=name)

    installed = False
    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        installed = True
    except ValueError:
        # Signal handlers can only be installed in main thread.
        pass

    try:
        yield
    finally:
        if installed:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
