"""Thread-safe cancellation signal shared by the loop and worker threads."""

from __future__ import annotations

import threading
from collections.abc import Callable

from loguru import logger

from duplex.errors import CancellationError


class CancelToken:
    """Cancellation flag readable from any thread.

    Cooperative tools never need to poll it: they are cancelled at their next
    suspension point. Blocking tools may poll `is_cancelled` between units of
    work to stop early; otherwise their result is discarded when it arrives.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None
        self._callbacks: list[Callable[[str], None]] = []

    def cancel(self, reason: str = "cancelled") -> bool:
        """Request cancellation. Returns False if already requested."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for callback in callbacks:
            try:
                callback(reason)
            except Exception:
                logger.opt(exception=True).warning("cancel.callback_failed reason={}", reason)
        return True

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def wait(self, timeout: float | None = None) -> bool:
        """Block the calling thread until cancelled or timeout."""
        return self._event.wait(timeout=timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self._reason or "cancelled")

    def on_cancel(self, callback: Callable[[str], None]) -> None:
        """Register a callback; runs immediately when already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
            reason = self._reason or "cancelled"
        callback(reason)
