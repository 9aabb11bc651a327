"""
Cooperative cancellation shared by every pipeline stage.

One token is created per run. Signal handlers, the stop condition and error
paths all cancel the same token; capture, the polling loop and the
transcription loop all observe it.
"""

import threading
from typing import Callable, List, Optional

from .logger import get_logger

logger = get_logger('cancellation')


class CancellationToken:
    """
    A thread-safe, one-way cancellation signal.

    cancel() runs inside SIGINT/SIGTERM handlers, which interrupt the main
    thread wherever it is, including inside register(). The lock is
    therefore reentrant and register() rechecks the flag after appending.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.RLock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel the token. Returns True only for the call that flipped it."""
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        logger.debug(f"Cancellation requested: {reason}")
        for callback in callbacks:
            self._run(callback)
        return True

    def register(self, callback: Callable[[], None]) -> None:
        """Run callback on cancellation (immediately if already cancelled)."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                if not self._event.is_set():
                    return
                # Cancelled by a signal between the check and the append
                try:
                    self._callbacks.remove(callback)
                except ValueError:
                    return
        self._run(callback)

    def unregister(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block up to timeout seconds; True if cancelled."""
        return self._event.wait(timeout)

    @staticmethod
    def _run(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as e:
            logger.warning(f"Cancellation callback failed: {e}")
