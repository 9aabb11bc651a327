"""
Single-instance guard backed by a lock marker file.

The marker is created atomically (O_CREAT | O_EXCL). Whoever creates it owns
the run; everyone else gets AlreadyRunning. Release is scoped: use the guard
as a context manager and the marker is removed exactly once on every exit
path (normal return, exception, KeyboardInterrupt).
"""

import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from . import compat
from .errors import AlreadyRunning, IOFault
from .logger import get_logger

logger = get_logger('instance_guard')

LOCK_FILE_NAME = "whispercli.lock"


def default_marker_path() -> Path:
    """Well-known per-user marker location."""
    return compat.get_temp_dir() / LOCK_FILE_NAME


class InstanceGuard:
    """Filesystem-backed mutual exclusion for one running instance."""

    def __init__(self, marker_path=None):
        self.marker_path = Path(marker_path) if marker_path else default_marker_path()
        self.created_at: Optional[datetime] = None
        self._lock = threading.Lock()
        self._held = False
        self.release_count = 0

    @property
    def is_held(self) -> bool:
        return self._held

    def acquire(self) -> "InstanceGuard":
        """
        Create the marker or fail without waiting.

        Returns:
            self, so `with InstanceGuard().acquire():` reads naturally

        Raises:
            AlreadyRunning: If the marker exists or cannot be created
        """
        with self._lock:
            if self._held:
                return self
            try:
                self.marker_path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(str(self.marker_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                logger.info(f"Lock marker present at {self.marker_path}")
                raise AlreadyRunning(self.marker_path)
            except OSError as e:
                # Refuse to run rather than risk concurrent writers
                logger.warning(f"Could not create lock marker {self.marker_path}: {e}")
                raise AlreadyRunning(self.marker_path, reason=f"lock marker unavailable ({e})")

            self.created_at = datetime.now()
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    f.write(f"{os.getpid()}\n{self.created_at.isoformat()}\n")
            except OSError as e:
                logger.warning(f"Could not write lock marker contents: {e}")

            self._held = True
            self.release_count = 0
            logger.debug(f"Acquired lock marker {self.marker_path}")
            return self

    def release(self) -> bool:
        """
        Remove the marker. Safe to call any number of times from any thread.

        Returns:
            True only for the call that actually released the lock
        """
        with self._lock:
            if not self._held:
                return False
            self._held = False
            self.release_count += 1

        try:
            self.marker_path.unlink()
            logger.debug(f"Released lock marker {self.marker_path}")
        except FileNotFoundError:
            logger.warning(f"Lock marker {self.marker_path} was already removed")
        except OSError as e:
            fault = IOFault(f"Could not remove lock marker {self.marker_path}: {e}")
            logger.error(str(fault))
        return True

    def __enter__(self) -> "InstanceGuard":
        return self.acquire()

    def __exit__(self, *args) -> None:
        self.release()


class NullGuard:
    """Stand-in used when the lockfile is disabled."""

    is_held = False

    def acquire(self) -> "NullGuard":
        return self

    def release(self) -> bool:
        return False

    def __enter__(self) -> "NullGuard":
        return self

    def __exit__(self, *args) -> None:
        pass
