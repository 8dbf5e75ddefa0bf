"""Single-instance guard for the supervisor process."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import IO, Optional, Union

try:
    import fcntl
except ImportError:  # not available on Windows
    fcntl = None

from .exceptions import AlreadyRunning, WatchdogError

logger = logging.getLogger("node-watchdog.lock")


class SingleInstanceGuard:
    """Exclusive, non-blocking lock on a file, held for the supervisor's lifetime.

    The OS drops the lock when the process exits, so a crashed supervisor
    never leaves a stale guard behind. Where file locking is unavailable the
    guard degrades to a no-op with a warning.
    """

    def __init__(self, lock_path: Union[str, Path]):
        self.lock_path = Path(lock_path)
        self._handle: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> "SingleInstanceGuard":
        """Take the lock or raise :class:`AlreadyRunning`.

        Raises :class:`WatchdogError` if the lock file cannot be opened.
        """
        if fcntl is None:
            logger.warning("File locking not available; continuing without single-instance guard")
            return self

        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self.lock_path, "a+")
        except OSError as e:
            raise WatchdogError(f"Cannot open lock file {self.lock_path}: {e}") from e

        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            handle.close()
            raise AlreadyRunning(str(self.lock_path))

        # Informational only; nothing reads it back
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()

        self._handle = handle
        logger.debug(f"Acquired lock {self.lock_path}")
        return self

    def release(self):
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            logger.warning(f"Failed to unlock {self.lock_path}: {e}")
        finally:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> "SingleInstanceGuard":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
