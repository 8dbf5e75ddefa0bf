"""Exceptions raised by Node Watchdog."""


class WatchdogError(Exception):
    """Base class for watchdog errors."""


class SpawnError(WatchdogError):
    """The child script could not be started."""


class AlreadyRunning(WatchdogError):
    """Another supervisor instance holds the single-instance lock."""

    def __init__(self, lock_path: str):
        super().__init__(f"Another watchdog is already running (lock: {lock_path})")
        self.lock_path = lock_path
