"""
Node Watchdog - Supervisor for a long-running node process

Launches the node script, watches its output log for idleness or known
error keywords, and restarts it with graceful kills, exponential backoff
and log rotation. Only one watchdog runs per lock file.
"""

__version__ = "1.0.0"
__author__ = "Tommie Seals"

from .config import RunConfig
from .monitor import HealthMonitor
from .process import ProcessRunner
from .watchdog import SupervisorLoop

__all__ = ["SupervisorLoop", "RunConfig", "HealthMonitor", "ProcessRunner"]
