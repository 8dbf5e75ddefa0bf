"""Main supervisor loop."""

from __future__ import annotations

import logging
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .config import RunConfig
from .exceptions import SpawnError
from .monitor import HealthMonitor, HealthSignal
from .notifiers import BaseNotifier, NotificationEvent, NotifierFactory
from .process import ChildProcess, ProcessRunner
from .rotation import LogRotator

logger = logging.getLogger("node-watchdog")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

SLEEP_SLICE = 0.25


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Configure the ``node-watchdog`` logger: stdout plus an optional file."""
    level_no = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(level_no)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level_no)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        try:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path)
            file_handler.setLevel(level_no)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except PermissionError:
            logger.warning(f"Cannot write to log file: {log_file}")


class State(str, Enum):
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    TERMINATING = "TERMINATING"
    BACKOFF = "BACKOFF"
    CLEANUP = "CLEANUP"
    EXIT = "EXIT"


@dataclass
class BackoffState:
    """Restart delay that doubles after every cycle, capped at ``maximum``.

    It is never reset: a node that keeps failing over a long session backs
    off until it sits at the cap.
    """

    initial: float
    maximum: float
    current: float = field(init=False)

    def __post_init__(self):
        self.current = self.initial

    def advance(self) -> float:
        """Double the delay (capped) and return the new value."""
        self.current = min(self.current * 2, self.maximum)
        return self.current


class SupervisorLoop:
    """Runs the child through STARTING, RUNNING, TERMINATING and BACKOFF forever.

    All mutable loop state (current child, backoff, stop and cleanup flags)
    lives on the instance. Collaborators can be injected for testing.
    """

    def __init__(
        self,
        config: RunConfig,
        runner: Optional[ProcessRunner] = None,
        monitor: Optional[HealthMonitor] = None,
        rotator: Optional[LogRotator] = None,
        notifiers: Optional[list[BaseNotifier]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.runner = runner or ProcessRunner()
        self.monitor = monitor or HealthMonitor(config)
        self.rotator = rotator or LogRotator(keep=config.rotate_keep)
        self.clock = clock

        if notifiers is None:
            notifiers = []
            for notif_config in config.notifiers:
                try:
                    notifiers.append(NotifierFactory.create(notif_config))
                except ValueError as e:
                    logger.warning(f"Failed to create notifier: {e}")
        self.notifiers = notifiers

        self.state = State.STARTING
        self.backoff = BackoffState(config.backoff_start, config.backoff_max)
        self.child: Optional[ChildProcess] = None
        self.last_signal: Optional[HealthSignal] = None
        self.cycles = 0
        self.restarts = 0

        self._stop_requested = False
        self._cleanup_started = False

    # -- control ------------------------------------------------------------

    @property
    def stopping(self) -> bool:
        return self._stop_requested

    def request_stop(self, reason: str = "stop requested"):
        """Ask the loop to clean up and exit at the next state boundary."""
        if self._stop_requested:
            logger.info(f"{reason}; shutdown already in progress")
            return
        logger.info(f"{reason}, shutting down...")
        self._stop_requested = True

    def _handle_signal(self, signum, frame):
        self.request_stop(f"Received signal {signal.Signals(signum).name}")

    def install_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread; signal handlers not installed")
            return
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

    def _sleep(self, seconds: float) -> bool:
        """Sleep in short slices. Returns False if a stop was requested meanwhile."""
        deadline = self.clock() + seconds
        while not self._stop_requested:
            remaining = deadline - self.clock()
            if remaining <= 0:
                return True
            time.sleep(min(SLEEP_SLICE, remaining))
        return False

    def _transition(self, new_state: State, reason: str = ""):
        old = self.state
        self.state = new_state
        suffix = f" ({reason})" if reason else ""
        logger.info(f"State {old.value} -> {new_state.value}{suffix}")

    def notify(self, event: NotificationEvent):
        """Send notification to all configured notifiers."""
        for notifier in self.notifiers:
            try:
                success, message = notifier.send(event)
                if success:
                    logger.debug(f"Notification sent via {notifier.config.type}: {message}")
                else:
                    logger.warning(f"Notification failed via {notifier.config.type}: {message}")
            except Exception as e:
                logger.error(f"Notification error ({notifier.config.type}): {e}")

    # -- states -------------------------------------------------------------

    def start_child(self):
        """STARTING: rotate the log and spawn a fresh child."""
        self.cycles += 1
        logger.info(f"Starting node ({self.config.script}), cycle {self.cycles}")

        try:
            self.rotator.rotate(self.config.log_file)
        except OSError as e:
            logger.warning(f"Log rotation failed for {self.config.log_file}: {e}")

        try:
            self.child = self.runner.spawn(self.config)
        except SpawnError as e:
            logger.error(f"Failed to spawn child: {e}")
            self.notify(
                NotificationEvent(
                    event_type=NotificationEvent.SPAWN_FAILED,
                    node_name=self.config.node_name,
                    message=str(e),
                )
            )
            self._transition(State.BACKOFF, "spawn failed")
            return

        self.last_signal = None
        self._transition(State.RUNNING, f"pid={self.child.pid}")

    def watch_child(self):
        """RUNNING: poll liveness and log health every tick."""
        while not self._stop_requested:
            if not self._sleep(self.config.poll_interval):
                return

            if not self.runner.is_alive(self.child):
                code = self.child.returncode if self.child else None
                if self.child is not None:
                    logger.warning(
                        f"Child exited on its own (code {code}) after {self.child.uptime_seconds:.0f}s"
                    )
                    # Backgrounded members of the group may outlive the leader
                    self.runner.kill_tree(self.child, self.config.kill_grace)
                    self.runner.release(self.child)
                    self.child = None
                    self._sweep(self.config.sweep_grace)
                self.notify(
                    NotificationEvent(
                        event_type=NotificationEvent.EXITED,
                        node_name=self.config.node_name,
                        message=f"Node exited with code {code}. Restarting after backoff.",
                    )
                )
                self._transition(State.BACKOFF, "child exited")
                return

            try:
                health = self.monitor.check()
            except OSError as e:
                logger.warning(f"Health check failed: {e}")
                continue
            if health is not None:
                if health.reason == HealthSignal.IDLE:
                    logger.warning(f"Idle for > {self.config.idle_seconds:g}s. Restarting.")
                else:
                    logger.warning(f"Error keyword {health.keyword!r} detected in log. Restarting.")
                self.last_signal = health
                self._transition(State.TERMINATING, health.reason)
                return

    def terminate_child(self):
        """TERMINATING: kill the child's tree and sweep leftovers."""
        self.runner.kill_tree(self.child, self.config.kill_grace)
        self.child = None
        self._sweep(self.config.sweep_grace)
        self.restarts += 1

        self.notify(
            NotificationEvent(
                event_type=NotificationEvent.RESTART,
                node_name=self.config.node_name,
                message=f"Node stopped for restart #{self.restarts}. "
                f"Next start in {self.backoff.current:g}s.",
                signal=self.last_signal,
            )
        )
        self._transition(State.BACKOFF, "child terminated")

    def back_off(self):
        """BACKOFF: wait, then double the delay for next time."""
        delay = self.backoff.current
        logger.info(f"Backing off for {delay:g}s before restart...")
        if not self._sleep(self.config.settle_seconds + delay):
            return
        self.backoff.advance()
        self._transition(State.STARTING, f"next backoff {self.backoff.current:g}s")

    def _sweep(self, grace: float):
        try:
            self.runner.sweep_orphans(
                self.config.nuke_patterns,
                self.config.working_dir,
                grace_seconds=grace,
                script_name=self.config.node_name,
            )
        except Exception as e:
            logger.warning(f"Orphan sweep failed: {e}")

    # -- driving ------------------------------------------------------------

    def step(self):
        """Execute the current state once."""
        handlers = {
            State.STARTING: self.start_child,
            State.RUNNING: self.watch_child,
            State.TERMINATING: self.terminate_child,
            State.BACKOFF: self.back_off,
        }
        handler = handlers.get(self.state)
        if handler is None:
            raise RuntimeError(f"No handler for state {self.state.value}")
        handler()

    def cleanup(self):
        """CLEANUP: stop the child and sweep. Runs at most once."""
        if self._cleanup_started:
            return
        self._cleanup_started = True

        self._transition(State.CLEANUP)
        logger.info("Cleaning up...")
        self.runner.kill_tree(self.child, self.config.cleanup_grace)
        self.child = None
        self._sweep(self.config.sweep_grace)
        self._transition(State.EXIT)

    def run(self) -> int:
        """Run until a stop is requested, then clean up. Returns the exit status."""
        self.install_signal_handlers()
        logger.info(
            f"Node Watchdog started: script={self.config.script} log={self.config.log_file} "
            f"idle={self.config.idle_seconds:g}s backoff={self.backoff.initial:g}-{self.backoff.maximum:g}s"
        )
        if not self.config.keywords:
            logger.warning("No error keywords configured; watching for idleness only")

        try:
            while not self._stop_requested:
                self.step()
        finally:
            self.cleanup()
            logger.info("Node Watchdog stopped")
        return 0
