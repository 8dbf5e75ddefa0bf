"""Child process lifecycle: spawn, liveness, process-group kill, orphan sweep."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import IO, Iterable, Optional, Union

import psutil

from .config import RunConfig
from .exceptions import SpawnError

logger = logging.getLogger("node-watchdog.process")

# Command names the sweep considers, and the parents that mark them as ours
SWEEP_COMMANDS = frozenset({"python", "python3", "bash", "sh", "node"})
SWEEP_PARENTS = frozenset({"bash", "sh", "node", "npm"})

POLL_STEP = 0.5


class OutputPump(threading.Thread):
    """Copy the child's combined output into the live log (and stdout)."""

    def __init__(self, source: IO[bytes], log: IO[bytes], echo: bool = True):
        super().__init__(name="node-watchdog-output", daemon=True)
        self.source = source
        self.log = log
        self.echo = getattr(sys.stdout, "buffer", None) if echo else None

    def run(self):
        try:
            for chunk in iter(lambda: self.source.read1(65536), b""):
                self.log.write(chunk)
                self.log.flush()
                if self.echo is not None:
                    self.echo.write(chunk)
                    self.echo.flush()
        except (OSError, ValueError) as e:
            logger.warning(f"Output pump for {self.log.name} stopped: {e}")
        finally:
            self.source.close()
            self.log.close()


@dataclass
class ChildProcess:
    """The spawned process group. Owned by one supervisor loop at a time."""

    popen: subprocess.Popen
    pgid: int
    started_at: datetime = field(default_factory=datetime.now)
    pump: Optional[OutputPump] = None
    feeder: Optional[threading.Timer] = None
    released: bool = False

    @property
    def pid(self) -> int:
        return self.popen.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.popen.returncode

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now() - self.started_at).total_seconds()


def _feed_stdin(popen: subprocess.Popen, answers: str):
    try:
        popen.stdin.write(answers.encode())
        popen.stdin.flush()
    except (BrokenPipeError, ValueError, OSError):
        pass  # child already closed its input or exited
    finally:
        try:
            popen.stdin.close()
        except OSError:
            pass


def _group_alive(pgid: int) -> bool:
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ProcessRunner:
    """Starts and stops the supervised child as a single process group."""

    def build_command(self, config: RunConfig) -> list[str]:
        script = str(config.script_path.resolve())
        if config.interpreter:
            return [config.interpreter, script]
        return [script]

    def spawn(self, config: RunConfig) -> ChildProcess:
        """Start the child in a new session and tee its output into the live log."""
        script = config.script_path
        if not script.is_file():
            raise SpawnError(f"Script not found: {script}")
        if not config.interpreter and not os.access(script, os.X_OK):
            raise SpawnError(f"Script is not executable: {script}")

        log_path = Path(config.log_file)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log = open(log_path, "ab")
        except OSError as e:
            raise SpawnError(f"Cannot open log file {log_path}: {e}") from e

        cmd = self.build_command(config)
        try:
            popen = subprocess.Popen(
                cmd,
                cwd=str(config.working_dir),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            log.close()
            raise SpawnError(f"Failed to start {' '.join(cmd)}: {e}") from e

        try:
            pgid = os.getpgid(popen.pid)
        except ProcessLookupError:
            pgid = popen.pid

        child = ChildProcess(popen=popen, pgid=pgid)

        child.pump = OutputPump(popen.stdout, log, echo=config.echo_output)
        child.pump.start()

        child.feeder = threading.Timer(config.stdin_delay, _feed_stdin, args=(popen, config.stdin_answers))
        child.feeder.daemon = True
        child.feeder.start()

        logger.info(f"Spawned child pid={child.pid} (logging to {config.log_file})")
        return child

    def is_alive(self, child: Optional[ChildProcess]) -> bool:
        """Non-blocking check on the group leader."""
        return child is not None and child.popen.poll() is None

    def _signal_group(self, child: ChildProcess, sig: int) -> bool:
        try:
            os.killpg(child.pgid, sig)
            return True
        except ProcessLookupError:
            return True  # already gone
        except OSError as e:
            logger.warning(f"Failed to send {signal.Signals(sig).name} to group {child.pgid}: {e}")

        # Fall back to the leader alone
        try:
            child.popen.send_signal(sig)
            return True
        except OSError as e:
            logger.warning(f"Failed to send {signal.Signals(sig).name} to pid {child.pid}: {e}")
            return False

    def kill_tree(self, child: Optional[ChildProcess], grace_seconds: float = 10.0) -> bool:
        """SIGTERM the child's process group, then SIGKILL it after ``grace_seconds``.

        Returns True if signals were sent. A None or already-dead handle is a
        silent no-op.
        """
        if child is None or child.released:
            return False
        if not self.is_alive(child) and not _group_alive(child.pgid):
            self.release(child)
            return False

        logger.info(f"Stopping child process group {child.pgid} (grace {grace_seconds:g}s)")

        if self._signal_group(child, signal.SIGTERM):
            deadline = time.monotonic() + grace_seconds
            while self.is_alive(child) and time.monotonic() < deadline:
                time.sleep(POLL_STEP)

        if self.is_alive(child):
            logger.warning(f"Child pid={child.pid} still alive after {grace_seconds:g}s, sending SIGKILL")
            if not self._signal_group(child, signal.SIGKILL):
                logger.error(f"Could not kill process group {child.pgid}; continuing")
        elif _group_alive(child.pgid):
            # Leader is gone but members of its group linger
            try:
                os.killpg(child.pgid, signal.SIGKILL)
            except OSError:
                pass

        self.release(child)
        return True

    def release(self, child: ChildProcess):
        """Reap the leader and stop the helper threads. Safe to call twice."""
        if child.released:
            return
        child.released = True

        if child.feeder is not None:
            child.feeder.cancel()
        try:
            child.popen.wait(timeout=POLL_STEP * 4)
        except subprocess.TimeoutExpired:
            logger.warning(f"Child pid={child.pid} not reaped yet")
        if child.pump is not None:
            child.pump.join(timeout=POLL_STEP * 4)

    def sweep_orphans(
        self,
        patterns: Iterable[str],
        working_dir: Union[str, Path],
        grace_seconds: float = 5.0,
        script_name: Optional[str] = None,
    ) -> list[int]:
        """Best-effort kill of leftovers the group kill may have missed.

        Two rules:

        * any process whose command line contains one of ``patterns`` is
          killed outright;
        * an interpreter/shell process (``SWEEP_COMMANDS``) running in
          ``working_dir`` is stopped only if its parent is itself a shell,
          node/npm, or the runner script. Sharing the directory alone is not
          enough, so unrelated processes there survive.

        The supervisor and its ancestors are never touched. Returns the pids
        that were signalled.
        """
        patterns = [p for p in patterns if p]
        parents = SWEEP_PARENTS | ({script_name} if script_name else set())
        target_dir = os.path.realpath(str(working_dir))

        protected = {os.getpid()}
        try:
            protected.update(p.pid for p in psutil.Process().parents())
        except psutil.Error:
            pass

        by_pattern: list[psutil.Process] = []
        by_cwd: list[psutil.Process] = []
        unreadable = 0

        for proc in psutil.process_iter(["pid", "name", "cmdline", "ppid"]):
            if proc.pid in protected:
                continue

            cmdline = " ".join(proc.info["cmdline"] or [])
            if cmdline and any(p in cmdline for p in patterns):
                by_pattern.append(proc)
                continue

            if proc.info["name"] not in SWEEP_COMMANDS:
                continue
            try:
                cwd = proc.cwd()
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                unreadable += 1
                continue
            if os.path.realpath(cwd) != target_dir:
                continue

            try:
                parent_name = psutil.Process(proc.info["ppid"]).name()
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                unreadable += 1
                continue
            if parent_name in parents:
                by_cwd.append(proc)

        if unreadable:
            logger.warning(f"Orphan sweep skipped {unreadable} process(es) it could not inspect")

        killed = []
        for proc in by_pattern:
            try:
                proc.kill()
                killed.append(proc.pid)
                logger.warning(f"Killed pid={proc.pid} matching safety-net pattern")
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied as e:
                logger.warning(f"Failed to kill pid={proc.pid}: {e}")

        terminated: list[psutil.Process] = []
        for proc in by_cwd:
            try:
                proc.terminate()
                terminated.append(proc)
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied as e:
                logger.warning(f"Failed to terminate pid={proc.pid}: {e}")

        if terminated:
            _, alive = psutil.wait_procs(terminated, timeout=grace_seconds)
            for proc in alive:
                try:
                    proc.kill()
                except psutil.NoSuchProcess:
                    pass
                except psutil.AccessDenied as e:
                    logger.warning(f"Failed to kill pid={proc.pid}: {e}")
            for proc in terminated:
                killed.append(proc.pid)
                logger.warning(f"Stopped orphan pid={proc.pid} running from {target_dir}")

        return killed
