"""Child processes that drop a temporary database after its owner is gone.

Two strategies are available:

Pipe watch
    The owner creates a pipe and forks.  The child keeps only the read end
    and blocks on it.  The kernel closes the owner's write end when the owner
    exits (however it exits), the child reads EOF, drops the database and
    exits.

Double fork
    The owner forks a child that starts a new session, closes every file
    descriptor and forks again.  The intermediate child exits at once, so the
    grandchild is re-parented and fully detached.  It polls the owner's PID
    with signal 0 and drops the database once the owner is gone.

All process primitives go through :class:`ProcessControl` so the state
machine can be exercised without forking.
"""

from __future__ import annotations

import logging
import os
import signal
import time
from collections.abc import Callable, Iterable
from enum import Enum
from typing import Any

import setproctitle

logger = logging.getLogger(__name__)

_READ_SIZE = 4096
_FALLBACK_MAX_FDS = 1024


def is_pid_alive(pid: int) -> bool:
    """Check if a process with the given PID is still running.

    Uses ``os.kill(pid, 0)``. Sending signal 0 does not kill the process but
    raises ``ProcessLookupError`` if the PID does not exist.

    Args:
        pid: Process ID to check.

    Returns:
        True if the process is alive (or we cannot signal it due to permissions),
        False if no such process exists.
    """
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Process exists but we don't have permission to signal it
        return True


class SupervisorState(str, Enum):
    ARMED = "armed"
    WATCHING = "watching"
    CLEANING = "cleaning"
    EXITED = "exited"


class ProcessControl:
    """Thin wrapper around the OS process primitives used by the supervisor."""

    def getpid(self) -> int:
        return os.getpid()

    def fork(self) -> int:
        return os.fork()

    def pipe(self) -> tuple[int, int]:
        return os.pipe()

    def read(self, fd: int, size: int) -> bytes:
        return os.read(fd, size)

    def close(self, fd: int) -> None:
        os.close(fd)

    def close_fds(self, keep: Iterable[int] = ()) -> None:
        """Close every descriptor except *keep*; stdio is pointed at /dev/null."""
        try:
            max_fds = os.sysconf("SC_OPEN_MAX")
        except (ValueError, OSError):
            max_fds = _FALLBACK_MAX_FDS
        if max_fds <= 0:
            max_fds = _FALLBACK_MAX_FDS

        low = 0
        for fd in sorted(set(keep)):
            os.closerange(low, fd)
            low = fd + 1
        os.closerange(low, max_fds)

        kept = set(keep)
        devnull = os.open(os.devnull, os.O_RDWR)
        for std_fd in (0, 1, 2):
            if std_fd not in kept and std_fd != devnull:
                os.dup2(devnull, std_fd)
        if devnull > 2 and devnull not in kept:
            os.close(devnull)

    def setsid(self) -> None:
        os.setsid()

    def set_title(self, title: str) -> None:
        setproctitle.setproctitle(title)

    def install_signal_handlers(self, handler: Callable[[int, Any], None]) -> None:
        for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP):
            signal.signal(sig, handler)

    def is_alive(self, pid: int) -> bool:
        return is_pid_alive(pid)

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def waitpid(self, pid: int) -> None:
        os.waitpid(pid, 0)

    def exit(self, code: int) -> None:
        # Skip atexit handlers and finalizers inherited from the owner
        os._exit(code)


class CleanupSupervisor:
    """Background guard that drops one database when its owner process ends.

    Usage::

        supervisor = CleanupSupervisor(drop, label="tmp_1000_pytest")
        supervisor.start_pipe_watch()
        # ... later, in the owner ...
        supervisor.release()
    """

    def __init__(
        self,
        drop: Callable[[], None],
        label: str,
        control: ProcessControl | None = None,
        debug: bool = False,
    ) -> None:
        """Initialise the supervisor.

        Args:
            drop: Removes the guarded database; called in the child process.
            label: Database name, used in log lines and the process title.
            control: Process primitives; the real OS ones by default.
            debug: Keep stderr open in the child so debug logging still works.
        """
        self._drop = drop
        self.label = label
        self._control = control or ProcessControl()
        self._debug = debug
        self._write_fd: int | None = None
        self._parent_pid: int | None = None
        self.pid: int | None = None
        self.state = SupervisorState.ARMED

    @property
    def active(self) -> bool:
        """True once a child process has taken over the cleanup."""
        return self.state is not SupervisorState.ARMED

    # -- owner side ----------------------------------------------------------

    def start_pipe_watch(self) -> int:
        """Fork a child that drops the database when the pipe is closed.

        Returns:
            PID of the watching child (in the owner process).
        """
        control = self._control
        self._parent_pid = control.getpid()
        read_fd, write_fd = control.pipe()
        try:
            pid = control.fork()
        except OSError:
            control.close(read_fd)
            control.close(write_fd)
            raise

        if pid:
            control.close(read_fd)
            self._write_fd = write_fd
            self.pid = pid
            self.state = SupervisorState.WATCHING
            logger.debug("Started pipe watcher %d for %s", pid, self.label)
            return pid

        self._run_pipe_watch(read_fd)
        return 0

    def start_double_fork(self, interval: float) -> int:
        """Fork a detached grandchild that polls the owner's PID.

        Args:
            interval: Seconds between liveness checks.

        Returns:
            PID of the intermediate child, which has already exited.
        """
        control = self._control
        self._parent_pid = control.getpid()
        pid = control.fork()

        if pid:
            control.waitpid(pid)
            self.pid = pid
            self.state = SupervisorState.WATCHING
            logger.debug("Started detached watcher for %s", self.label)
            return pid

        control.setsid()
        control.close_fds(keep=self._kept_fds())
        control.set_title(f"tempdb: guarding {self.label}")
        if control.fork():
            control.exit(0)
            return 0

        self._run_poll(interval)
        return 0

    def release(self) -> None:
        """Close the owner's end of the pipe, telling the watcher to clean up."""
        if self._write_fd is not None:
            self._control.close(self._write_fd)
            self._write_fd = None

    # -- child side ----------------------------------------------------------

    def _run_pipe_watch(self, read_fd: int) -> None:
        control = self._control
        control.close_fds(keep=[read_fd, *self._kept_fds()])
        control.install_signal_handlers(self._on_signal)
        self.state = SupervisorState.WATCHING

        logger.debug("Waiting for %s to end", self._parent_pid)
        while control.read(read_fd, _READ_SIZE):
            pass
        self._cleanup_and_exit()

    def _run_poll(self, interval: float) -> None:
        control = self._control
        self.state = SupervisorState.WATCHING

        logger.debug("Polling %s every %ss", self._parent_pid, interval)
        while self._parent_pid is not None and control.is_alive(self._parent_pid):
            control.sleep(interval)
        self._cleanup_and_exit()

    def _on_signal(self, signum: int, frame: Any) -> None:
        logger.debug("Received signal %d", signum)
        self._cleanup_and_exit()

    def _cleanup_and_exit(self) -> None:
        if self.state in (SupervisorState.CLEANING, SupervisorState.EXITED):
            return

        self.state = SupervisorState.CLEANING
        code = 0
        try:
            self._drop()
            logger.debug("Dropped %s", self.label)
        except Exception:
            logger.exception("Unable to drop %s", self.label)
            code = 1
        self.state = SupervisorState.EXITED
        self._control.exit(code)

    def _kept_fds(self) -> list[int]:
        return [2] if self._debug else []
