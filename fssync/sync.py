from __future__ import annotations

import asyncio
import enum
import logging
import os
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Union

from fssync.logs import get_logger, log_action

DEFAULT_DELAY_SEC = 5.0
RETRY_DELAY_SEC = 10.0

RSYNC_OPTIONS = (
    "--quiet",
    "--archive",
    "--prune-empty-dirs",
    "--delete",
    "--recursive",
    "--delete-missing-args",
)

WAIT_OPTIONS = os.WNOHANG | os.WUNTRACED | os.WCONTINUED

SpawnFn = Callable[..., int]
WaitFn = Callable[[int, int], Tuple[int, int]]


def with_trailing_slash(path: Union[str, os.PathLike]) -> str:
    """rsync copies the *contents* of a directory given with a trailing slash."""
    text = os.fspath(path)
    return text.rstrip("/") + "/"


# -------------------------
# Child status
# -------------------------

class ChildState(enum.Enum):
    EXITED = "exited"
    SIGNALED = "signaled"
    DUMPED = "dumped"
    STOPPED = "stopped"
    CONTINUED = "continued"
    UNKNOWN = "unknown"


TERMINAL_STATES = frozenset({ChildState.EXITED, ChildState.SIGNALED, ChildState.DUMPED})


@dataclass(frozen=True)
class ChildStatus:
    state: ChildState
    value: int = 0

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @classmethod
    def from_wait_status(cls, status: int) -> "ChildStatus":
        if os.WIFEXITED(status):
            return cls(ChildState.EXITED, os.WEXITSTATUS(status))
        if os.WIFSIGNALED(status):
            state = ChildState.DUMPED if os.WCOREDUMP(status) else ChildState.SIGNALED
            return cls(state, os.WTERMSIG(status))
        if os.WIFSTOPPED(status):
            return cls(ChildState.STOPPED, os.WSTOPSIG(status))
        if os.WIFCONTINUED(status):
            return cls(ChildState.CONTINUED)
        return cls(ChildState.UNKNOWN, status)


# -------------------------
# Scheduler
# -------------------------

class SyncScheduler:
    """
    Debounces change notifications into rsync runs.

    Every accepted change pushes the single timer `delay` seconds into the
    future. When it fires, rsync is spawned unless a previous run is still
    attached, in which case the timer is re-armed with `retry_delay`.
    Child status is collected by `handle_sigchld`, which the owner calls
    from the loop's SIGCHLD handler.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        source: Union[str, os.PathLike],
        destination: Union[str, os.PathLike],
        delay: float = DEFAULT_DELAY_SEC,
        logger: Optional[logging.Logger] = None,
        rsync: str = "rsync",
        retry_delay: float = RETRY_DELAY_SEC,
        spawn: SpawnFn = os.posix_spawnp,
        waitpid: WaitFn = os.waitpid,
    ):
        self.loop = loop
        self.source = with_trailing_slash(source)
        self.destination = with_trailing_slash(destination)
        self.delay = float(delay)
        self.retry_delay = float(retry_delay)
        self.rsync = rsync
        self.logger = logger or get_logger("sync")
        self.whitelist_file: Optional[str] = None
        self._spawn = spawn
        self._waitpid = waitpid
        self._timer: Optional[asyncio.TimerHandle] = None
        self._child_pid: Optional[int] = None

    def set_whitelist_file(self, path: Optional[Union[str, os.PathLike]]) -> None:
        self.whitelist_file = os.fspath(path) if path is not None else None

    @property
    def pending(self) -> bool:
        return self._timer is not None

    @property
    def deadline(self) -> Optional[float]:
        return self._timer.when() if self._timer is not None else None

    @property
    def child_pid(self) -> Optional[int]:
        return self._child_pid

    def start(self) -> None:
        """Arm the startup sync."""
        self._start_timer(self.delay)

    def process_entry(self, mask: int, path: str) -> None:
        self._start_timer(self.delay)

    def _start_timer(self, delay: float) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self.loop.call_at(self.loop.time() + delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self.trigger()

    def build_command(self) -> list[str]:
        cmd = [self.rsync, *RSYNC_OPTIONS]
        if self.whitelist_file:
            cmd.append(f"--files-from={self.whitelist_file}")
        cmd.append(self.source)
        cmd.append(self.destination)
        return cmd

    def trigger(self) -> None:
        if self._child_pid is not None:
            log_action(
                self.logger,
                "SYNC",
                f"process {self._child_pid} still running, retry in {self.retry_delay:g}s",
                level=logging.DEBUG,
            )
            self._start_timer(self.retry_delay)
            return

        cmd = self.build_command()
        try:
            pid = self._spawn(cmd[0], cmd, os.environ)
        except OSError as e:
            log_action(self.logger, "SYNC", f"ERROR spawn {cmd[0]} failed: {e}", level=logging.ERROR)
            return

        self._child_pid = pid
        log_action(self.logger, "SYNC", f"started pid={pid}: {' '.join(cmd)}", path=self.source)

    # -------------------------
    # Child supervision
    # -------------------------

    def handle_sigchld(self) -> None:
        """Collect every pending status change of the attached child."""
        while self._child_pid is not None:
            pid = self._child_pid
            try:
                reaped, status = self._waitpid(pid, WAIT_OPTIONS)
            except ChildProcessError:
                log_action(self.logger, "CHILD", f"no status information available for pid={pid}", level=logging.ERROR)
                self._child_pid = None
                return
            if reaped == 0:
                return
            child_status = ChildStatus.from_wait_status(status)
            self._handle_status(pid, child_status)
            if child_status.state is ChildState.UNKNOWN:
                return

    def _handle_status(self, pid: int, status: ChildStatus) -> None:
        state = status.state
        if state is ChildState.EXITED and status.value == 0:
            log_action(self.logger, "CHILD", f"sync process {pid} completed successfully")
        elif state is ChildState.EXITED:
            log_action(self.logger, "CHILD", f"sync process {pid} finished with code {status.value}", level=logging.WARNING)
        elif state is ChildState.SIGNALED:
            log_action(self.logger, "CHILD", f"sync process {pid} killed by signal {status.value}", level=logging.WARNING)
        elif state is ChildState.DUMPED:
            log_action(
                self.logger,
                "CHILD",
                f"sync process {pid} killed by signal {status.value} and dumped core",
                level=logging.WARNING,
            )
        elif state is ChildState.STOPPED:
            log_action(self.logger, "CHILD", f"sync process {pid} stopped by signal {status.value}")
        elif state is ChildState.CONTINUED:
            log_action(self.logger, "CHILD", f"sync process {pid} continued")
        else:
            log_action(self.logger, "CHILD", f"unexpected status {status.value:#x} for pid={pid}", level=logging.ERROR)

        if status.terminal:
            self._child_pid = None

    def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
