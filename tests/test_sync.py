"""Tests for the debouncing rsync scheduler."""

import os
import signal

import pytest

from conftest import FakeSpawn, FakeWaitpid, settle
from fssync.sync import (
    RSYNC_OPTIONS,
    WAIT_OPTIONS,
    ChildState,
    ChildStatus,
    SyncScheduler,
    with_trailing_slash,
)

PID = 4242


def exited(code):
    return code << 8


def signaled(sig, core=False):
    return sig | (0x80 if core else 0)


def stopped(sig):
    return (sig << 8) | 0x7F


CONTINUED = 0xFFFF


class TestChildStatus:
    def test_exit_success(self):
        status = ChildStatus.from_wait_status(exited(0))
        assert status == ChildStatus(ChildState.EXITED, 0)
        assert status.terminal

    def test_exit_failure(self):
        status = ChildStatus.from_wait_status(exited(23))
        assert status == ChildStatus(ChildState.EXITED, 23)
        assert status.terminal

    def test_killed(self):
        status = ChildStatus.from_wait_status(signaled(signal.SIGKILL))
        assert status == ChildStatus(ChildState.SIGNALED, signal.SIGKILL)
        assert status.terminal

    def test_core_dumped(self):
        status = ChildStatus.from_wait_status(signaled(signal.SIGSEGV, core=True))
        assert status == ChildStatus(ChildState.DUMPED, signal.SIGSEGV)
        assert status.terminal

    def test_stopped(self):
        status = ChildStatus.from_wait_status(stopped(signal.SIGSTOP))
        assert status == ChildStatus(ChildState.STOPPED, signal.SIGSTOP)
        assert not status.terminal

    def test_continued(self):
        status = ChildStatus.from_wait_status(CONTINUED)
        assert status.state is ChildState.CONTINUED
        assert not status.terminal


class TestCommand:
    def test_trailing_slash(self):
        assert with_trailing_slash("/srv/data") == "/srv/data/"
        assert with_trailing_slash("/srv/data/") == "/srv/data/"
        assert with_trailing_slash("/srv/data//") == "/srv/data/"

    def test_without_whitelist(self, loop):
        sched = SyncScheduler(loop, "/src", "/dst/")

        assert sched.build_command() == ["rsync", *RSYNC_OPTIONS, "/src/", "/dst/"]

    def test_with_whitelist(self, loop):
        sched = SyncScheduler(loop, "/src", "/dst", rsync="/usr/bin/rsync")
        sched.set_whitelist_file("/etc/fssync/whitelist.txt")

        cmd = sched.build_command()

        assert cmd[0] == "/usr/bin/rsync"
        assert "--files-from=/etc/fssync/whitelist.txt" in cmd
        assert cmd[-2:] == ["/src/", "/dst/"]

    def test_options(self):
        for opt in ("--archive", "--delete", "--prune-empty-dirs", "--delete-missing-args", "--recursive"):
            assert opt in RSYNC_OPTIONS


class TestDebounce:
    def test_burst_triggers_once_after_last_entry(self, loop, fake_spawn):
        sched = SyncScheduler(loop, "/src", "/dst", delay=0.1, spawn=fake_spawn)
        entries = []

        def entry():
            entries.append(loop.time())
            sched.process_entry(0x100, "a/file")

        for i in range(5):
            loop.call_later(i * 0.02, entry)
        settle(loop, 0.4)

        assert len(fake_spawn.calls) == 1
        assert fake_spawn.times[0] >= entries[-1] + 0.1 - 0.01

    def test_rearm_replaces_deadline(self, loop, fake_spawn):
        sched = SyncScheduler(loop, "/src", "/dst", delay=30, spawn=fake_spawn)

        sched.process_entry(0, "a")
        first = sched.deadline
        sched.process_entry(0, "b")

        assert sched.pending
        assert sched.deadline >= first

    def test_start_arms_initial_sync(self, loop, fake_spawn):
        sched = SyncScheduler(loop, "/src", "/dst", delay=0.05, spawn=fake_spawn)

        sched.start()
        settle(loop, 0.2)

        assert len(fake_spawn.calls) == 1
        assert not sched.pending

    def test_close_cancels_timer(self, loop, fake_spawn):
        sched = SyncScheduler(loop, "/src", "/dst", delay=0.05, spawn=fake_spawn)

        sched.process_entry(0, "a")
        sched.close()
        settle(loop, 0.15)

        assert fake_spawn.calls == []


class TestSingleFlight:
    def test_trigger_while_running_backs_off(self, loop, fake_spawn):
        sched = SyncScheduler(loop, "/src", "/dst", delay=1, retry_delay=10, spawn=fake_spawn)

        sched.trigger()
        assert sched.child_pid == PID

        before = loop.time()
        sched.trigger()

        assert len(fake_spawn.calls) == 1
        assert sched.pending
        assert sched.deadline >= before + 10

    def test_spawns_again_after_exit(self, loop, fake_spawn):
        waitpid = FakeWaitpid((PID, exited(0)))
        sched = SyncScheduler(loop, "/src", "/dst", spawn=fake_spawn, waitpid=waitpid)

        sched.trigger()
        sched.handle_sigchld()

        assert sched.child_pid is None
        assert waitpid.calls[0] == (PID, WAIT_OPTIONS)

        sched.trigger()
        assert len(fake_spawn.calls) == 2

    @pytest.mark.parametrize("status", [exited(1), signaled(signal.SIGTERM), signaled(signal.SIGABRT, core=True)])
    def test_failures_detach(self, loop, fake_spawn, status):
        sched = SyncScheduler(loop, "/src", "/dst", spawn=fake_spawn, waitpid=FakeWaitpid((PID, status)))

        sched.trigger()
        sched.handle_sigchld()

        assert sched.child_pid is None
        assert not sched.pending

    def test_stop_and_continue_stay_attached(self, loop, fake_spawn):
        waitpid = FakeWaitpid((PID, stopped(signal.SIGTSTP)), (PID, CONTINUED))
        sched = SyncScheduler(loop, "/src", "/dst", spawn=fake_spawn, waitpid=waitpid)

        sched.trigger()
        sched.handle_sigchld()

        assert sched.child_pid == PID
        assert len(waitpid.calls) == 3

        sched.trigger()
        assert len(fake_spawn.calls) == 1

    def test_stopped_then_exit_in_one_signal(self, loop, fake_spawn):
        waitpid = FakeWaitpid((PID, stopped(signal.SIGSTOP)), (PID, CONTINUED), (PID, exited(0)))
        sched = SyncScheduler(loop, "/src", "/dst", spawn=fake_spawn, waitpid=waitpid)

        sched.trigger()
        sched.handle_sigchld()

        assert sched.child_pid is None

    def test_no_status_information_detaches(self, loop, fake_spawn):
        sched = SyncScheduler(loop, "/src", "/dst", spawn=fake_spawn, waitpid=FakeWaitpid(ChildProcessError()))

        sched.trigger()
        sched.handle_sigchld()

        assert sched.child_pid is None

    def test_no_change_keeps_child(self, loop, fake_spawn):
        sched = SyncScheduler(loop, "/src", "/dst", spawn=fake_spawn, waitpid=FakeWaitpid())

        sched.trigger()
        sched.handle_sigchld()

        assert sched.child_pid == PID

    def test_sigchld_without_child_is_noop(self, loop):
        waitpid = FakeWaitpid()
        sched = SyncScheduler(loop, "/src", "/dst", waitpid=waitpid)

        sched.handle_sigchld()

        assert waitpid.calls == []

    def test_spawn_failure_is_retried_by_next_trigger(self, loop):
        spawn = FakeSpawn(error=FileNotFoundError(2, "No such file or directory", "rsync"))
        sched = SyncScheduler(loop, "/src", "/dst", spawn=spawn)

        sched.trigger()

        assert sched.child_pid is None
        assert not sched.pending

        spawn.error = None
        sched.trigger()
        assert spawn.calls


@pytest.mark.skipif(not hasattr(os, "posix_spawnp"), reason="needs posix_spawnp")
class TestRealChild:
    def _run(self, loop, sched, timeout=5.0):
        loop.add_signal_handler(signal.SIGCHLD, sched.handle_sigchld)
        try:
            sched.trigger()
            assert sched.child_pid is not None
            deadline = loop.time() + timeout
            while sched.child_pid is not None and loop.time() < deadline:
                settle(loop, 0.05)
        finally:
            loop.remove_signal_handler(signal.SIGCHLD)

    def test_successful_child_detaches(self, loop, tmp_path):
        sched = SyncScheduler(loop, tmp_path / "src", tmp_path / "dst", rsync="true")

        self._run(loop, sched)

        assert sched.child_pid is None

    def test_failing_child_detaches(self, loop, tmp_path):
        sched = SyncScheduler(loop, tmp_path / "src", tmp_path / "dst", rsync="false")

        self._run(loop, sched)

        assert sched.child_pid is None
