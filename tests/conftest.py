import asyncio
import sys

import pytest

linux_only = pytest.mark.skipif(not sys.platform.startswith("linux"), reason="inotify is Linux only")


@pytest.fixture
def loop():
    loop = asyncio.new_event_loop()
    yield loop
    loop.close()


def settle(loop, seconds=0.2):
    """Let the loop dispatch whatever arrives within `seconds`."""
    loop.run_until_complete(asyncio.sleep(seconds))


class FakeSpawn:
    """Stands in for os.posix_spawnp; records each command and the loop time it ran."""

    def __init__(self, loop=None, pid=4242, error=None):
        self.loop = loop
        self.pid = pid
        self.error = error
        self.calls = []
        self.times = []

    def __call__(self, path, argv, env):
        if self.error is not None:
            raise self.error
        self.calls.append(list(argv))
        if self.loop is not None:
            self.times.append(self.loop.time())
        return self.pid


class FakeWaitpid:
    """Returns queued (pid, status) results, then (0, 0) once the queue is empty."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def __call__(self, pid, options):
        self.calls.append((pid, options))
        if not self.results:
            return 0, 0
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


@pytest.fixture
def fake_spawn(loop):
    return FakeSpawn(loop)
