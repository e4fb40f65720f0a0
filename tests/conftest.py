import asyncio
import sys
import time
from pathlib import Path

import pytest

from camwatch.registry import StreamRegistry

FAKE_FFMPEG = Path(__file__).with_name("fake_ffmpeg.py")


class FakeTranscoder:
    """Spawn function that runs ``fake_ffmpeg.py`` in place of ffmpeg.

    ``sources`` overrides the ``-i`` value of successive launches; once it is
    exhausted, launches keep the source from the command line.
    """

    def __init__(self, *sources):
        self.sources = list(sources)
        self.calls = []

    async def __call__(self, *cmd, **kwargs):
        args = list(cmd[1:])
        if self.sources:
            args[args.index("-i") + 1] = self.sources.pop(0)
        self.calls.append(args)
        return await asyncio.create_subprocess_exec(sys.executable, str(FAKE_FFMPEG), *args, **kwargs)

    def source_of(self, n):
        args = self.calls[n]
        return args[args.index("-i") + 1]


class Recorder:
    """Listener that keeps every message it is sent."""

    def __init__(self):
        self.messages = []

    async def send_json(self, data):
        self.messages.append(data)

    def types(self):
        return [m["type"] for m in self.messages]


async def wait_until(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        await asyncio.sleep(interval)
    raise AssertionError("condition not met within %.1fs" % timeout)


@pytest.fixture
def fake():
    return FakeTranscoder()


@pytest.fixture
def make_registry(tmp_path, fake):
    def factory(spawn=None, **overrides):
        opts = dict(
            max_streams=4,
            startup_timeout=5.0,
            stop_grace=2.0,
            liveness_timeout=10.0,
            max_attempts=5,
            reconnect_delay=0.01,
            janitor_interval=3600,
        )
        opts.update(overrides)
        return StreamRegistry(tmp_path / "hls", spawn=spawn or fake, **opts)
    return factory
