import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from engine.ytdlp_stream import UpstreamStreamError  # noqa: E402


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class FakeUpstream:
    """Stand-in for a yt-dlp process: serves ``chunks`` then exits.

    ``fail_after`` makes it raise once that many chunks were read; with
    ``block_after`` it stalls forever after that many chunks, like a slow source.
    """

    def __init__(self, chunks, *, fail_after=None, block_after=None, exit_error=None):
        self._chunks = iter(chunks)
        self.fail_after = fail_after
        self.block_after = block_after
        self.exit_error = exit_error
        self.chunks_read = 0
        self.finished = False
        self.terminated = False
        self.terminate_calls = 0

    async def read(self, size):
        if self.fail_after is not None and self.chunks_read >= self.fail_after:
            raise UpstreamStreamError("upstream broke")
        if self.block_after is not None and self.chunks_read >= self.block_after:
            await asyncio.Event().wait()
        chunk = next(self._chunks, b"")
        if chunk:
            self.chunks_read += 1
        return chunk

    async def finish(self):
        self.finished = True
        if self.exit_error is not None:
            raise self.exit_error

    async def terminate(self):
        self.terminate_calls += 1
        self.terminated = True


class FakeOpener:
    """Records every upstream it opens; ``make`` builds each ``FakeUpstream``."""

    def __init__(self, make=None):
        self._make = make or (lambda: FakeUpstream([b"chunk-1", b"chunk-2"]))
        self.calls = []
        self.opened = []

    async def __call__(self, url, ytdlp_format):
        self.calls.append((url, ytdlp_format))
        upstream = self._make()
        self.opened.append(upstream)
        return upstream


@pytest.fixture()
def fake_clock():
    return FakeClock()


@pytest.fixture()
def fake_opener():
    return FakeOpener()


@pytest.fixture()
def make_upstream():
    return FakeUpstream


@pytest.fixture()
def make_opener():
    return FakeOpener
