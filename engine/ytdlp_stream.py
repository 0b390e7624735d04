"""yt-dlp child processes that write one encoding to stdout."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import sys
from collections import deque

from config.settings import (
    DEFAULT_FORMAT_PRESET,
    FORMAT_PRESETS,
    STREAM_CHUNK_SIZE,
    UPSTREAM_TERMINATE_GRACE_SECONDS,
)

logger = logging.getLogger(__name__)

# yt-dlp format ids look like "22", "251-drc", "hls-1080p", "dash-video=800000".
# "+" (merge) and leading dashes are refused: the first needs a muxer, the
# second would be parsed as an option.
_FORMAT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.=-]{0,63}$")

_STDERR_TAIL_LINES = 20


class InvalidFormatSelector(ValueError):
    """Raised for a format selector that is neither a preset nor a format id."""


class UpstreamStreamError(RuntimeError):
    """Raised when yt-dlp cannot produce (or stops producing) the requested bytes."""


def ytdlp_command():
    """Return the argv prefix used to invoke yt-dlp."""
    configured = (os.environ.get("VIXO_YTDLP_BIN") or "").strip()
    if configured:
        return [configured]
    on_path = shutil.which("yt-dlp")
    if on_path:
        return [on_path]
    return [sys.executable, "-m", "yt_dlp"]


def resolve_format_selector(selector):
    """Map a client format selector to ``(yt-dlp format, container key)``.

    ``None`` or blank means the default preset. The container key is what the
    token record's container map is indexed by: the preset name or the id.
    """
    value = (selector or "").strip() or DEFAULT_FORMAT_PRESET
    preset = FORMAT_PRESETS.get(value)
    if preset:
        return preset, value
    if not _FORMAT_ID_RE.match(value):
        raise InvalidFormatSelector(f"Unsupported format: {value}")
    return value, value


def build_stream_argv(url, ytdlp_format, *, command=None):
    """Return the argv that streams ``url`` in ``ytdlp_format`` to stdout."""
    argv = list(command or ytdlp_command())
    argv.extend(["-f", str(ytdlp_format)])
    argv.extend(["-o", "-"])
    argv.extend(
        [
            "--no-warnings",
            "--no-check-certificates",
            "--no-playlist",
            "--no-progress",
            "--quiet",
        ]
    )
    # URL after "--" so a hostile value is never read as an option.
    argv.extend(["--", str(url)])
    return argv


class YtDlpProcess:
    """A running yt-dlp process whose stdout carries the media bytes.

    stderr is drained in the background (keeping the last lines for error
    messages) so a chatty extractor can never block on a full pipe.
    """

    def __init__(self, proc, argv):
        self._proc = proc
        self._argv = argv
        self._stderr_tail = deque(maxlen=_STDERR_TAIL_LINES)
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    @classmethod
    async def spawn(cls, argv):
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise UpstreamStreamError(f"yt-dlp could not be started: {exc}") from exc
        logger.debug("yt-dlp started pid=%s", proc.pid)
        return cls(proc, argv)

    @property
    def pid(self):
        return self._proc.pid

    @property
    def returncode(self):
        return self._proc.returncode

    @property
    def stderr_tail(self):
        return "".join(self._stderr_tail).strip()

    async def _drain_stderr(self):
        stream = self._proc.stderr
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            self._stderr_tail.append(line.decode("utf-8", errors="replace"))

    async def read(self, size=STREAM_CHUNK_SIZE):
        return await self._proc.stdout.read(size)

    async def finish(self):
        """Wait for a clean exit after EOF; raise if yt-dlp reported failure."""
        return_code = await self._proc.wait()
        await asyncio.wait([self._stderr_task])
        if return_code != 0:
            detail = self.stderr_tail or "no error output"
            raise UpstreamStreamError(f"yt-dlp exited with status {return_code}: {detail}")

    async def terminate(self, grace_seconds=UPSTREAM_TERMINATE_GRACE_SECONDS):
        if self._proc.returncode is None:
            try:
                self._proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("yt-dlp pid=%s ignored SIGTERM; killing", self._proc.pid)
                try:
                    self._proc.kill()
                except ProcessLookupError:
                    pass
                await self._proc.wait()
        if not self._stderr_task.done():
            self._stderr_task.cancel()
            await asyncio.wait([self._stderr_task])


async def open_ytdlp_stream(url, ytdlp_format):
    """Start yt-dlp streaming ``url`` in ``ytdlp_format``."""
    return await YtDlpProcess.spawn(build_stream_argv(url, ytdlp_format))
