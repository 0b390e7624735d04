"""Token redemption and streaming of yt-dlp output to HTTP clients.

A redemption looks the token up, picks the yt-dlp format, starts yt-dlp and
waits for the first chunk before handing a ``RelayDownload`` back. Up to that
point every failure can still be reported as a normal error response. After
it, bytes flow through a bounded queue:

    yt-dlp stdout -> pump task -> asyncio.Queue(maxsize=N) -> iter_bytes()

A slow client stops the pump, and a stopped pump stops yt-dlp on its stdout
pipe, so memory use does not depend on the size of the media.
"""

from __future__ import annotations

import asyncio
import logging
import re

from config.settings import (
    DEFAULT_CONTAINER,
    FALLBACK_FILENAME,
    FILENAME_MAX_LENGTH,
    STREAM_BUFFER_CHUNKS,
    STREAM_CHUNK_SIZE,
)
from engine.json_utils import log_event
from engine.tokens import LookupStatus, TokenRecord, TokenStore, token_label
from engine.ytdlp_stream import UpstreamStreamError, open_ytdlp_stream, resolve_format_selector

MEDIA_TYPE = "application/octet-stream"

_UNSAFE_TITLE_CHARS_RE = re.compile(r"[^\w\s-]", re.ASCII)
_WHITESPACE_RE = re.compile(r"\s+")
_UNSAFE_EXT_CHARS_RE = re.compile(r"[^A-Za-z0-9]")


class TokenNotFound(LookupError):
    """The token was never issued (or its tombstone has been forgotten)."""


class TokenExpired(LookupError):
    """The token existed but its lifetime is over."""


def build_download_filename(title, container, *, default_container=DEFAULT_CONTAINER):
    """Return ``<safe title>.<ext>`` for a Content-Disposition header.

    Only ASCII word characters, hyphens and ``_`` survive, so the result
    never contains path separators, quotes or shell metacharacters.
    """
    safe_title = _UNSAFE_TITLE_CHARS_RE.sub("", str(title or "")).strip()
    safe_title = _WHITESPACE_RE.sub("_", safe_title)[:FILENAME_MAX_LENGTH]
    safe_ext = _UNSAFE_EXT_CHARS_RE.sub("", str(container or "")) or default_container
    return f"{safe_title or FALLBACK_FILENAME}.{safe_ext}"


class _UpstreamFailure:
    __slots__ = ("error",)

    def __init__(self, error):
        self.error = error


_EOF = object()


class RelayDownload:
    """One in-flight transfer from yt-dlp to a client."""

    def __init__(
        self,
        *,
        token: str,
        filename: str,
        upstream,
        chunk_size: int = STREAM_CHUNK_SIZE,
        buffer_chunks: int = STREAM_BUFFER_CHUNKS,
    ) -> None:
        self.token = token
        self.filename = filename
        self.media_type = MEDIA_TYPE
        self.bytes_sent = 0
        self.state = "pending"
        self._upstream = upstream
        self._chunk_size = chunk_size
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, buffer_chunks))
        self._pump_task: asyncio.Task | None = None
        self._first = None
        self._closed = False

    @property
    def headers(self) -> dict[str, str]:
        return {"Content-Disposition": f'attachment; filename="{self.filename}"'}

    async def _pump(self) -> None:
        try:
            while True:
                chunk = await self._upstream.read(self._chunk_size)
                if not chunk:
                    break
                await self._queue.put(chunk)
            await self._upstream.finish()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._queue.put(_UpstreamFailure(exc))
            return
        await self._queue.put(_EOF)

    async def prime(self) -> None:
        """Start pumping and wait for the first chunk (or end of stream).

        Raises:
            UpstreamStreamError: yt-dlp failed before producing any byte.
        """
        self._pump_task = asyncio.create_task(self._pump())
        first = await self._queue.get()
        if isinstance(first, _UpstreamFailure):
            self.state = "failed"
            error = first.error
            if isinstance(error, UpstreamStreamError):
                raise error
            raise UpstreamStreamError(str(error)) from error
        self._first = first
        self.state = "streaming"

    async def iter_bytes(self):
        """Yield media chunks; raise ``UpstreamStreamError`` if yt-dlp dies mid-way."""
        completed = False
        try:
            item = self._first
            self._first = None
            while item is not _EOF:
                if isinstance(item, _UpstreamFailure):
                    raise UpstreamStreamError(str(item.error)) from item.error
                self.bytes_sent += len(item)
                yield item
                item = await self._queue.get()
            completed = True
        finally:
            self.state = "completed" if completed else "aborted_mid_stream"
            log_event(
                logging.INFO if completed else logging.WARNING,
                "download_" + self.state,
                token=token_label(self.token),
                filename=self.filename,
                bytes_sent=self.bytes_sent,
            )
            await self.close()

    async def close(self) -> None:
        """Stop the pump and the yt-dlp process. Safe to call repeatedly."""
        if self._closed:
            return
        if self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()
            await asyncio.wait([self._pump_task])
        await self._upstream.terminate()
        self._closed = True


class DownloadRelay:
    """Redeems tokens from a ``TokenStore`` into ``RelayDownload`` streams."""

    def __init__(
        self,
        store: TokenStore,
        *,
        opener=open_ytdlp_stream,
        chunk_size: int = STREAM_CHUNK_SIZE,
        buffer_chunks: int = STREAM_BUFFER_CHUNKS,
    ) -> None:
        self._store = store
        self._opener = opener
        self._chunk_size = chunk_size
        self._buffer_chunks = buffer_chunks

    @property
    def store(self) -> TokenStore:
        return self._store

    def resolve_token(self, token: str) -> TokenRecord:
        result = self._store.lookup(token)
        if result.status is LookupStatus.NOT_FOUND:
            log_event(logging.INFO, "download_token_invalid", token=token_label(token))
            raise TokenNotFound(token)
        if result.status is LookupStatus.EXPIRED:
            log_event(logging.INFO, "download_token_expired", token=token_label(token))
            raise TokenExpired(token)
        return result.record

    async def redeem(self, token: str, format_selector: str | None = None) -> RelayDownload:
        """Validate ``token`` and start streaming the selected encoding.

        Raises:
            TokenNotFound, TokenExpired: the token cannot be redeemed.
            InvalidFormatSelector: the selector is not a preset or format id.
            UpstreamStreamError: yt-dlp failed before the first byte.
        """
        record = self.resolve_token(token)
        ytdlp_format, container_key = resolve_format_selector(format_selector)
        filename = build_download_filename(
            record.title,
            record.container_for(container_key),
            default_container=record.default_container,
        )

        upstream = await self._opener(record.resolved_url, ytdlp_format)
        download = RelayDownload(
            token=token,
            filename=filename,
            upstream=upstream,
            chunk_size=self._chunk_size,
            buffer_chunks=self._buffer_chunks,
        )
        try:
            await download.prime()
        except BaseException:
            await download.close()
            raise
        log_event(
            logging.INFO,
            "download_streaming",
            token=token_label(token),
            format=ytdlp_format,
            filename=filename,
        )
        return download
