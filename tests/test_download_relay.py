from __future__ import annotations

import asyncio

import pytest

from engine.relay import DownloadRelay, TokenExpired, TokenNotFound
from engine.tokens import TokenStore
from engine.ytdlp_stream import InvalidFormatSelector, UpstreamStreamError


def _relay(clock, opener, **kwargs):
    store = TokenStore(ttl_seconds=600, clock=clock)
    return store, DownloadRelay(store, opener=opener, **kwargs)


async def _collect(download):
    return [chunk async for chunk in download.iter_bytes()]


def test_redeem_streams_chunks_with_attachment_headers(fake_clock, fake_opener) -> None:
    store, relay = _relay(fake_clock, fake_opener)
    token = store.mint(
        "https://www.youtube.com/watch?v=abc",
        "My Clip",
        "mp4",
        containers={"best-quality": "mp4"},
    )

    async def _run():
        download = await relay.redeem(token)
        return download, await _collect(download)

    download, chunks = asyncio.run(_run())

    assert chunks == [b"chunk-1", b"chunk-2"]
    assert download.filename == "My_Clip.mp4"
    assert download.headers == {"Content-Disposition": 'attachment; filename="My_Clip.mp4"'}
    assert download.media_type == "application/octet-stream"
    assert download.state == "completed"
    assert download.bytes_sent == len(b"chunk-1chunk-2")
    assert fake_opener.calls == [("https://www.youtube.com/watch?v=abc", "best[ext=mp4]/best[ext=webm]/best")]
    assert fake_opener.opened[0].finished
    assert fake_opener.opened[0].terminated


def test_explicit_format_uses_its_container(fake_clock, fake_opener) -> None:
    store, relay = _relay(fake_clock, fake_opener)
    token = store.mint("https://example.com/v", "Song", "mp4", containers={"251": "webm"})

    async def _run():
        download = await relay.redeem(token, "251")
        await _collect(download)
        return download

    download = asyncio.run(_run())

    assert fake_opener.calls[0][1] == "251"
    assert download.filename == "Song.webm"


def test_audio_preset_maps_to_bestaudio(fake_clock, fake_opener) -> None:
    store, relay = _relay(fake_clock, fake_opener)
    token = store.mint("https://example.com/v", "Song", "mp4", containers={"best-audio-only": "m4a"})

    async def _run():
        download = await relay.redeem(token, "best-audio-only")
        await _collect(download)
        return download

    download = asyncio.run(_run())

    assert fake_opener.calls[0][1] == "bestaudio"
    assert download.filename == "Song.m4a"


def test_never_minted_token_does_not_contact_upstream(fake_clock, fake_opener) -> None:
    _, relay = _relay(fake_clock, fake_opener)

    with pytest.raises(TokenNotFound):
        asyncio.run(relay.redeem("nonexistent-token-abc"))

    assert fake_opener.calls == []


def test_expired_token_is_refused_even_before_sweep(fake_clock, fake_opener) -> None:
    store, relay = _relay(fake_clock, fake_opener)
    token = store.mint("https://example.com/v", "t", "mp4")

    async def _redeem_and_drain():
        download = await relay.redeem(token)
        return await _collect(download)

    fake_clock.advance(599)
    assert asyncio.run(_redeem_and_drain()) == [b"chunk-1", b"chunk-2"]

    fake_clock.advance(1)
    with pytest.raises(TokenExpired):
        asyncio.run(relay.redeem(token))
    with pytest.raises(TokenExpired):
        asyncio.run(relay.redeem(token))
    assert len(fake_opener.calls) == 1


def test_same_token_redeems_twice_with_independent_upstreams(fake_clock, fake_opener) -> None:
    store, relay = _relay(fake_clock, fake_opener)
    token = store.mint("https://example.com/v", "t", "mp4")

    async def _run():
        first = await relay.redeem(token)
        second = await relay.redeem(token)
        return await _collect(first), await _collect(second)

    first_chunks, second_chunks = asyncio.run(_run())

    assert first_chunks == second_chunks == [b"chunk-1", b"chunk-2"]
    assert len(fake_opener.opened) == 2
    assert fake_opener.opened[0] is not fake_opener.opened[1]


def test_invalid_format_selector_is_refused_before_upstream(fake_clock, fake_opener) -> None:
    store, relay = _relay(fake_clock, fake_opener)
    token = store.mint("https://example.com/v", "t", "mp4")

    with pytest.raises(InvalidFormatSelector):
        asyncio.run(relay.redeem(token, "--exec rm"))
    assert fake_opener.calls == []


def test_failure_before_first_byte_raises_and_terminates(fake_clock, make_opener, make_upstream) -> None:
    opener = make_opener(lambda: make_upstream([b"never"], fail_after=0))
    store, relay = _relay(fake_clock, opener)
    token = store.mint("https://example.com/v", "t", "mp4")

    with pytest.raises(UpstreamStreamError):
        asyncio.run(relay.redeem(token))
    assert opener.opened[0].terminated


def test_nonzero_exit_without_output_raises(fake_clock, make_opener, make_upstream) -> None:
    error = UpstreamStreamError("yt-dlp exited with status 1: ERROR: Video unavailable")
    opener = make_opener(lambda: make_upstream([], exit_error=error))
    store, relay = _relay(fake_clock, opener)
    token = store.mint("https://example.com/v", "t", "mp4")

    with pytest.raises(UpstreamStreamError, match="Video unavailable"):
        asyncio.run(relay.redeem(token))


def test_mid_stream_failure_raises_after_delivered_bytes(fake_clock, make_opener, make_upstream) -> None:
    opener = make_opener(lambda: make_upstream([b"a", b"b", b"c", b"d"], fail_after=2))
    store, relay = _relay(fake_clock, opener)
    token = store.mint("https://example.com/v", "t", "mp4")
    received = []

    async def _run():
        download = await relay.redeem(token)
        with pytest.raises(UpstreamStreamError):
            async for chunk in download.iter_bytes():
                received.append(chunk)
        return download

    download = asyncio.run(_run())

    assert received == [b"a", b"b"]
    assert download.state == "aborted_mid_stream"
    assert opener.opened[0].terminated


def test_client_disconnect_terminates_upstream(fake_clock, make_opener, make_upstream) -> None:
    opener = make_opener(lambda: make_upstream((b"x" * 16 for _ in range(1000)), block_after=5))
    store, relay = _relay(fake_clock, opener, buffer_chunks=2)
    token = store.mint("https://example.com/v", "t", "mp4")

    async def _run():
        download = await relay.redeem(token)
        stream = download.iter_bytes()
        await stream.__anext__()
        await stream.__anext__()
        # Client goes away mid-transfer.
        await asyncio.wait_for(stream.aclose(), timeout=1)
        return download

    download = asyncio.run(_run())

    upstream = opener.opened[0]
    assert upstream.terminated
    assert download.state == "aborted_mid_stream"
    assert download.bytes_sent == 32


def test_close_is_idempotent(fake_clock, fake_opener) -> None:
    store, relay = _relay(fake_clock, fake_opener)
    token = store.mint("https://example.com/v", "t", "mp4")

    async def _run():
        download = await relay.redeem(token)
        await download.close()
        await download.close()

    asyncio.run(_run())

    assert fake_opener.opened[0].terminate_calls == 1


def test_large_stream_is_relayed_with_bounded_buffer(fake_clock, make_opener, make_upstream) -> None:
    chunk = b"\0" * 4096
    total_chunks = (50 * 1024 * 1024) // len(chunk)
    buffer_chunks = 8
    opener = make_opener(lambda: make_upstream(chunk for _ in range(total_chunks)))
    store, relay = _relay(fake_clock, opener, chunk_size=4096, buffer_chunks=buffer_chunks)
    token = store.mint("https://example.com/v", "big", "mp4")
    max_ahead = 0

    async def _run():
        nonlocal max_ahead
        download = await relay.redeem(token)
        upstream = opener.opened[0]
        received = 0
        async for piece in download.iter_bytes():
            received += 1
            max_ahead = max(max_ahead, upstream.chunks_read - received)
            if received % 512 == 0:
                # Slow consumer: let the pump run as far ahead as it can.
                await asyncio.sleep(0)
        return received

    received = asyncio.run(_run())

    assert received == total_chunks
    # Queue slots plus the chunk the pump holds while blocked on put().
    assert max_ahead <= buffer_chunks + 1
