"""Resolve a source URL into metadata and available encodings with yt-dlp."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import requests
from yt_dlp import YoutubeDL

from config.settings import DEFAULT_CONTAINER, PRESET_BEST_AUDIO, PRESET_BEST_QUALITY, PRESET_BEST_VIDEO
from engine.json_utils import log_event
from input.video_url import extract_video_id

_OEMBED_URL = "https://www.youtube.com/oembed"

_PROBE_OPTS = {
    "quiet": True,
    "no_warnings": True,
    "skip_download": True,
    "noplaylist": True,
    "nocheckcertificate": True,
    "retries": 2,
}


class ResolutionFailed(Exception):
    """yt-dlp could not produce usable metadata for a URL."""

    def __init__(self, message: str, *, status_code: int = 500) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class Encoding:
    format_id: str
    container: str
    quality: str
    has_video: bool
    has_audio: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "formatId": self.format_id,
            "quality": self.quality,
            "container": self.container,
            "hasVideo": self.has_video,
            "hasAudio": self.has_audio,
        }


@dataclass(frozen=True)
class ResolvedMedia:
    video_id: str
    title: str
    canonical_url: str
    default_container: str = DEFAULT_CONTAINER
    duration: Optional[float] = None
    thumbnail: Optional[str] = None
    author: Optional[str] = None
    encodings: tuple[Encoding, ...] = field(default_factory=tuple)

    def container_map(self) -> dict[str, str]:
        """Selector -> container, for every format id and preset."""
        containers = {enc.format_id: enc.container for enc in self.encodings if enc.container}
        containers[PRESET_BEST_QUALITY] = self.default_container
        audio_only = [enc for enc in self.encodings if enc.has_audio and not enc.has_video]
        video_only = [enc for enc in self.encodings if enc.has_video and not enc.has_audio]
        # yt-dlp lists formats worst to best
        if audio_only and audio_only[-1].container:
            containers[PRESET_BEST_AUDIO] = audio_only[-1].container
        if video_only and video_only[-1].container:
            containers[PRESET_BEST_VIDEO] = video_only[-1].container
        return containers


def _has_video(fmt: dict) -> bool:
    return fmt.get("vcodec") != "none"


def _has_audio(fmt: dict) -> bool:
    return fmt.get("acodec") != "none"


def describe_quality(fmt: dict) -> str:
    if fmt.get("height"):
        return f"{fmt['height']}p"
    if fmt.get("format_note"):
        return str(fmt["format_note"])
    return "audio" if _has_audio(fmt) else "unknown"


def pick_default_container(formats: list[dict]) -> str:
    best = (
        next((f for f in formats if _has_video(f) and _has_audio(f)), None)
        or next((f for f in formats if _has_video(f)), None)
        or (formats[0] if formats else None)
    )
    return (best or {}).get("ext") or DEFAULT_CONTAINER


def extract_encodings(formats: list[dict]) -> tuple[Encoding, ...]:
    encodings = []
    for fmt in formats:
        if not (_has_video(fmt) or _has_audio(fmt)):
            continue
        encodings.append(
            Encoding(
                format_id=str(fmt.get("format_id") or ""),
                container=str(fmt.get("ext") or ""),
                quality=describe_quality(fmt),
                has_video=_has_video(fmt),
                has_audio=_has_audio(fmt),
            )
        )
    return tuple(encodings)


def _pick_thumbnail(info: dict) -> Optional[str]:
    thumbnails = info.get("thumbnails") or []
    if thumbnails and isinstance(thumbnails[-1], dict) and thumbnails[-1].get("url"):
        return thumbnails[-1]["url"]
    return info.get("thumbnail")


def _youtube_oembed(url: str) -> dict:
    try:
        resp = requests.get(_OEMBED_URL, params={"url": url, "format": "json"}, timeout=5)
        if not resp.ok:
            return {}
        data = resp.json() if resp.content else {}
    except (requests.RequestException, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def build_resolved_media(info: dict, *, source_url: str) -> ResolvedMedia:
    if not isinstance(info, dict) or not info.get("id"):
        raise ResolutionFailed("Could not fetch video info", status_code=400)

    video_id = str(info["id"])
    formats = [f for f in (info.get("formats") or []) if isinstance(f, dict)]
    title = info.get("title")
    author = info.get("uploader") or info.get("channel")
    thumbnail = _pick_thumbnail(info)
    if not (title and author):
        oembed = _youtube_oembed(info.get("webpage_url") or source_url)
        title = title or oembed.get("title")
        author = author or oembed.get("author_name")
        thumbnail = thumbnail or oembed.get("thumbnail_url")

    return ResolvedMedia(
        video_id=video_id,
        title=str(title or "video"),
        canonical_url=info.get("webpage_url") or f"https://www.youtube.com/watch?v={video_id}",
        default_container=pick_default_container(formats),
        duration=info.get("duration"),
        thumbnail=thumbnail,
        author=author,
        encodings=extract_encodings(formats),
    )


def resolve_media(url: str) -> ResolvedMedia:
    """Probe ``url`` with yt-dlp (no download) and shape the result.

    Blocking; call it from a worker thread inside the event loop.

    Raises:
        ResolutionFailed: yt-dlp errored or returned nothing usable.
    """
    try:
        with YoutubeDL(dict(_PROBE_OPTS)) as ydl:
            info = ydl.extract_info(url, download=False)
    except Exception as exc:
        log_event(logging.WARNING, "resolve_failed", url=url, video_id=extract_video_id(url), error=str(exc))
        raise ResolutionFailed(str(exc) or "Failed to process YouTube URL") from exc
    return build_resolved_media(info, source_url=url)
