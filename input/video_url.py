"""Recognise YouTube video URLs without touching the network."""

from __future__ import annotations

import re
from typing import Optional

_VIDEO_ID_PATTERNS = (
    re.compile(r"(?:youtube\.com/watch\?(?:[^#\s]*&)?v=)([^&#\s]+)"),
    re.compile(r"(?:youtu\.be/)([^?#/\s]+)"),
    re.compile(r"(?:youtube\.com/embed/)([^?#/\s]+)"),
    re.compile(r"(?:youtube\.com/v/)([^?#/\s]+)"),
    re.compile(r"(?:youtube\.com/shorts/)([^?#/\s]+)"),
)


def extract_video_id(url: str) -> Optional[str]:
    """Return the video id of a watch, short, embed or shorts URL, else ``None``.

    Matching is by pattern only; the id is not checked against YouTube.
    """
    raw = (url or "").strip()
    if not raw:
        return None
    for pattern in _VIDEO_ID_PATTERNS:
        match = pattern.search(raw)
        if match:
            return match.group(1)
    return None
