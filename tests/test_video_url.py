from __future__ import annotations

import pytest

from input.video_url import extract_video_id


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://www.youtube.com/watch?v=dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("https://www.youtube.com/watch?v=dQw4w9WgXcQ&t=42s", "dQw4w9WgXcQ"),
        ("https://www.youtube.com/watch?feature=share&v=dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("https://youtu.be/dQw4w9WgXcQ?si=abc", "dQw4w9WgXcQ"),
        ("https://www.youtube.com/embed/dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("https://www.youtube.com/v/dQw4w9WgXcQ?version=3", "dQw4w9WgXcQ"),
        ("https://youtube.com/shorts/dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("  https://youtu.be/dQw4w9WgXcQ  ", "dQw4w9WgXcQ"),
    ],
)
def test_extract_video_id(url, expected) -> None:
    assert extract_video_id(url) == expected


@pytest.mark.parametrize(
    "url",
    ["", None, "not a url", "https://vimeo.com/12345", "https://www.youtube.com/playlist?list=PL123"],
)
def test_extract_video_id_rejects_other_urls(url) -> None:
    assert extract_video_id(url) is None
