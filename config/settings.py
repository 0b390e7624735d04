"""Application settings constants."""

from __future__ import annotations

# Lifetime of a download token, counted from mint.
TOKEN_TTL_SECONDS = 10 * 60

# Interval of the background sweep that reclaims expired tokens.
SWEEP_INTERVAL_SECONDS = 60

# How long an evicted token keeps reporting "expired" instead of "not found".
TOKEN_TOMBSTONE_SECONDS = 60 * 60

# Bytes read from yt-dlp per chunk, and how many chunks may wait for a slow client.
STREAM_CHUNK_SIZE = 64 * 1024
STREAM_BUFFER_CHUNKS = 16

# Grace period between SIGTERM and SIGKILL for an abandoned yt-dlp process.
UPSTREAM_TERMINATE_GRACE_SECONDS = 5.0

DEFAULT_CONTAINER = "mp4"
FALLBACK_FILENAME = "video"
FILENAME_MAX_LENGTH = 180

PRESET_BEST_QUALITY = "best-quality"
PRESET_BEST_AUDIO = "best-audio-only"
PRESET_BEST_VIDEO = "best-video-only"
DEFAULT_FORMAT_PRESET = PRESET_BEST_QUALITY

# Preset name -> yt-dlp format expression. Only single-file selections, since
# the output is written to stdout and cannot be merged.
FORMAT_PRESETS = {
    PRESET_BEST_QUALITY: "best[ext=mp4]/best[ext=webm]/best",
    PRESET_BEST_AUDIO: "bestaudio",
    PRESET_BEST_VIDEO: "bestvideo",
}
