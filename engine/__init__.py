from engine.relay import DownloadRelay, RelayDownload, TokenExpired, TokenNotFound, build_download_filename
from engine.resolver import Encoding, ResolutionFailed, ResolvedMedia, resolve_media
from engine.runtime import get_runtime_info
from engine.sweeper import TokenSweeper
from engine.tokens import LookupStatus, TokenLookup, TokenRecord, TokenStore
from engine.ytdlp_stream import InvalidFormatSelector, UpstreamStreamError

__all__ = [
    "DownloadRelay",
    "Encoding",
    "InvalidFormatSelector",
    "LookupStatus",
    "RelayDownload",
    "ResolutionFailed",
    "ResolvedMedia",
    "TokenExpired",
    "TokenLookup",
    "TokenNotFound",
    "TokenRecord",
    "TokenStore",
    "TokenSweeper",
    "UpstreamStreamError",
    "build_download_filename",
    "get_runtime_info",
    "resolve_media",
]
