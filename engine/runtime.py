import os
import shlex
import sys

from yt_dlp.version import __version__ as ytdlp_version

from engine.ytdlp_stream import ytdlp_command


def get_runtime_info():
    return {
        "app_version": os.environ.get("VIXO_VERSION", "0.0.0"),
        "python_version": sys.version.split()[0],
        "yt_dlp_version": ytdlp_version,
        "yt_dlp_command": shlex.join(ytdlp_command()),
    }
