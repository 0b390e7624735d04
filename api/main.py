#!/usr/bin/env python3
import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import anyio
import uvicorn
from fastapi import APIRouter, Body, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from engine.json_utils import log_event, safe_json
from engine.paths import LOG_DIR, ensure_dir
from engine.relay import DownloadRelay, RelayDownload, TokenExpired, TokenNotFound
from engine.resolver import ResolutionFailed, resolve_media
from engine.runtime import get_runtime_info
from engine.sweeper import TokenSweeper
from engine.tokens import TokenStore, token_label
from engine.ytdlp_stream import InvalidFormatSelector, UpstreamStreamError
from input.video_url import extract_video_id

APP_NAME = "VIXO API"
_TRUST_PROXY = os.environ.get("VIXO_TRUST_PROXY", "").strip().lower() in {"1", "true", "yes", "on"}
_HOST = os.environ.get("HOST", "0.0.0.0")
_PORT = int(os.environ.get("PORT", "3000"))
_DOWNLOAD_PATH_PREFIX = "/api/download/"
_URL_REQUIRED_MESSAGE = (
    'YouTube URL is required. Send JSON body: {"url": "https://youtube.com/..."} '
    "with header Content-Type: application/json"
)


def _setup_logging(log_dir):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, "vixo.log")
    root.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    has_file = False
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                has_file = True
                break
    if not root.handlers:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)
    if not has_file:
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(logging.INFO)
        root.addHandler(file_handler)


def _redact_path(path):
    if path.startswith(_DOWNLOAD_PATH_PREFIX):
        token = path[len(_DOWNLOAD_PATH_PREFIX):]
        return f"{_DOWNLOAD_PATH_PREFIX}{token_label(token)}..."
    return path


class RequestLogMiddleware:
    """Logs the request line of every HTTP request.

    Plain ASGI: the response passes through untouched, so an error raised
    mid-stream still reaches the server and aborts the connection.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http":
            logging.info("%s %s", scope["method"], _redact_path(scope["path"]))
        await self.app(scope, receive, send)


def _format_duration(value):
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


class SafeJSONResponse(JSONResponse):
    def render(self, content):
        return json.dumps(
            safe_json(content),
            ensure_ascii=False,
            allow_nan=False,
            separators=(",", ":"),
        ).encode("utf-8")


def _error_response(status_code, message):
    return SafeJSONResponse({"success": False, "error": message}, status_code=status_code)


class RelayStreamingResponse(StreamingResponse):
    """Streams a ``RelayDownload`` and always stops its yt-dlp process afterwards.

    Runs on completion, on upstream failure and on client disconnect alike.
    """

    def __init__(self, download: RelayDownload):
        super().__init__(download.iter_bytes(), media_type=download.media_type, headers=download.headers)
        self.download = download

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            with anyio.CancelScope(shield=True):
                await self.download.close()


class ProcessRequest(BaseModel):
    url: Optional[str] = None


router = APIRouter(prefix="/api")


@router.post("/process")
async def api_process(
    request: Request,
    payload: Optional[ProcessRequest] = Body(default=None),
    url: Optional[str] = Query(default=None),
):
    raw_url = (payload.url if payload else None) or url
    if not raw_url or not raw_url.strip():
        return _error_response(400, _URL_REQUIRED_MESSAGE)
    raw_url = raw_url.strip()
    if not extract_video_id(raw_url):
        return _error_response(400, "Invalid YouTube URL")

    state = request.app.state
    try:
        media = await anyio.to_thread.run_sync(state.resolve_media, raw_url)
    except ResolutionFailed as exc:
        logging.error("Process error: %s", exc)
        return _error_response(exc.status_code, str(exc) or "Failed to process YouTube URL")
    except Exception as exc:
        logging.exception("Process error: %s", exc)
        return _error_response(500, str(exc) or "Failed to process YouTube URL")

    store: TokenStore = state.token_store
    record = store.mint_record(
        media.canonical_url,
        media.title,
        media.default_container,
        containers=media.container_map(),
    )
    token = record.token
    log_event(
        logging.INFO,
        "download_token_minted",
        token=token_label(token),
        video_id=media.video_id,
        formats=len(media.encodings),
    )

    base_url = str(request.base_url).rstrip("/")
    download_url = f"{base_url}{_DOWNLOAD_PATH_PREFIX}{token}"
    return {
        "success": True,
        "videoId": media.video_id,
        "title": media.title,
        "duration": _format_duration(media.duration),
        "thumbnail": media.thumbnail,
        "author": media.author,
        "downloadUrl": download_url,
        "downloadWithFormat": f"{download_url}?format=FORMAT_ID",
        "expiresAt": record.expires_at,
        "formats": [encoding.to_dict() for encoding in media.encodings],
    }


@router.get("/download/{token}")
async def api_download(
    request: Request,
    token: str,
    format_selector: Optional[str] = Query(default=None, alias="format"),
):
    relay: DownloadRelay = request.app.state.relay
    try:
        download = await relay.redeem(token, format_selector)
    except TokenNotFound:
        return _error_response(404, "Download link expired or invalid")
    except TokenExpired:
        return _error_response(410, "Download link has expired")
    except InvalidFormatSelector as exc:
        return _error_response(400, str(exc))
    except UpstreamStreamError as exc:
        logging.error("Stream error: %s", exc)
        return _error_response(500, "Download failed")
    except Exception as exc:
        logging.exception("Download error: %s", exc)
        return _error_response(500, str(exc) or "Download failed")
    return RelayStreamingResponse(download)


@router.get("/health")
async def api_health(request: Request):
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc),
        "liveTokens": len(request.app.state.token_store),
        "runtime": get_runtime_info(),
    }


async def _validation_error_handler(request: Request, exc: RequestValidationError):
    return _error_response(400, "Invalid request")


def create_app(*, store=None, relay=None, resolver=None, sweeper=None) -> FastAPI:
    """Build the API with its token store, relay, resolver and sweeper.

    Collaborators default to the real implementations; tests pass fakes.
    """
    if store is None:
        store = relay.store if relay is not None else TokenStore()
    relay = relay or DownloadRelay(store)
    sweeper = sweeper or TokenSweeper(store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _setup_logging(LOG_DIR)
        app.state.sweeper.start()
        logging.info("%s ready", APP_NAME)
        try:
            yield
        finally:
            app.state.sweeper.shutdown()
            logging.info("%s shutdown", APP_NAME)

    app = FastAPI(
        title=APP_NAME,
        description="Resolves media URLs and relays downloads behind short-lived tokens.",
        default_response_class=SafeJSONResponse,
        lifespan=lifespan,
    )
    if _TRUST_PROXY:
        app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )
    app.add_middleware(RequestLogMiddleware)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.state.token_store = store
    app.state.relay = relay
    app.state.resolve_media = resolver or resolve_media
    app.state.sweeper = sweeper
    app.include_router(router)
    return app


app = create_app()


def run():
    logging.info("%s listening on http://%s:%s", APP_NAME, _HOST, _PORT)
    uvicorn.run(app, host=_HOST, port=_PORT)


if __name__ == "__main__":
    run()
