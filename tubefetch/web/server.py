"""
aiohttp application exposing the engine: start, subscribe, cancel, retrieve.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from aiohttp import WSMsgType, web
from pydantic import ValidationError

from tubefetch import __version__
from tubefetch.core.engine import ExtractionEngine
from tubefetch.exceptions import InvalidRequestError
from tubefetch.models.config import ExtractionOptions
from tubefetch.utils.path import parse_source_url

log = logging.getLogger(__name__)

ENGINE_KEY = web.AppKey("engine", ExtractionEngine)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@web.middleware
async def request_logging_middleware(request: web.Request, handler):
    log.debug(f"{request.method} {request.path}")
    response = await handler(request)
    log.info(f"{request.method} {request.path} - {response.status}")
    return response


@web.middleware
async def cors_middleware(request: web.Request, handler):
    if request.method == "OPTIONS":
        response = web.Response(status=204)
    else:
        try:
            response = await handler(request)
        except web.HTTPException as e:
            e.headers["Access-Control-Allow-Origin"] = "*"
            raise
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return response


def _parse_download_request(
    body: Any, force_audio: bool = False
) -> tuple[list[str], ExtractionOptions]:
    """Validates a download request body into source URLs and options."""
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")

    urls = body.get("urls")
    if urls is None:
        url = body.get("url")
        if not url or not isinstance(url, str):
            raise InvalidRequestError('Missing or invalid "url" in body')
        urls = [url]
    elif not isinstance(urls, list) or not urls or not all(
        isinstance(u, str) for u in urls
    ):
        raise InvalidRequestError('"urls" must be a non-empty list of strings')

    for url in urls:
        if parse_source_url(url) is None:
            raise InvalidRequestError(f"Invalid URL: {url}")

    try:
        options = ExtractionOptions(
            quality=body.get("quality"),
            media_format="audio" if force_audio else body.get("format", "audio"),
        )
    except ValidationError:
        raise InvalidRequestError(
            'Invalid format. Must be "audio" or "video"'
        ) from None
    return urls, options


async def handle_download(request: web.Request, force_audio: bool = False) -> web.Response:
    engine = request.app[ENGINE_KEY]
    try:
        body = await request.json()
    except json.JSONDecodeError:
        body = None
    try:
        urls, options = _parse_download_request(body, force_audio=force_audio)
    except InvalidRequestError as e:
        log.warning(f"[yellow]Rejected download request:[/yellow] {e}")
        return web.json_response({"error": str(e)}, status=400)

    is_batch = len(urls) > 1 or parse_source_url(urls[0])[0] == "playlist"
    if is_batch:
        session_id = engine.start_batch(urls, options)
        host = request.host
        return web.json_response(
            {
                "type": "playlist",
                "sessionId": session_id,
                "message": (
                    "Batch download started. Connect to "
                    f"ws://{host}/ws?sessionId={session_id} for progress updates"
                ),
            }
        )

    session_id, outcome = await engine.extract_single(urls[0], options)
    if outcome.success:
        return web.json_response(
            {
                "id": session_id,
                "sessionId": session_id,
                "format": options.media_format,
                "fileName": outcome.file_name,
                "downloadUrl": outcome.download_url,
            }
        )
    return web.json_response(
        {
            "error": outcome.error or "Download failed",
            "errorCode": outcome.error_kind.value if outcome.error_kind else None,
            "details": {"url": urls[0], "format": options.media_format},
        },
        status=500,
    )


async def handle_download_v1(request: web.Request) -> web.Response:
    return await handle_download(request)


async def handle_download_legacy(request: web.Request) -> web.Response:
    return await handle_download(request, force_audio=True)


async def handle_cancel(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    session_id = request.match_info["session_id"]
    engine.request_cancel(session_id)
    return web.json_response({"sessionId": session_id, "status": "cancelling"}, status=202)


async def handle_websocket(request: web.Request) -> web.WebSocketResponse:
    engine = request.app[ENGINE_KEY]
    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)

    session_id = request.query.get("sessionId")
    if not session_id:
        log.info("WebSocket connection rejected: missing sessionId")
        await ws.close(code=1008, message=b"Missing sessionId parameter")
        return ws

    log.info(f"WebSocket client connected for {session_id}")
    engine.subscribe(session_id, ws)
    try:
        await ws.send_json(
            {
                "type": "connected",
                "sessionId": session_id,
                "message": "Connected to download progress stream",
            }
        )
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    payload = json.loads(msg.data)
                except json.JSONDecodeError:
                    log.debug(f"Ignoring non-JSON WebSocket message for {session_id}")
                    continue
                if isinstance(payload, dict) and payload.get("type") == "cancel":
                    engine.request_cancel(session_id)
            elif msg.type == WSMsgType.ERROR:
                log.warning(f"WebSocket error for {session_id}: {ws.exception()}")
    finally:
        engine.unsubscribe(session_id, ws)
        log.info(f"WebSocket client disconnected: {session_id}")
    return ws


async def handle_artifact(request: web.Request) -> web.StreamResponse:
    engine = request.app[ENGINE_KEY]
    path = engine.artifact_path(request.match_info["name"])
    if path is None:
        raise web.HTTPNotFound(text="File not found")
    # FileResponse honours Range headers for resumable transfers.
    return web.FileResponse(path)


async def handle_health(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    return web.json_response(
        {
            "status": "ok",
            "timestamp": _now(),
            "version": __version__,
            "sessions": len(engine.registry),
        }
    )


async def _on_startup(app: web.Application) -> None:
    await app[ENGINE_KEY].start()


async def _on_cleanup(app: web.Application) -> None:
    await app[ENGINE_KEY].stop()


def create_app(engine: ExtractionEngine) -> web.Application:
    """Builds the aiohttp application around an engine."""
    app = web.Application(middlewares=[cors_middleware, request_logging_middleware])
    app[ENGINE_KEY] = engine
    app.router.add_get("/health", handle_health)
    app.router.add_post("/api/download", handle_download_legacy)
    app.router.add_post("/api/v1/download", handle_download_v1)
    app.router.add_post("/api/v1/sessions/{session_id}/cancel", handle_cancel)
    app.router.add_get("/ws", handle_websocket)
    app.router.add_get("/downloads/{name}", handle_artifact)
    app.on_startup.append(_on_startup)
    app.on_cleanup.append(_on_cleanup)
    return app
