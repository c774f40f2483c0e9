"""Starlette app — HTTP routes + WebSocket + ranged track streaming."""
import asyncio
import contextlib
import logging
import uuid
from typing import Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from ..config import APP_VERSION, DB_PATH, MAX_UPLOAD_MB
from ..db import Database
from ..engine import DeckEngine
from ..errors import (
    FeedUnavailable,
    InvalidCommand,
    LastWorkspaceError,
    PlaybackError,
    StorageUnavailable,
    SyntaxAudioError,
    TrackNotFound,
    WorkspaceNotFound,
    WorkspaceNotLoaded,
    format_error,
)
from ..feeds import fetch_feed
from ..models import SOURCE_SYNDICATED, FeedEntry
from .state import ObserverHub

logger = logging.getLogger(__name__)

_STATUS = {
    WorkspaceNotFound: 404,
    TrackNotFound: 404,
    LastWorkspaceError: 409,
    WorkspaceNotLoaded: 409,
    PlaybackError: 400,
    FeedUnavailable: 502,
    StorageUnavailable: 503,
}


def _engine(request) -> DeckEngine:
    return request.app.state.engine


async def _json_body(request: Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        raise InvalidCommand("Request body must be JSON") from None
    if not isinstance(data, dict):
        raise InvalidCommand("Request body must be a JSON object")
    return data


# ── Health ───────────────────────────────────────────────────────────────────

async def health(request):
    checks = {}
    engine = _engine(request)

    try:
        version = await asyncio.get_running_loop().run_in_executor(None, engine.db.version)
        checks["database"] = {"ok": True, "version": version}
    except StorageUnavailable as e:
        checks["database"] = {"ok": False, "error": str(e)}

    checks["workspace"] = {"ok": engine.guard.can_save(), "active": engine.registry.active_id}

    all_ok = all(c["ok"] for c in checks.values())
    return JSONResponse({
        "status": "ok" if all_ok else "degraded",
        "version": APP_VERSION,
        "clients": request.app.state.hub.client_count,
        "checks": checks,
    })


# ── Workspaces ───────────────────────────────────────────────────────────────

async def list_workspaces(request):
    engine = _engine(request)
    workspaces = await engine.list_workspaces()
    return JSONResponse({"workspaces": workspaces, "active": engine.registry.active_id})


async def create_workspace(request):
    data = await _json_body(request)
    try:
        ws = await _engine(request).create_workspace(
            data.get("name", ""),
            data.get("playMode", "linear"),
            activate=bool(data.get("activate", False)),
        )
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse({"workspace": ws.to_dict()}, status_code=201)


async def delete_workspace(request):
    workspace_id = request.path_params["workspace_id"]
    active = await _engine(request).delete_workspace(workspace_id)
    return JSONResponse({"deleted": workspace_id, "active": active.to_dict()})


async def switch_workspace(request):
    data = await _json_body(request)
    workspace_id = str(data.get("id", "")).strip()
    if not workspace_id:
        return JSONResponse({"error": "id is required"}, status_code=400)
    loaded = await _engine(request).switch_workspace(workspace_id)
    return JSONResponse({"active": workspace_id, "loaded": loaded})


async def set_play_mode(request):
    data = await _json_body(request)
    try:
        ws = await _engine(request).set_play_mode(request.path_params["workspace_id"], str(data.get("mode", "")))
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse({"workspace": ws.to_dict()})


# ── Tracks ───────────────────────────────────────────────────────────────────

async def list_tracks(request):
    workspace_id = request.path_params["workspace_id"]
    tracks = await _engine(request).list_tracks(workspace_id)
    return JSONResponse({"workspaceId": workspace_id, "tracks": [t.to_dict() for t in tracks]})


async def upload_track(request):
    """Raw-body upload: POST /api/workspaces/{id}/tracks?name=song.mp3"""
    workspace_id = request.path_params["workspace_id"]
    name = (request.query_params.get("name") or "").strip()
    if not name:
        return JSONResponse({"error": "name query parameter is required"}, status_code=400)
    body = await request.body()
    if not body:
        return JSONResponse({"error": "No file uploaded."}, status_code=400)
    if len(body) > MAX_UPLOAD_MB * 1024 * 1024:
        return JSONResponse({"error": f"File larger than {MAX_UPLOAD_MB}MB"}, status_code=413)

    mime_type = request.headers.get("content-type") or "application/octet-stream"
    try:
        track = await _engine(request).add_upload(workspace_id, name, body, mime_type)
    except StorageUnavailable as e:
        msg = format_error("upload", name, {"workspace": workspace_id}, str(e))
        return JSONResponse({"error": msg}, status_code=503)
    return JSONResponse({"track": track.to_dict()}, status_code=201)


async def clear_tracks(request):
    count = await _engine(request).clear_tracks(request.path_params["workspace_id"])
    return JSONResponse({"deleted": count})


async def import_feed(request):
    """Body: {"url": feed_url} or {"entries": [{"name", "remoteUrl"}, ...]}"""
    workspace_id = request.path_params["workspace_id"]
    data = await _json_body(request)
    engine = _engine(request)

    if data.get("entries") is not None:
        try:
            entries = [FeedEntry.from_dict(e) for e in data["entries"] if isinstance(e, dict)]
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
    elif data.get("url"):
        try:
            entries = await fetch_feed(str(data["url"]))
        except FeedUnavailable as e:
            msg = format_error("feed_import", str(data["url"]), None, str(e))
            return JSONResponse({"error": msg}, status_code=502)
    else:
        return JSONResponse({"error": "url or entries is required"}, status_code=400)

    added = await engine.import_feed(workspace_id, entries)
    return JSONResponse({"added": [t.to_dict() for t in added]})


async def update_track(request):
    data = await _json_body(request)
    if "isFavorite" in data and not isinstance(data["isFavorite"], bool):
        return JSONResponse({"error": "isFavorite must be a boolean"}, status_code=400)
    track = await _engine(request).set_favorite(request.path_params["track_id"], data.get("isFavorite"))
    return JSONResponse({"track": track.to_dict()})


async def delete_track(request):
    track_id = request.path_params["track_id"]
    await _engine(request).delete_track(track_id)
    return JSONResponse({"deleted": track_id})


async def stream_track(request):
    """Serve track bytes with Range header support (required for seeking in Safari)."""
    track = await _engine(request).get_track(request.path_params["track_id"])
    if track.source == SOURCE_SYNDICATED:
        return RedirectResponse(track.remote_url, status_code=307)

    data = track.payload or b""
    media_type = track.mime_type or "application/octet-stream"
    total = len(data)
    headers = {"Accept-Ranges": "bytes"}

    range_header = request.headers.get("range")
    if not range_header:
        return Response(data, media_type=media_type, headers=headers)

    byte_range = parse_range(range_header, total)
    if byte_range is None:
        headers["Content-Range"] = f"bytes */{total}"
        return Response(status_code=416, headers=headers)

    start, end = byte_range
    headers["Content-Range"] = f"bytes {start}-{end}/{total}"
    return Response(data[start:end + 1], status_code=206, media_type=media_type, headers=headers)


def parse_range(header: str, total: int) -> Optional[tuple[int, int]]:
    """Parse a single ``bytes=`` range into inclusive (start, end), None if unsatisfiable."""
    unit, _, ranges = header.partition("=")
    if unit.strip().lower() != "bytes" or "," in ranges:
        return None
    first, _, last = ranges.strip().partition("-")
    try:
        if first == "":
            # suffix range: last N bytes
            length = int(last)
            if length <= 0 or total == 0:
                return None
            return max(total - length, 0), total - 1
        start = int(first)
        end = int(last) if last else total - 1
    except ValueError:
        return None
    if start < 0 or start >= total or end < start:
        return None
    return start, min(end, total - 1)


# ── WebSocket ────────────────────────────────────────────────────────────────

async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    hub: ObserverHub = websocket.app.state.hub
    engine: DeckEngine = websocket.app.state.engine
    client_id = str(uuid.uuid4())
    queue = hub.subscribe(client_id)
    logger.info("WS connected: %s", client_id)

    # Send initial sync
    await websocket.send_json({"type": "sync", "data": await engine.get_snapshot()})

    # Two tasks: one reads from client, one writes from queue
    async def _reader():
        try:
            while True:
                data = await websocket.receive_json()
                await _handle_ws_message(engine, hub, client_id, data)
        except WebSocketDisconnect:
            pass

    async def _writer():
        while True:
            event, data = await queue.get()
            await websocket.send_json({"type": event, "data": data})

    reader_task = asyncio.create_task(_reader())
    writer_task = asyncio.create_task(_writer())

    try:
        done, pending = await asyncio.wait(
            [reader_task, writer_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error("WS task error for %s: %s", client_id, task.exception())
    finally:
        hub.unsubscribe(client_id)
        logger.info("WS disconnected: %s", client_id)


async def _handle_ws_message(engine: DeckEngine, hub: ObserverHub, client_id: str, data):
    """Route incoming WebSocket messages to engine methods."""
    if not isinstance(data, dict):
        await hub.send(client_id, "error", {"message": "Messages must be JSON objects"})
        return

    msg_type = str(data.get("type", ""))
    payload = data.get("payload") or {}

    try:
        if msg_type == "switch_workspace":
            if not isinstance(payload, dict):
                raise InvalidCommand("switch_workspace payload must be an object")
            await engine.switch_workspace(str(payload.get("id", "")))
        elif msg_type == "ping":
            await hub.send(client_id, "pong", {})
        else:
            await engine.handle_command(data)
    except SyntaxAudioError as e:
        logger.info("Rejected %s from %s: %s", msg_type, client_id, e)
        await hub.send(client_id, "error", {"command": msg_type, "kind": type(e).__name__, "message": str(e)})


# ── Error mapping ────────────────────────────────────────────────────────────

async def _handle_app_error(request, exc: SyntaxAudioError):
    for kind, status in _STATUS.items():
        if isinstance(exc, kind):
            break
    else:
        status = 500
    if status == 503:
        message = format_error("storage", request.url.path, None, str(exc))
    else:
        message = str(exc)
    return JSONResponse({"error": message, "kind": type(exc).__name__}, status_code=status)


# ── App factory ──────────────────────────────────────────────────────────────

def create_app(db_path=None, engine: Optional[DeckEngine] = None) -> Starlette:
    hub = engine.state if engine is not None else ObserverHub()
    if engine is None:
        engine = DeckEngine(hub, Database(db_path or DB_PATH))

    @contextlib.asynccontextmanager
    async def lifespan(app):
        await engine.start()
        logger.info("Deck engine started")
        yield
        logger.info("Deck engine stopped")

    routes = [
        Route("/api/health", health),
        Route("/api/workspaces", list_workspaces, methods=["GET"]),
        Route("/api/workspaces", create_workspace, methods=["POST"]),
        Route("/api/workspaces/active", switch_workspace, methods=["PUT"]),
        Route("/api/workspaces/{workspace_id}", delete_workspace, methods=["DELETE"]),
        Route("/api/workspaces/{workspace_id}/mode", set_play_mode, methods=["PUT"]),
        Route("/api/workspaces/{workspace_id}/tracks", list_tracks, methods=["GET"]),
        Route("/api/workspaces/{workspace_id}/tracks", upload_track, methods=["POST"]),
        Route("/api/workspaces/{workspace_id}/tracks", clear_tracks, methods=["DELETE"]),
        Route("/api/workspaces/{workspace_id}/feed", import_feed, methods=["POST"]),
        Route("/api/tracks/{track_id}", update_track, methods=["PATCH"]),
        Route("/api/tracks/{track_id}", delete_track, methods=["DELETE"]),
        Route("/api/tracks/{track_id}/stream", stream_track, methods=["GET"]),
        WebSocketRoute("/ws", websocket_endpoint),
    ]

    app = Starlette(
        routes=routes,
        exception_handlers={SyntaxAudioError: _handle_app_error},
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.hub = hub
    return app
