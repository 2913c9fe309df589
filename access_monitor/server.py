"""
Publishing server.

Exposes the session controller's views to a rendering layer: a JSON snapshot
endpoint, a filter endpoint and a websocket that receives a `stream_update`
payload after every tick, connection change and filter reset. The websocket
also accepts the dashboard's commands (filter changes, login, logout).
"""

import json
import logging
from typing import Any, Dict, Optional

import aiohttp
from aiohttp import web

from .config import HTTP_METHODS, SERVER_HOST, SERVER_PORT, WEBSOCKET_HEARTBEAT_SECONDS
from .credentials import Credential
from .filters import StreamFilter
from .session import StreamSessionController
from .tasks import cleanup_background_tasks, start_background_tasks
from .websocket_utils import safe_send_json

log = logging.getLogger("AccessMonitor.Server")


async def handle_views(request):
    controller = request.app["controller"]
    return web.json_response(controller.views().to_payload())


async def handle_get_filter(request):
    controller = request.app["controller"]
    return web.json_response({"filter": controller.stream_filter.to_dict(), "methods": HTTP_METHODS})


async def handle_put_filter(request):
    controller = request.app["controller"]
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise web.HTTPBadRequest(text="Request body must be a JSON object")
    if not isinstance(data, dict):
        raise web.HTTPBadRequest(text="Request body must be a JSON object")

    changed = controller.set_filter(StreamFilter.from_dict(data))
    return web.json_response({"filter": controller.stream_filter.to_dict(), "changed": changed})


async def handle_client_message(app, ws, data: Dict[str, Any]):
    controller: StreamSessionController = app["controller"]
    msg_type = data.get("type")

    if msg_type == "set_filter":
        new_filter = data.get("filter")
        if new_filter is not None and not isinstance(new_filter, dict):
            await safe_send_json(ws, {"type": "error", "message": "filter must be an object"})
            return
        if not controller.set_filter(StreamFilter.from_dict(new_filter)):
            # Unchanged filter does not trigger a broadcast; answer the sender directly.
            await safe_send_json(ws, controller.views().to_payload())

    elif msg_type == "clear_filter":
        if not controller.clear_filter():
            await safe_send_json(ws, controller.views().to_payload())

    elif msg_type == "get_views":
        await safe_send_json(ws, controller.views().to_payload())

    elif msg_type == "login":
        username = data.get("username")
        if not username:
            await safe_send_json(ws, {"type": "error", "message": "username required"})
            return
        await controller.start_session(Credential(str(username), str(data.get("password") or "")))

    elif msg_type == "logout":
        await controller.end_session()

    else:
        await safe_send_json(ws, {"type": "error", "message": f"unknown message type: {msg_type!r}"})


async def websocket_handler(request):
    ws = web.WebSocketResponse(heartbeat=WEBSOCKET_HEARTBEAT_SECONDS)
    await ws.prepare(request)
    app = request.app
    app["websockets"].add(ws)
    log.info(f"WebSocket client connected. Total clients: {len(app['websockets'])}")

    try:
        await safe_send_json(ws, app["controller"].views().to_payload())

        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    data = json.loads(msg.data)
                except json.JSONDecodeError:
                    await safe_send_json(ws, {"type": "error", "message": "invalid JSON"})
                    continue
                if not isinstance(data, dict):
                    await safe_send_json(ws, {"type": "error", "message": "message must be an object"})
                    continue
                try:
                    await handle_client_message(app, ws, data)
                except Exception:
                    log.error("Could not handle websocket message:", exc_info=True)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                log.warning(f"WebSocket connection closed with exception {ws.exception()}")
    finally:
        app["websockets"].discard(ws)
        log.info(f"WebSocket client disconnected. Total clients: {len(app['websockets'])}")
    return ws


def create_app(controller: StreamSessionController, credential: Optional[Credential] = None) -> web.Application:
    app = web.Application()
    app["controller"] = controller
    app["credential"] = credential
    app["websockets"] = set()
    app["broadcast_tasks"] = set()

    app.on_startup.append(start_background_tasks)
    app.on_cleanup.append(cleanup_background_tasks)
    app.router.add_get("/api/views", handle_views)
    app.router.add_get("/api/filter", handle_get_filter)
    app.router.add_put("/api/filter", handle_put_filter)
    app.router.add_get("/ws", websocket_handler)
    return app


def run_server(controller: StreamSessionController, credential: Optional[Credential] = None,
               host: str = SERVER_HOST, port: int = SERVER_PORT):
    app = create_app(controller, credential)
    log.info(f"Server starting on http://{host}:{port}")
    log.info(f"Tick interval: {controller.tick_interval_ms} ms, initial filter: {controller.stream_filter.to_dict()}")
    web.run_app(app, host=host, port=port)
