"""
HTTP and WebSocket surface of the inventory hub.

Every route is served both at the root and under ``/api``:

    GET    /inventory        -> {"inventory": [...], "promos": [...]}
    POST   /inventory        -> upsert one item or a list, returns the document
    DELETE /inventory?id=    -> delete an item, returns the document
    GET    /promo            -> {"promos": [...]}
    POST   /promo            -> upsert a promo (id required)
    DELETE /promo?id=        -> delete a promo
    POST   /auth/token       -> issue a token for an admin user
    GET    /health, /stats   -> liveness and session details
    GET    /ws               -> realtime channel
"""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import urlsplit

from aiohttp import WSMsgType, web

from ..config import HubConfig
from ..exceptions import (
    ConnectionLimitError,
    RecordValidationError,
    StoreIOError,
    StoreTimeoutError,
)
from .auth import TokenSigner, check_credentials
from .hub import InventoryHub

logger = logging.getLogger(__name__)

HUB_KEY = web.AppKey("hub", InventoryHub)
CONFIG_KEY = web.AppKey("config", HubConfig)

LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")
STORE_ERRORS = (StoreIOError, StoreTimeoutError)


def cors_headers(origin: str | None, allowed_origins: list[str]) -> dict[str, str]:
    """CORS response headers for a request from ``origin``."""
    headers = {
        "Vary": "Origin",
        "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
    }
    if not allowed_origins:
        headers["Access-Control-Allow-Origin"] = "*"
    elif origin and origin in allowed_origins:
        headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers


def origin_allowed(origin: str | None, allowed_origins: list[str]) -> bool:
    """Whether a WebSocket upgrade from ``origin`` is accepted.

    Requests without an Origin header (non-browser clients) and local
    development origins are always accepted.
    """
    if not origin or not allowed_origins or origin in allowed_origins:
        return True
    return urlsplit(origin).hostname in LOCAL_HOSTS


@web.middleware
async def cors_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    headers = cors_headers(request.headers.get("Origin"), request.app[CONFIG_KEY].allowed_origins)

    if request.method == "OPTIONS":
        return web.Response(status=204, headers=headers)

    try:
        response = await handler(request)
    except web.HTTPException as exc:
        exc.headers.update(headers)
        raise

    if not response.prepared:
        response.headers.update(headers)
    return response


async def _read_json(request: web.Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": f"Invalid JSON body: {e}"}),
            content_type="application/json",
        ) from e


def _error(status: int, message: str, **extra: Any) -> web.Response:
    return web.json_response({"error": message, **extra}, status=status)


def _require_query_id(request: web.Request) -> str:
    record_id = request.query.get("id", "").strip()
    if not record_id:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "Missing id"}),
            content_type="application/json",
        )
    return record_id


# Inventory


async def get_inventory(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    try:
        document = await hub.get_document()
    except STORE_ERRORS as e:
        logger.error(f"Inventory read failed: {e.message}")
        return _error(500, "Failed to read inventory", **hub.last_known_document().to_dict())
    return web.json_response(document.to_dict())


async def post_inventory(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    payload = await _read_json(request)
    try:
        document = await hub.upsert_inventory(payload)
    except RecordValidationError as e:
        return _error(400, e.message, details=e.details)
    except STORE_ERRORS as e:
        logger.error(f"Inventory update failed: {e.message}")
        return _error(500, "Failed to update inventory")
    return web.json_response(document.to_dict())


async def delete_inventory(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    item_id = _require_query_id(request)
    try:
        document = await hub.delete_inventory(item_id)
    except STORE_ERRORS as e:
        logger.error(f"Inventory delete failed: {e.message}")
        return _error(500, "Failed to delete inventory item")
    return web.json_response(document.to_dict())


# Promos


async def get_promo(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    try:
        promos = await hub.get_promos()
    except STORE_ERRORS as e:
        logger.error(f"Promo read failed: {e.message}")
        last_known = hub.last_known_document()
        return _error(500, "Failed to read promos", promos=[p.to_dict() for p in last_known.promos])
    return web.json_response({"promos": [p.to_dict() for p in promos]})


async def post_promo(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    payload = await _read_json(request)
    try:
        promos = await hub.upsert_promo(payload)
    except RecordValidationError as e:
        return _error(400, e.message, details=e.details)
    except STORE_ERRORS as e:
        logger.error(f"Promo update failed: {e.message}")
        return _error(500, "Failed to update promo")
    return web.json_response({"promos": [p.to_dict() for p in promos]})


async def delete_promo(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    promo_id = _require_query_id(request)
    try:
        promos = await hub.delete_promo(promo_id)
    except STORE_ERRORS as e:
        logger.error(f"Promo delete failed: {e.message}")
        return _error(500, "Failed to delete promo")
    return web.json_response({"promos": [p.to_dict() for p in promos]})


# Auth and introspection


async def issue_token(request: web.Request) -> web.Response:
    """Exchange admin credentials for a signed token."""
    config = request.app[CONFIG_KEY]
    if not config.auth_secret or not config.admin_password:
        return _error(503, "Token issuing is not configured")

    payload = await _read_json(request)
    if not isinstance(payload, dict):
        return _error(400, "Expected a JSON object")
    user_id = str(payload.get("userId", ""))
    if not check_credentials(config, user_id, str(payload.get("password", ""))):
        logger.warning(f"Rejected token request for {user_id or 'unknown user'}")
        return _error(401, "Invalid credentials")

    token = TokenSigner(config.auth_secret, config.token_max_age).issue(user_id)
    return web.json_response({"token": token, "userId": user_id, "expiresIn": config.token_max_age})


async def health(request: web.Request) -> web.Response:
    return web.json_response(request.app[HUB_KEY].health())


async def stats(request: web.Request) -> web.Response:
    return web.json_response(request.app[HUB_KEY].stats())


# Realtime


async def websocket_handler(request: web.Request) -> web.StreamResponse:
    """Upgrade to a WebSocket and pump frames into the hub."""
    hub = request.app[HUB_KEY]
    config = request.app[CONFIG_KEY]
    remote = request.remote
    origin = request.headers.get("Origin")

    if not origin_allowed(origin, config.allowed_origins):
        logger.warning(f"Rejected connection from origin {origin}")
        raise web.HTTPForbidden(text="Origin not allowed")
    try:
        await hub.check_admission(remote)
    except ConnectionLimitError as e:
        raise web.HTTPTooManyRequests(text=e.reason) from e

    ws = web.WebSocketResponse(autoping=False)
    await ws.prepare(request)
    session = await hub.connect(ws, remote)

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                await hub.handle_message(session, msg.data)
            elif msg.type == WSMsgType.PING:
                hub.touch(session)
                await ws.pong(msg.data)
            elif msg.type == WSMsgType.PONG:
                hub.touch(session)
            elif msg.type == WSMsgType.ERROR:
                session.log.warning(f"WebSocket error: {ws.exception()}")
                break
            else:
                session.log.debug(f"Ignoring {msg.type.name} frame")
    finally:
        await hub.disconnect(session)

    return ws


async def _start_hub(app: web.Application) -> None:
    await app[HUB_KEY].start()


async def _stop_hub(app: web.Application) -> None:
    await app[HUB_KEY].stop()


def create_app(hub: InventoryHub, config: HubConfig | None = None) -> web.Application:
    """Build the aiohttp application for ``hub``.

    The hub is started and stopped with the application.
    """
    app = web.Application(middlewares=[cors_middleware])
    app[HUB_KEY] = hub
    app[CONFIG_KEY] = config or hub.config

    for prefix in ("", "/api"):
        app.router.add_get(f"{prefix}/inventory", get_inventory)
        app.router.add_post(f"{prefix}/inventory", post_inventory)
        app.router.add_delete(f"{prefix}/inventory", delete_inventory)
        app.router.add_get(f"{prefix}/promo", get_promo)
        app.router.add_post(f"{prefix}/promo", post_promo)
        app.router.add_delete(f"{prefix}/promo", delete_promo)
        app.router.add_post(f"{prefix}/auth/token", issue_token)
        app.router.add_get(f"{prefix}/health", health)
        app.router.add_get(f"{prefix}/stats", stats)
    app.router.add_get("/ws", websocket_handler)

    app.on_startup.append(_start_hub)
    app.on_cleanup.append(_stop_hub)
    return app
