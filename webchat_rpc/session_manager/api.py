"""Control surface HTTP service.

Runs as a lightweight local web server in front of the session pool. Handlers
only parse bodies and serialize results; everything else goes through
``BridgeService``.

Endpoints:
    GET  /health           - Liveness
    GET  /status           - Challenge state of a session plus the tab list
    GET  /tabs             - Live sessions, most recently used first
    POST /tabs/create      - Open a session (idempotent when a key is given)
    POST /tabs/close       - Close a session (the default one is protected)
    POST /navigate         - Load a URL in a session
    POST /ensure-ready     - Wait until the composer is usable
    POST /query            - Submit a prompt and wait for the reply
    POST /send             - Submit text without waiting for a reply
    POST /read-page        - Visible page text, capped
    POST /download-images  - Save images from the last assistant message
    POST /show             - Bring a session window to front
"""

from __future__ import annotations

import json
import logging
import math
import sys

from aiohttp import web

from ..config import (
    CONTROL_API_TOKEN,
    CONTROL_HOST,
    CONTROL_PORT,
    MAX_BODY_BYTES,
    MAX_QUERY_BODY_BYTES,
    as_bool,
    clamp_int,
    ensure_dirs,
    load_selectors,
)
from ..constants import (
    DEFAULT_MAX_IMAGES,
    DEFAULT_QUERY_TIMEOUT_MS,
    DEFAULT_READ_MAX_CHARS,
    DEFAULT_READY_TIMEOUT_MS,
    DEFAULT_SEND_TIMEOUT_MS,
)
from .browser import BrowserHost
from .errors import (
    AdmissionError,
    AutomationError,
    AutomationTimeout,
    BridgeError,
    InvalidRequestError,
    ResolutionError,
)
from .governor import AdmissionGovernor
from .manager import SessionManager, controller_factory
from .service import BridgeService, log_attention
from .uploads import PlaywrightFileBinder

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

MAX_TIMEOUT_MS = 60 * 60 * 1000


def status_for(error: BridgeError) -> int:
    if isinstance(error, InvalidRequestError):
        return 400
    if isinstance(error, ResolutionError):
        return 404 if error.code == "tab_not_found" else 409
    if isinstance(error, AdmissionError):
        return 429
    if isinstance(error, AutomationTimeout):
        return 504
    if isinstance(error, AutomationError):
        return 502
    return 500


def error_response(error: BridgeError) -> web.Response:
    headers = {}
    if isinstance(error, AdmissionError) and error.retry_after_ms:
        headers["Retry-After"] = str(max(1, math.ceil(error.retry_after_ms / 1000)))
    return web.json_response(error.to_dict(), status=status_for(error), headers=headers)


# ── Middlewares ──────────────────────────────────────────────────────────────


@web.middleware
async def auth_middleware(request: web.Request, handler):
    token = request.app["api_token"]
    if token and request.path != "/health":
        if request.headers.get("Authorization", "") != f"Bearer {token}":
            return web.json_response(
                {"error": "unauthorized", "message": "unauthorized", "data": None}, status=401
            )
    return await handler(request)


@web.middleware
async def body_limit_middleware(request: web.Request, handler):
    limit = MAX_QUERY_BODY_BYTES if request.path == "/query" else MAX_BODY_BYTES
    if request.content_length is not None and request.content_length > limit:
        return web.json_response(
            {"error": "body_too_large", "message": "body_too_large", "data": {"max_bytes": limit}},
            status=413,
        )
    return await handler(request)


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except BridgeError as e:
        if status_for(e) >= 500:
            logger.error(f"{request.path} failed: {e.code} {e.data}")
        else:
            logger.info(f"{request.path} rejected: {e.code}")
        return error_response(e)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.exception(f"{request.path} failed: {e}")
        return web.json_response(
            {"error": "internal_error", "message": str(e), "data": None}, status=500
        )


async def read_body(request: web.Request) -> dict:
    if not request.body_exists:
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidRequestError("invalid_json")
    if not isinstance(body, dict):
        raise InvalidRequestError("invalid_json")
    return body


def timeout_from(body: dict, fallback: int) -> int:
    return clamp_int(body.get("timeout_ms"), 1_000, MAX_TIMEOUT_MS, fallback)


# ── HTTP Handlers ────────────────────────────────────────────────────────────


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"ok": True})


async def handle_status(request: web.Request) -> web.Response:
    svc: BridgeService = request.app["service"]
    return web.json_response(await svc.status(request.query.get("tab_id")))


async def handle_tabs(request: web.Request) -> web.Response:
    svc: BridgeService = request.app["service"]
    return web.json_response(svc.list_tabs())


async def handle_tab_create(request: web.Request) -> web.Response:
    svc: BridgeService = request.app["service"]
    body = await read_body(request)
    return web.json_response(await svc.create_tab(body.get("key"), body.get("name")))


async def handle_tab_close(request: web.Request) -> web.Response:
    svc: BridgeService = request.app["service"]
    body = await read_body(request)
    return web.json_response(await svc.close_tab(body.get("tab_id")))


async def handle_navigate(request: web.Request) -> web.Response:
    svc: BridgeService = request.app["service"]
    body = await read_body(request)
    result = await svc.navigate(body.get("url"), tab_id=body.get("tab_id"), key=body.get("key"))
    return web.json_response(result)


async def handle_ensure_ready(request: web.Request) -> web.Response:
    svc: BridgeService = request.app["service"]
    body = await read_body(request)
    result = await svc.ensure_ready(
        timeout_from(body, DEFAULT_READY_TIMEOUT_MS),
        tab_id=body.get("tab_id"),
        key=body.get("key"),
    )
    return web.json_response(result)


async def handle_query(request: web.Request) -> web.Response:
    svc: BridgeService = request.app["service"]
    body = await read_body(request)
    attachments = body.get("attachments") or []
    if not isinstance(attachments, list):
        raise InvalidRequestError("invalid_attachments")
    result = await svc.query(
        body.get("prompt"),
        attachments,
        timeout_from(body, DEFAULT_QUERY_TIMEOUT_MS),
        tab_id=body.get("tab_id"),
        key=body.get("key"),
        name=body.get("name"),
    )
    return web.json_response(result)


async def handle_send(request: web.Request) -> web.Response:
    svc: BridgeService = request.app["service"]
    body = await read_body(request)
    result = await svc.send(
        body.get("text"),
        timeout_from(body, DEFAULT_SEND_TIMEOUT_MS),
        stop_after_send=as_bool(body.get("stop_after_send")),
        tab_id=body.get("tab_id"),
        key=body.get("key"),
    )
    return web.json_response(result)


async def handle_read_page(request: web.Request) -> web.Response:
    svc: BridgeService = request.app["service"]
    body = await read_body(request)
    max_chars = clamp_int(body.get("max_chars"), 1, DEFAULT_READ_MAX_CHARS, DEFAULT_READ_MAX_CHARS)
    result = await svc.read_page(max_chars, tab_id=body.get("tab_id"), key=body.get("key"))
    return web.json_response(result)


async def handle_download_images(request: web.Request) -> web.Response:
    svc: BridgeService = request.app["service"]
    body = await read_body(request)
    max_images = clamp_int(body.get("max_images"), 1, 20, DEFAULT_MAX_IMAGES)
    result = await svc.download_images(max_images, tab_id=body.get("tab_id"), key=body.get("key"))
    return web.json_response(result)


async def handle_show(request: web.Request) -> web.Response:
    svc: BridgeService = request.app["service"]
    body = await read_body(request)
    return web.json_response(await svc.show(tab_id=body.get("tab_id"), key=body.get("key")))


# ── App Factory ──────────────────────────────────────────────────────────────


async def on_startup(app: web.Application):
    if app.get("service") is not None:
        return
    ensure_dirs()
    host = BrowserHost()
    manager = SessionManager(
        host.open_window,
        controller_factory(load_selectors(), file_binder=PlaywrightFileBinder()),
        on_needs_attention=log_attention,
    )
    service = BridgeService(manager, AdmissionGovernor())
    app["browser"] = host
    app["service"] = service
    await service.open_default_tab()
    logger.info(f"Control surface started on {CONTROL_HOST}:{CONTROL_PORT}")


async def on_cleanup(app: web.Application):
    host: BrowserHost | None = app.get("browser")
    if host is None:
        return
    svc: BridgeService = app["service"]
    await svc.manager.shutdown()
    await host.stop()
    logger.info("Control surface stopped.")


def create_app(service: BridgeService | None = None, api_token: str = CONTROL_API_TOKEN) -> web.Application:
    app = web.Application(
        client_max_size=MAX_QUERY_BODY_BYTES,
        middlewares=[auth_middleware, body_limit_middleware, error_middleware],
    )
    app["api_token"] = api_token
    app["service"] = service
    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    app.router.add_get("/health", handle_health)
    app.router.add_get("/status", handle_status)
    app.router.add_get("/tabs", handle_tabs)
    app.router.add_post("/tabs/create", handle_tab_create)
    app.router.add_post("/tabs/close", handle_tab_close)
    app.router.add_post("/navigate", handle_navigate)
    app.router.add_post("/ensure-ready", handle_ensure_ready)
    app.router.add_post("/query", handle_query)
    app.router.add_post("/send", handle_send)
    app.router.add_post("/read-page", handle_read_page)
    app.router.add_post("/download-images", handle_download_images)
    app.router.add_post("/show", handle_show)

    return app


def main():
    """Run the control surface as a standalone HTTP service."""
    app = create_app()
    web.run_app(app, host=CONTROL_HOST, port=CONTROL_PORT)


if __name__ == "__main__":
    main()
