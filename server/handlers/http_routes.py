# handlers/http_routes.py
"""
HTTP surface next to the signaling socket: health probe, self-test trigger,
polling fallback transport and static client assets.
"""
import asyncio
import logging
import os

from aiohttp import web

from constants import SELFTEST_DEFAULT_TIMEOUT_MS, SELFTEST_MAX_TIMEOUT_MS
from handlers.polling import PollingTransport
from handlers.relay import SignalingRelay
from services.selftest import run_self_test

logger = logging.getLogger(__name__)

RELAY = web.AppKey("relay", SignalingRelay)
SIGNALING_URL = web.AppKey("signaling_url", str)
ALLOWED_ORIGIN = web.AppKey("allowed_origin", str)
SELFTEST_LOCK = web.AppKey("selftest_lock", asyncio.Lock)
SELFTEST_RUNNER = web.AppKey("selftest_runner", object)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Log unexpected route failures and answer with a JSON 500 instead of crashing."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.error(f"Unhandled error on {request.method} {request.path}", exc_info=e)
        return web.json_response({"ok": False, "error": "internal error"}, status=500)


@web.middleware
async def preflight_middleware(request: web.Request, handler):
    if request.method == "OPTIONS":
        return web.Response(status=204, headers={
            "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type",
        })
    return await handler(request)


async def _add_common_headers(request: web.Request, response: web.StreamResponse) -> None:
    response.headers["Access-Control-Allow-Origin"] = request.app[ALLOWED_ORIGIN]
    response.headers["X-Frame-Options"] = "SAMEORIGIN"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"


async def handle_health(request: web.Request) -> web.Response:
    """Room sizes and open connection count."""
    relay = request.app[RELAY]
    rooms = [{"id": room_id, "size": size} for room_id, size in relay.registry.rooms().items()]
    return web.json_response({
        "ok": True,
        "rooms": rooms,
        "connections": relay.connection_count(),
    })


async def handle_selftest(request: web.Request) -> web.Response:
    """
    Run the two-peer self-test against this server's signaling endpoint.

    Accepts an optional JSON body {"timeoutMs": n}; runs are serialized.
    """
    timeout_ms = SELFTEST_DEFAULT_TIMEOUT_MS
    if request.can_read_body:
        try:
            body = await request.json()
        except (ValueError, RecursionError):
            body = None
        requested = body.get("timeoutMs") if isinstance(body, dict) else None
        if isinstance(requested, (int, float)) and not isinstance(requested, bool):
            timeout_ms = int(requested)
    timeout_ms = max(1, min(timeout_ms, SELFTEST_MAX_TIMEOUT_MS))

    async with request.app[SELFTEST_LOCK]:
        report = await request.app[SELFTEST_RUNNER](timeout_ms, url=request.app[SIGNALING_URL])
    return web.json_response(report)


def _add_static_routes(app: web.Application, static_dir: str) -> None:
    if not static_dir or not os.path.isdir(static_dir):
        logger.info(f"No static directory at {static_dir!r}, not serving client assets")
        return
    index = os.path.join(static_dir, "index.html")

    async def handle_index(request: web.Request) -> web.FileResponse:
        if not os.path.isfile(index):
            raise web.HTTPNotFound()
        return web.FileResponse(index)

    app.router.add_get("/", handle_index)
    app.router.add_static("/", static_dir)


def create_http_app(
        relay: SignalingRelay,
        signaling_url: str,
        allowed_origin: str = "*",
        static_dir: str = None,
        selftest_runner=run_self_test,
        polling: PollingTransport = None) -> web.Application:
    """
    Build the aiohttp application.

    Args:
        relay (SignalingRelay): Relay shared with the WebSocket listener.
        signaling_url (str): URL the self-test peers connect to.
        allowed_origin (str): Value of Access-Control-Allow-Origin.
        static_dir (str, optional): Directory with the client UI, if any.
        selftest_runner (callable): Coroutine function running the self-test.
        polling (PollingTransport, optional): Fallback transport; created if omitted.

    Returns:
        web.Application: Configured application.
    """
    app = web.Application(middlewares=[error_middleware, preflight_middleware])
    app[RELAY] = relay
    app[SIGNALING_URL] = signaling_url
    app[ALLOWED_ORIGIN] = allowed_origin
    app[SELFTEST_LOCK] = asyncio.Lock()
    app[SELFTEST_RUNNER] = selftest_runner
    app.on_response_prepare.append(_add_common_headers)

    app.router.add_get("/diag/health", handle_health)
    app.router.add_post("/diag/selftest", handle_selftest)
    (polling or PollingTransport(relay)).add_routes(app)
    _add_static_routes(app, static_dir)
    return app
