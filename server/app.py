# server/app.py
# fmt: off
# .env and logging config must precede the other imports so their loggers inherit it
import logging

from dotenv import find_dotenv, load_dotenv
load_dotenv(find_dotenv(usecwd=True))

from services.logging_utils import setup_logging, install_loop_exception_handler
setup_logging()
logger = logging.getLogger(__name__)

import asyncio
import os

from aiohttp import web
from websockets import serve

from handlers.connection import ConnectionHandler
from handlers.http_routes import create_http_app
from services.state import relay
# fmt: on


def main():
    """
    Entry point for starting the signaling server.

    Reads configuration from the environment (a .env file is honoured):
    WEBSOCKET_HOST, WEBSOCKET_PORT, PORT, ALLOWED_ORIGIN and STATIC_DIR.

    Parameters:
        None

    Returns:
        None
    """
    host = os.getenv("WEBSOCKET_HOST", "0.0.0.0")
    ws_port = int(os.getenv("WEBSOCKET_PORT", 8765))
    http_port = int(os.getenv("PORT", 3000))
    allowed_origin = os.getenv("ALLOWED_ORIGIN", "*")
    static_dir = os.getenv("STATIC_DIR", "public")
    logger.info("Starting signaling server...")
    asyncio.run(start_server(host, ws_port, http_port, allowed_origin, static_dir))


async def start_server(host, ws_port, http_port, allowed_origin, static_dir):
    """
    Run the WebSocket signaling listener and the HTTP listener until stopped.

    Parameters:
        host (str): Bind address for both listeners.
        ws_port (int): Signaling WebSocket port.
        http_port (int): HTTP port (health, self-test, polling fallback, static files).
        allowed_origin (str): Allowed browser origin, "*" for any.
        static_dir (str): Directory holding the client UI.

    Returns:
        None
    """
    install_loop_exception_handler(asyncio.get_running_loop())

    # Non-browser clients (the self-test peers) send no Origin header
    origins = None if allowed_origin == "*" else [allowed_origin, None]
    signaling_url = f"ws://127.0.0.1:{ws_port}"

    app = create_http_app(relay, signaling_url, allowed_origin, static_dir)
    runner = web.AppRunner(app)
    await runner.setup()
    await web.TCPSite(runner, host, http_port).start()
    logger.info(f"HTTP server started on http://{host}:{http_port}")

    try:
        async with serve(
                handler=ConnectionHandler(relay).handle_connection,
                host=host,
                port=ws_port,
                origins=origins,
        ):
            logger.info(f"WebSocket server started on ws://{host}:{ws_port}")
            await asyncio.Future()  # Run forever
    finally:
        await runner.cleanup()


if __name__ == "__main__":
    main()
