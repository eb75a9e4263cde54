# handlers/connection.py

import asyncio
import logging
import secrets

import websockets

from constants import POLICY_CLOSE_CODE
from handlers.relay import SignalingRelay
from services.channels import Channel, decode_frame
from services.rate_limiter import RateLimiter

# -----------------------------------------------------------------------------
# Configuration and Global Instances
# -----------------------------------------------------------------------------
logger = logging.getLogger(__name__)


def new_connection_id() -> str:
    """Opaque connection id, unique for the lifetime of the process."""
    return secrets.token_urlsafe(12)


class WebSocketChannel(Channel):
    """
    Channel backed by a websockets server connection.

    A writer task drains the outbox onto the socket; overflowing the outbox
    closes the socket with the policy close code.
    """

    transport = "websocket"

    def __init__(self, connection_id: str, ws) -> None:
        super().__init__(connection_id)
        self.ws = ws
        self._closing = None

    async def pump(self) -> None:
        """
        Send queued envelopes in order until the socket closes.

        Returns:
            None
        """
        try:
            while True:
                raw = await self.next_message()
                await self.ws.send(raw)
        except websockets.exceptions.ConnectionClosed:
            logger.debug(f"Writer for {self.id} stopped: socket closed")

    def close(self) -> None:
        if self.closed:
            return
        super().close()
        if self.overflowed:
            self._closing = asyncio.ensure_future(
                self.ws.close(code=POLICY_CLOSE_CODE, reason="Outbox overflow"))


class ConnectionHandler:
    """
    Manages WebSocket connections: registration with the relay, rate limiting,
    the parse/dispatch loop and cleanup on disconnect.
    """

    def __init__(self, relay: SignalingRelay, limiter: RateLimiter = None):
        """
        Args:
            relay (SignalingRelay): Relay receiving every inbound event.
            limiter (RateLimiter, optional): Inbound frame limiter; a default one is created.
        """
        self.relay = relay
        self.limiter = limiter or RateLimiter()

    async def handle_connection(self, ws):
        """
        Main entry point for a new WebSocket connection.

        Frames are dispatched strictly one at a time; the relay's disconnect
        runs exactly once when the loop ends for any reason.

        Parameters:
            ws (websockets.asyncio.server.ServerConnection): The connection instance.

        Returns:
            None
        """
        connection_id = new_connection_id()
        channel = WebSocketChannel(connection_id, ws)
        logger.info(f"New connection {connection_id} from {ws.remote_address}")

        self.relay.connect(channel)
        writer = asyncio.create_task(channel.pump())

        try:
            async for raw in ws:
                if not self.limiter.allow(connection_id):
                    logger.warning(f"Rate limit exceeded by {connection_id}")
                    await ws.close(code=POLICY_CLOSE_CODE, reason="Rate limit exceeded")
                    break

                data = decode_frame(raw)
                if data is None:
                    logger.debug(f"Dropping malformed frame from {connection_id}")
                    continue

                self.relay.dispatch(connection_id, data["msg_type"], data["payload"])
        except websockets.exceptions.ConnectionClosedError:
            logger.info(f"Connection {connection_id} closed by client")
        except Exception as e:
            logger.error("Connection loop error", exc_info=e)
        finally:
            writer.cancel()
            self.relay.disconnect(connection_id)
            self.limiter.forget(connection_id)
