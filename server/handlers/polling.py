# handlers/polling.py
"""
Long-polling fallback transport for clients that cannot keep a WebSocket open.

    POST   /poll        open a channel            -> {"id": ...}
    POST   /poll/{id}   submit one or more frames
    GET    /poll/{id}   wait for queued envelopes -> {"messages": [...]}
    DELETE /poll/{id}   close the channel

Channels that stop polling are expired by a periodic sweep and disconnected
through the relay like a closed WebSocket.
"""
import asyncio
import logging
import time
from typing import Dict, List

from aiohttp import web

from constants import POLL_IDLE_TIMEOUT, POLL_SWEEP_INTERVAL, POLL_WAIT_SECONDS
from handlers.connection import new_connection_id
from handlers.relay import SignalingRelay
from services.channels import Channel, decode_frame
from services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class PollingChannel(Channel):
    """Channel whose outbox is drained by long-poll requests."""

    transport = "polling"

    def __init__(self, connection_id: str) -> None:
        super().__init__(connection_id)
        self.last_seen = time.monotonic()

    async def drain(self, wait: float) -> List[str]:
        """
        Return queued envelopes, waiting up to `wait` seconds for the first one.
        """
        self.last_seen = time.monotonic()
        messages = self.pending()
        if messages or self.closed:
            return messages
        try:
            first = await asyncio.wait_for(self.next_message(), timeout=wait)
        except asyncio.TimeoutError:
            return []
        return [first] + self.pending()


class PollingTransport:
    """
    aiohttp routes and expiry sweep for polling channels.
    """

    def __init__(
            self,
            relay: SignalingRelay,
            limiter: RateLimiter = None,
            wait: float = POLL_WAIT_SECONDS,
            idle_timeout: float = POLL_IDLE_TIMEOUT,
            sweep_interval: float = POLL_SWEEP_INTERVAL):
        self.relay = relay
        self.limiter = limiter or RateLimiter()
        self.wait = wait
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self.channels: Dict[str, PollingChannel] = {}
        self._sweeper = None

    def add_routes(self, app: web.Application) -> None:
        app.router.add_post("/poll", self.handle_open)
        app.router.add_post("/poll/{connection_id}", self.handle_submit)
        app.router.add_get("/poll/{connection_id}", self.handle_poll)
        app.router.add_delete("/poll/{connection_id}", self.handle_close)
        app.on_startup.append(self._start_sweeper)
        app.on_cleanup.append(self._stop_sweeper)

    def _lookup(self, request: web.Request) -> PollingChannel:
        connection_id = request.match_info["connection_id"]
        channel = self.channels.get(connection_id)
        if channel is None:
            raise web.HTTPNotFound()
        if channel.closed:
            self._drop(connection_id)
            raise web.HTTPNotFound()
        return channel

    def _drop(self, connection_id: str) -> None:
        if self.channels.pop(connection_id, None) is not None:
            self.relay.disconnect(connection_id)
            self.limiter.forget(connection_id)

    async def handle_open(self, request: web.Request) -> web.Response:
        channel = PollingChannel(new_connection_id())
        self.channels[channel.id] = channel
        self.relay.connect(channel)
        return web.json_response({"id": channel.id})

    async def handle_submit(self, request: web.Request) -> web.Response:
        """
        Dispatch submitted frames in order. Malformed frames are dropped silently.

        Frames past the rate limit are discarded with a 429; the channel stays
        open and keeps its room.
        """
        channel = self._lookup(request)
        channel.last_seen = time.monotonic()
        try:
            body = await request.json()
        except (ValueError, RecursionError):
            body = None
        frames = body if isinstance(body, list) else [body]

        for raw in frames:
            if not self.limiter.allow(channel.id):
                logger.warning(f"Rate limit exceeded by {channel.id}")
                raise web.HTTPTooManyRequests()
            data = decode_frame(raw)
            if data is None:
                continue
            self.relay.dispatch(channel.id, data["msg_type"], data["payload"])
        return web.Response(status=204)

    async def handle_poll(self, request: web.Request) -> web.Response:
        channel = self._lookup(request)
        messages = await channel.drain(self.wait)
        # Envelopes are already JSON text
        return web.Response(
            text='{"messages": [' + ",".join(messages) + "]}",
            content_type="application/json")

    async def handle_close(self, request: web.Request) -> web.Response:
        self._lookup(request)
        self._drop(request.match_info["connection_id"])
        return web.Response(status=204)

    def sweep(self) -> int:
        """
        Disconnect channels idle for longer than the idle timeout.

        Returns:
            int: Number of expired channels.
        """
        deadline = time.monotonic() - self.idle_timeout
        expired = [cid for cid, ch in self.channels.items() if ch.closed or ch.last_seen < deadline]
        for connection_id in expired:
            logger.info(f"Polling channel {connection_id} expired")
            self._drop(connection_id)
        return len(expired)

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    async def _start_sweeper(self, app: web.Application) -> None:
        self._sweeper = asyncio.create_task(self._sweep_forever())

    async def _stop_sweeper(self, app: web.Application) -> None:
        if self._sweeper:
            self._sweeper.cancel()
        for connection_id in list(self.channels):
            self._drop(connection_id)
