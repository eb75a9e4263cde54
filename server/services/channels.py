# services/channels.py
"""
Outbound side of a client channel.

Emitting never suspends: envelopes are serialized and queued on a bounded
per-channel FIFO, and each transport drains its own queue. This keeps relay
handlers free of await points, so a registry mutation and every message it
causes are enqueued before any other handler runs.
"""
import asyncio
import json
import logging
import uuid
from datetime import datetime
from typing import List, Optional

from constants import OUTBOX_MAX_SIZE

logger = logging.getLogger(__name__)


def build_envelope(msg_type: str, payload: Optional[dict] = None) -> str:
    """
    Build a server-to-client JSON envelope.

    Args:
        msg_type (str): Event name.
        payload (dict, optional): Event data. Defaults to {}.

    Returns:
        str: JSON text with message_id, timestamp, msg_type and payload.
    """
    return json.dumps({
        "message_id": str(uuid.uuid4()),
        "timestamp": datetime.now().isoformat(),
        "msg_type": msg_type,
        "payload": payload if payload is not None else {},
    })


def decode_frame(raw) -> Optional[dict]:
    """
    Parse an inbound client frame.

    Args:
        raw (str | bytes | dict): Frame text, or an already-decoded JSON object.

    Returns:
        dict or None: {"msg_type": str, "payload": dict}, or None for malformed input.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except (ValueError, RecursionError):
            return None
    if not isinstance(raw, dict):
        return None

    msg_type = raw.get("msg_type")
    payload = raw.get("payload", {})
    if not isinstance(msg_type, str) or not isinstance(payload, dict):
        return None
    return {"msg_type": msg_type, "payload": payload}


class Channel:
    """
    Queue-backed outbound channel identified by its connection id.

    Attributes:
        id (str): Connection id, unique for the life of the channel.
        closed (bool): Set once the channel stops accepting messages.
    """

    transport = "base"

    def __init__(self, connection_id: str, max_size: int = OUTBOX_MAX_SIZE) -> None:
        self.id = connection_id
        self.closed = False
        self.overflowed = False
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=max_size)

    def emit(self, msg_type: str, payload: Optional[dict] = None) -> bool:
        """
        Queue one event for delivery.

        Returns:
            bool: False if the channel is closed or its queue overflowed.
        """
        if self.closed:
            return False
        try:
            self._outbox.put_nowait(build_envelope(msg_type, payload))
        except asyncio.QueueFull:
            logger.warning(f"Outbox full for {self.id}, closing channel")
            self.overflowed = True
            self.close()
            return False
        return True

    async def next_message(self) -> str:
        return await self._outbox.get()

    def pending(self) -> List[str]:
        """Remove and return every queued envelope without waiting."""
        messages = []
        while not self._outbox.empty():
            messages.append(self._outbox.get_nowait())
        return messages

    def close(self) -> None:
        self.closed = True

