# handlers/relay.py
import json
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from constants import (
    BROADCAST_PAYLOAD_MAX_BYTES, BROADCAST_TARGET, CHAT_MESSAGE_MAX_LENGTH,
    EVENT_NAME_MAX_LENGTH, RESERVED_EVENTS,
)
from services.channels import Channel
from services.registry import Departure, PresenceRegistry, normalize_room_id
from services.sdp import normalize


logger = logging.getLogger(__name__)

# Operations accepted before the connection has joined a room
_ROOMLESS_OPERATIONS = frozenset({"join-room", "ping"})


@dataclass
class Session:
    """
    Relay-owned state of one open channel.

    Attributes:
        id (str): Connection id of the channel.
        channel (Channel): Outbound side of the connection.
        room_id (str, optional): Room currently occupied; None while not in a room.
    """
    id: str
    channel: Channel
    room_id: Optional[str] = None


class SignalingRelay:
    """
    Routes inbound client events: room membership, presence fan-out and
    authorization-checked forwarding of negotiation messages.

    Handlers are synchronous. Every registry mutation and all of the messages it
    causes are queued before the next event is handled, so members of a room
    observe presence updates in mutation order.
    """

    def __init__(self, registry: PresenceRegistry):
        self.registry = registry
        self.sessions: Dict[str, Session] = {}
        self.handlers = {
            "join-room":      self.handle_join_room,
            "toggle-audio":   self.handle_toggle_audio,
            "signal":         self.handle_signal,
            "room-broadcast": self.handle_room_broadcast,
            "roomcast":       self.handle_roomcast,
            "chat-message":   self.handle_chat_message,
            "ping":           self.handle_ping,
        }

    # -----------------------------------------------------------------------------
    # Channel lifecycle
    # -----------------------------------------------------------------------------

    def connect(self, channel: Channel) -> Session:
        """
        Register a newly opened channel and tell the client its connection id.

        Args:
            channel (Channel): Channel whose id is unique for its lifetime.

        Returns:
            Session: The new session record.
        """
        session = Session(id=channel.id, channel=channel)
        self.sessions[channel.id] = session
        channel.emit("welcome", {"id": channel.id})
        logger.info(f"Channel {channel.id} opened via {channel.transport}")
        return session

    def disconnect(self, connection_id: str) -> None:
        """
        Evict a closed channel and announce its departure to its room.

        Safe to call more than once for the same connection.
        """
        session = self.sessions.pop(connection_id, None)
        if session is None:
            return
        session.channel.close()
        departure = self.registry.leave(connection_id)
        if departure is not None:
            self._announce_departure(departure)
        logger.info(f"Channel {connection_id} closed")

    def dispatch(self, connection_id: str, msg_type, payload) -> bool:
        """
        Handle one inbound event for a connection.

        Malformed frames, unknown event types and operations that need a room
        while the connection has none are dropped without a reply.

        Args:
            connection_id (str): Sending connection.
            msg_type (str): Event name.
            payload (dict): Event data.

        Returns:
            bool: True if a handler ran.
        """
        session = self.sessions.get(connection_id)
        if session is None:
            return False

        handler = self.handlers.get(msg_type) if isinstance(msg_type, str) else None
        if handler is None:
            logger.debug(f"Dropping unknown msg_type {msg_type!r} from {connection_id}")
            return False
        if not isinstance(payload, dict):
            logger.debug(f"Dropping {msg_type} with malformed payload from {connection_id}")
            return False
        if session.room_id is None and msg_type not in _ROOMLESS_OPERATIONS:
            logger.debug(f"Dropping {msg_type} from {connection_id}: not in a room")
            return False

        try:
            handler(session, payload)
        except Exception as e:
            logger.error(f"Handler {msg_type} failed for {connection_id}", exc_info=e)
            return False
        return True

    def connection_count(self) -> int:
        return len(self.sessions)

    # -----------------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------------

    def _emit_to_room(self, room_id: str, msg_type: str, payload: dict, exclude: str = None) -> int:
        sent = 0
        for member in self.registry.members(room_id):
            if member == exclude:
                continue
            target = self.sessions.get(member)
            if target and target.channel.emit(msg_type, payload):
                sent += 1
        return sent

    def _announce_departure(self, departure: Departure) -> None:
        participant = departure.participant
        self._emit_to_room(departure.room_id, "participant-left",
                           {"id": participant.id, "username": participant.username})
        self._emit_to_room(departure.room_id, "presence-updated", {"users": departure.users})

    def _sender_room(self, session: Session, payload: dict) -> Optional[str]:
        """The normalized roomId of a payload, if the sender is a member of it."""
        room_id = normalize_room_id(payload.get("roomId"))
        if room_id and self.registry.is_member(session.id, room_id):
            return room_id
        return None

    # -----------------------------------------------------------------------------
    # Membership
    # -----------------------------------------------------------------------------

    def handle_join_room(self, session: Session, payload: dict) -> None:
        """
        Join (or switch to) a room and fan out presence.

        The joiner gets joined-room; other members get participant-joined; the
        room vacated by a switch gets participant-left; every affected room gets
        presence-updated.
        """
        result = self.registry.join(
            payload.get("roomId"), session.id,
            payload.get("username"), payload.get("instrument"))
        if result is None:
            return

        session.room_id = result.room_id
        if result.previous is not None:
            self._announce_departure(result.previous)

        session.channel.emit("joined-room", {
            "roomId": result.room_id,
            "selfId": session.id,
            "users": result.users,
        })
        self._emit_to_room(result.room_id, "participant-joined",
                           {"user": result.participant.to_dict(), "users": result.users},
                           exclude=session.id)
        self._emit_to_room(result.room_id, "presence-updated", {"users": result.users})

    def handle_toggle_audio(self, session: Session, payload: dict) -> None:
        users = self.registry.set_audio_enabled(session.id, bool(payload.get("enabled")))
        if users is None:
            return
        self._emit_to_room(session.room_id, "presence-updated", {"users": users})

    # -----------------------------------------------------------------------------
    # Negotiation
    # -----------------------------------------------------------------------------

    def handle_signal(self, session: Session, payload: dict) -> None:
        """
        Forward an offer, answer or ICE candidate inside a room.

        Session descriptions are codec-normalized in place; candidates pass
        through untouched. Targets that are not (or no longer) members of the
        stated room are dropped silently, since peers routinely leave
        mid-negotiation.
        """
        room_id = self._sender_room(session, payload)
        data = payload.get("data")
        to = payload.get("to")
        if room_id is None or not isinstance(data, dict) or not to:
            return

        description = _normalize_description(data)
        if description is not None:
            logger.debug(f"Relaying description from {session.id} to {to}:\n{description}")
        message = {"from": session.id, "data": data}

        if to == BROADCAST_TARGET:
            self._emit_to_room(room_id, "signal", message, exclude=session.id)
            return

        if not isinstance(to, str) or to == session.id or not self.registry.is_member(to, room_id):
            logger.debug(f"Dropping signal from {session.id} to {to}: not in room {room_id}")
            return
        target = self.sessions.get(to)
        if target:
            target.channel.emit("signal", message)

    # -----------------------------------------------------------------------------
    # Auxiliary room traffic
    # -----------------------------------------------------------------------------

    def handle_room_broadcast(self, session: Session, payload: dict) -> None:
        """
        Fan out an arbitrary named event to every member of the sender's room,
        the sender included.
        """
        room_id = self._sender_room(session, payload)
        event = payload.get("type") or payload.get("eventName")
        if room_id is None or not _valid_event_name(event):
            return

        body = payload.get("payload")
        if isinstance(body, str):
            body = body[:CHAT_MESSAGE_MAX_LENGTH]
        if len(json.dumps(body).encode("utf-8")) > BROADCAST_PAYLOAD_MAX_BYTES:
            logger.warning(f"Dropping oversized {event} broadcast from {session.id}")
            return

        participant = self.registry.participant(session.id)
        self._emit_to_room(room_id, event, {
            "from": session.id,
            "username": participant.username if participant else None,
            "payload": body,
        })

    def handle_roomcast(self, session: Session, payload: dict) -> None:
        # Newer clients send roomcast{roomId, type, payload}; older ones send chat text
        if "type" in payload or "eventName" in payload:
            self.handle_room_broadcast(session, payload)
        else:
            self._relay_chat(session, payload, "roomcast")

    def handle_chat_message(self, session: Session, payload: dict) -> None:
        self._relay_chat(session, payload, "chat-message")

    def _relay_chat(self, session: Session, payload: dict, event: str) -> None:
        room_id = self._sender_room(session, payload)
        message = payload.get("message")
        if room_id is None or not message:
            return
        participant = self.registry.participant(session.id)
        self._emit_to_room(room_id, event, {
            "username": participant.username if participant else "user",
            "message": str(message)[:CHAT_MESSAGE_MAX_LENGTH],
        })

    def handle_ping(self, session: Session, payload: dict) -> None:
        session.channel.emit("pong", {"timestamp": payload.get("timestamp")})


def _normalize_description(data: dict) -> Optional[str]:
    """
    Rewrite the session-description text carried by a signal payload, in place.

    Returns:
        str or None: The rewritten text, or None when the payload carries no description.
    """
    description = data.get("sdp")
    if isinstance(description, dict) and isinstance(description.get("sdp"), str):
        description["sdp"] = normalize(description["sdp"])
        return description["sdp"]
    if isinstance(description, str) and data.get("type") in ("offer", "answer"):
        data["sdp"] = normalize(description)
        return data["sdp"]
    return None


def _valid_event_name(event) -> bool:
    return (
        isinstance(event, str)
        and 0 < len(event) <= EVENT_NAME_MAX_LENGTH
        and event not in RESERVED_EVENTS
    )
