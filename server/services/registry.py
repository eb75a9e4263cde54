# services/registry.py
"""
In-memory presence registry: which participants currently occupy each room.

A connection is a member of at most one room at a time. Rooms are created
implicitly by the first join and removed as soon as their last participant
leaves, so an empty room is never observable.

The registry is plain process-wide state without locking; it relies on the
single-threaded asyncio dispatch of the relay for atomicity.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional

from constants import (
    DEFAULT_AUDIO_ENABLED, DEFAULT_INSTRUMENT, DEFAULT_USERNAME,
    INSTRUMENT_MAX_LENGTH, ROOM_ID_MAX_LENGTH, USERNAME_MAX_LENGTH,
)

logger = logging.getLogger(__name__)

RoomSnapshot = List[dict]


@dataclass
class Participant:
    """One connected client inside a room."""
    id: str
    username: str = DEFAULT_USERNAME
    instrument: str = DEFAULT_INSTRUMENT
    audio_enabled: bool = field(default=DEFAULT_AUDIO_ENABLED)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "instrument": self.instrument,
            "audioEnabled": self.audio_enabled,
        }


class Departure(NamedTuple):
    """A participant removed from a room, with the room's remaining members."""
    room_id: str
    participant: Participant
    users: RoomSnapshot


class JoinResult(NamedTuple):
    """Outcome of a successful join, including the room vacated by a transfer."""
    room_id: str
    participant: Participant
    users: RoomSnapshot
    previous: Optional[Departure]


def normalize_room_id(raw) -> str:
    """
    Normalize a client-supplied room identifier.

    Args:
        raw: Room identifier as received on the wire.

    Returns:
        str: Trimmed, uppercased identifier capped at ROOM_ID_MAX_LENGTH,
             or an empty string for missing / non-scalar input.
    """
    if isinstance(raw, bool) or not isinstance(raw, (str, int)):
        return ""
    return str(raw).strip().upper()[:ROOM_ID_MAX_LENGTH]


def _clean_text(raw, default: str, max_length: int) -> str:
    if not isinstance(raw, str):
        return default
    text = raw.strip()[:max_length]
    return text or default


class PresenceRegistry:
    """
    Mapping of room id to its participants, keyed by connection id.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, Dict[str, Participant]] = {}
        self._membership: Dict[str, str] = {}

    def join(self, room_id, connection_id: str, username=None, instrument=None) -> Optional[JoinResult]:
        """
        Place a connection into a room, creating the room if needed.

        A connection already in a different room is removed from it first, so it
        is never a member of two rooms. Re-joining the same room refreshes the
        display metadata but keeps the audio flag.

        Args:
            room_id: Requested room identifier (normalized here).
            connection_id (str): Opaque id of the joining connection.
            username: Display name; defaulted and truncated.
            instrument: Instrument / role tag; defaulted and truncated.

        Returns:
            JoinResult or None: None when the room id is empty after normalization.
        """
        room_id = normalize_room_id(room_id)
        if not room_id:
            logger.debug(f"Dropping join with empty room id from {connection_id}")
            return None

        username = _clean_text(username, DEFAULT_USERNAME, USERNAME_MAX_LENGTH)
        instrument = _clean_text(instrument, DEFAULT_INSTRUMENT, INSTRUMENT_MAX_LENGTH)

        previous = None
        current = self._membership.get(connection_id)
        if current is not None and current != room_id:
            previous = self.leave(connection_id)

        members = self._rooms.setdefault(room_id, {})
        participant = members.get(connection_id)
        if participant is None:
            participant = Participant(id=connection_id, username=username, instrument=instrument)
            members[connection_id] = participant
        else:
            participant.username = username
            participant.instrument = instrument
        self._membership[connection_id] = room_id

        logger.info(f"{connection_id} joined room {room_id} ({len(members)} present)")
        return JoinResult(room_id, participant, self.snapshot(room_id), previous)

    def leave(self, connection_id: str) -> Optional[Departure]:
        """
        Remove a connection from whichever room it occupies.

        Args:
            connection_id (str): Connection to remove.

        Returns:
            Departure or None: The vacated room and its post-removal snapshot, or
                               None if the connection was in no room.
        """
        room_id = self._membership.pop(connection_id, None)
        if room_id is None:
            return None

        members = self._rooms.get(room_id, {})
        participant = members.pop(connection_id, None)
        if not members:
            self._rooms.pop(room_id, None)
            logger.info(f"Room {room_id} is empty, removed")
        logger.info(f"{connection_id} left room {room_id}")
        return Departure(room_id, participant or Participant(id=connection_id), self.snapshot(room_id))

    def set_audio_enabled(self, connection_id: str, enabled: bool) -> Optional[RoomSnapshot]:
        """
        Update the audio flag on the caller's own participant record.

        Returns:
            list or None: Snapshot of the caller's room, or None if it is in no room.
        """
        room_id = self._membership.get(connection_id)
        if room_id is None:
            return None
        self._rooms[room_id][connection_id].audio_enabled = bool(enabled)
        return self.snapshot(room_id)

    def snapshot(self, room_id) -> RoomSnapshot:
        """Participants of a room in join order; empty for unknown rooms."""
        members = self._rooms.get(normalize_room_id(room_id), {})
        return [p.to_dict() for p in members.values()]

    def room_of(self, connection_id: str) -> Optional[str]:
        return self._membership.get(connection_id)

    def members(self, room_id) -> List[str]:
        """Connection ids currently in a room."""
        return list(self._rooms.get(normalize_room_id(room_id), {}))

    def is_member(self, connection_id: str, room_id) -> bool:
        room_id = normalize_room_id(room_id)
        return bool(room_id) and self._membership.get(connection_id) == room_id

    def participant(self, connection_id: str) -> Optional[Participant]:
        room_id = self._membership.get(connection_id)
        if room_id is None:
            return None
        return self._rooms[room_id].get(connection_id)

    def rooms(self) -> Dict[str, int]:
        """Room id to participant count, for diagnostics."""
        return {room_id: len(members) for room_id, members in self._rooms.items()}
