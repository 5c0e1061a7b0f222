"""Session directory: per-room metadata, host authority and roster.

Rooms are stored as JSON under `room:{ID}` with a TTL. Host authority is
stateless: every host operation carries the room secret, which is compared
(as a SHA-256 digest, in constant time) against the stored digest. The
secret never appears in any view returned by this module.

Every read-modify-write of a room runs inside `store.lock(room key)` so that
concurrent joins cannot overrun the roster capacity.
"""

import hashlib
import hmac
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from huddle.codes import generate_code
from huddle.errors import (
    CapacityError,
    ConflictError,
    NotFoundError,
    RoomInactiveError,
    UnauthorizedError,
    ValidationError,
)
from huddle.store import KeyValueStore

logger = logging.getLogger(__name__)

ROOM_KEY = "room:{room_id}"
ROOM_ID_LENGTH = 8
PARTICIPANT_ID_LENGTH = 6
ROOM_ID_PATTERN = re.compile(r"^[A-Z0-9]{6,12}$")

MAX_TITLE_LENGTH = 100
MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 50
MIN_SECRET_LENGTH = 4
MAX_PEER_ID_LENGTH = 128
MIN_PARTICIPANTS = 2
MAX_PARTICIPANTS = 50

STATUS_WAITING = "waiting"
STATUS_ACTIVE = "active"


def hash_secret(secret: str) -> str:
    """Digest a host secret for storage."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def secret_matches(secret: str | None, digest: str) -> bool:
    """Constant-time comparison of a presented secret against a digest."""
    if not secret:
        return False
    return hmac.compare_digest(hash_secret(secret), digest)


def normalize_room_id(room_id: str | None) -> str:
    """Validate and upper-case a room id.

    Raises:
        ValidationError: If the id is not 6-12 alphanumeric characters.
    """
    if not isinstance(room_id, str):
        raise ValidationError("Room ID is required")
    normalized = room_id.strip().upper()
    if not ROOM_ID_PATTERN.match(normalized):
        raise ValidationError("Invalid room ID format")
    return normalized


def validate_title(title: str | None) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Room title is required")
    return title.strip()[:MAX_TITLE_LENGTH]


def validate_name(name: str | None) -> str:
    if not isinstance(name, str) or len(name.strip()) < MIN_NAME_LENGTH:
        raise ValidationError(
            f"Participant name must be at least {MIN_NAME_LENGTH} characters long"
        )
    return name.strip()[:MAX_NAME_LENGTH]


def validate_secret(secret: str | None) -> str:
    if not isinstance(secret, str) or len(secret) < MIN_SECRET_LENGTH:
        raise ValidationError(
            f"Host secret must be at least {MIN_SECRET_LENGTH} characters long"
        )
    return secret


def validate_peer_id(peer_id: str | None) -> str:
    if not isinstance(peer_id, str) or not peer_id.strip():
        raise ValidationError("Peer ID is required")
    if len(peer_id) > MAX_PEER_ID_LENGTH:
        raise ValidationError("Peer ID too long")
    return peer_id.strip()


@dataclass
class ParticipantRecord:
    """A participant's admission record.

    Attributes:
        id: Directory-assigned participant id.
        name: Display name chosen by the participant.
        transport_peer_id: Transport identity the host will see.
        status: "waiting" until approved, then "active".
        joined_at: Unix timestamp of the join request.
    """

    id: str
    name: str
    transport_peer_id: str
    status: str = STATUS_WAITING
    joined_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "transportPeerId": self.transport_peer_id,
            "admissionStatus": self.status,
            "joinedAt": self.joined_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ParticipantRecord":
        return cls(
            id=d["id"],
            name=d["name"],
            transport_peer_id=d["transportPeerId"],
            status=d.get("admissionStatus", STATUS_WAITING),
            joined_at=d.get("joinedAt", 0.0),
        )


@dataclass
class SessionRoom:
    """Room metadata as persisted in the store."""

    id: str
    title: str
    host_secret_hash: str
    max_participants: int
    host_peer_id: str | None = None
    participants: list[ParticipantRecord] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    ended_at: float | None = None

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    @property
    def active_count(self) -> int:
        return sum(1 for p in self.participants if p.status == STATUS_ACTIVE)

    def find(self, participant_id: str) -> ParticipantRecord | None:
        for participant in self.participants:
            if participant.id == participant_id:
                return participant
        return None

    def find_by_peer(self, transport_peer_id: str) -> ParticipantRecord | None:
        for participant in self.participants:
            if participant.transport_peer_id == transport_peer_id:
                return participant
        return None

    def prune_waiting(self, now: float, waiting_ttl: float) -> int:
        """Drop waiting records older than waiting_ttl.

        Returns:
            Number of records removed.
        """
        before = len(self.participants)
        self.participants = [
            p
            for p in self.participants
            if p.status != STATUS_WAITING or now - p.joined_at < waiting_ttl
        ]
        return before - len(self.participants)

    def sanitized(self, include_roster: bool = False) -> dict:
        """Externally readable view. Never contains the host secret."""
        view: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at,
            "status": "active" if self.is_active else "ended",
            "maxParticipants": self.max_participants,
            "participantCount": self.active_count,
            "waitingCount": len(self.participants) - self.active_count,
            "hostConnected": bool(self.host_peer_id),
        }
        if include_roster:
            view["participants"] = [p.to_dict() for p in self.participants]
        return view

    def to_json(self) -> str:
        return json.dumps(
            {
                "id": self.id,
                "title": self.title,
                "hostSecretHash": self.host_secret_hash,
                "hostPeerId": self.host_peer_id,
                "participants": [p.to_dict() for p in self.participants],
                "maxParticipants": self.max_participants,
                "createdAt": self.created_at,
                "endedAt": self.ended_at,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "SessionRoom":
        d = json.loads(raw)
        return cls(
            id=d["id"],
            title=d["title"],
            host_secret_hash=d["hostSecretHash"],
            max_participants=d["maxParticipants"],
            host_peer_id=d.get("hostPeerId"),
            participants=[ParticipantRecord.from_dict(p) for p in d.get("participants", [])],
            created_at=d.get("createdAt", 0.0),
            ended_at=d.get("endedAt"),
        )


@dataclass(frozen=True)
class RoomView:
    """Result of get_room: sanitized room plus caller's authority."""

    room: dict
    is_host: bool
    host_peer_id: str | None

    def to_dict(self) -> dict:
        return {
            "room": self.room,
            "isHost": self.is_host,
            "hostPeerId": self.host_peer_id,
        }


class RoomDirectory:
    """Creates rooms and applies host-authenticated roster changes."""

    def __init__(
        self,
        store: KeyValueStore,
        room_ttl: int = 24 * 60 * 60,
        max_participants: int = 20,
        waiting_ttl: int = 5 * 60,
        max_attempts: int = 10,
        id_generator: Callable[[int], str] = generate_code,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize directory.

        Args:
            store: TTL key-value backend.
            room_ttl: Room lifetime in seconds, refreshed on every write.
            max_participants: Default roster capacity for new rooms.
            waiting_ttl: Age after which waiting records are pruned.
            max_attempts: Collision retries for room id generation.
            id_generator: Generates ids of a given length (injectable).
            clock: Wall clock (injectable for testing).
        """
        self._store = store
        self._room_ttl = room_ttl
        self._max_participants = max_participants
        self._waiting_ttl = waiting_ttl
        self._max_attempts = max_attempts
        self._id_generator = id_generator
        self._clock = clock

    async def _load(self, room_id: str) -> SessionRoom:
        raw = await self._store.get(ROOM_KEY.format(room_id=room_id))
        if raw is None:
            raise NotFoundError("Room not found")
        return SessionRoom.from_json(raw)

    async def _save(self, room: SessionRoom) -> None:
        await self._store.put(ROOM_KEY.format(room_id=room.id), room.to_json(), self._room_ttl)

    def _authorize(self, room: SessionRoom, secret: str | None) -> None:
        if not secret_matches(secret, room.host_secret_hash):
            logger.warning(f"Rejected host operation on room {room.id}: bad secret")
            raise UnauthorizedError("Unauthorized")

    def _prune(self, room: SessionRoom) -> None:
        removed = room.prune_waiting(self._clock(), self._waiting_ttl)
        if removed:
            logger.info(f"Pruned {removed} stale waiting participant(s) from room {room.id}")

    async def create_room(
        self,
        title: str,
        host_auth_secret: str,
        max_participants: int | None = None,
    ) -> SessionRoom:
        """Create a room with a fresh collision-checked id.

        Raises:
            ValidationError: Bad title, secret or capacity.
            ConflictError: If no free room id was found.
        """
        title = validate_title(title)
        secret = validate_secret(host_auth_secret)
        if max_participants is None:
            max_participants = self._max_participants
        if (
            not isinstance(max_participants, int)
            or isinstance(max_participants, bool)
            or not MIN_PARTICIPANTS <= max_participants <= MAX_PARTICIPANTS
        ):
            raise ValidationError(
                f"Max participants must be between {MIN_PARTICIPANTS} and {MAX_PARTICIPANTS}"
            )

        for attempt in range(1, self._max_attempts + 1):
            room = SessionRoom(
                id=self._id_generator(ROOM_ID_LENGTH),
                title=title,
                host_secret_hash=hash_secret(secret),
                max_participants=max_participants,
                created_at=self._clock(),
            )
            key = ROOM_KEY.format(room_id=room.id)
            if await self._store.add(key, room.to_json(), self._room_ttl):
                logger.info(f"Created room {room.id} (attempt {attempt})")
                return room
            logger.info(f"Room id collision on attempt {attempt}")

        raise ConflictError("Failed to generate unique room ID")

    async def get_room(self, room_id: str, auth_secret: str | None = None) -> RoomView:
        """Return the sanitized room and whether the caller is the host.

        Raises:
            ValidationError: Malformed room id.
            NotFoundError: Unknown or expired room.
        """
        room = await self._load(normalize_room_id(room_id))
        room.prune_waiting(self._clock(), self._waiting_ttl)
        is_host = secret_matches(auth_secret, room.host_secret_hash)
        return RoomView(
            room=room.sanitized(include_roster=is_host),
            is_host=is_host,
            host_peer_id=room.host_peer_id,
        )

    async def set_host_peer_id(self, room_id: str, auth_secret: str, peer_id: str) -> None:
        """Record the host's transport identity.

        Raises:
            UnauthorizedError: Secret mismatch.
            RoomInactiveError: Room has ended.
        """
        room_id = normalize_room_id(room_id)
        peer_id = validate_peer_id(peer_id)
        async with self._store.lock(ROOM_KEY.format(room_id=room_id)):
            room = await self._load(room_id)
            self._authorize(room, auth_secret)
            if not room.is_active:
                raise RoomInactiveError("Meeting has ended")
            room.host_peer_id = peer_id
            await self._save(room)
        logger.info(f"Room {room_id} host peer set")

    async def host_reconnect(self, room_id: str, auth_secret: str, peer_id: str) -> dict:
        """Re-register a host after it reconnected with a new peer id.

        Returns:
            Summary view of the room.
        """
        await self.set_host_peer_id(room_id, auth_secret, peer_id)
        room = await self._load(normalize_room_id(room_id))
        return {
            "id": room.id,
            "title": room.title,
            "status": "active",
            "expiresAt": self._clock() + self._room_ttl,
            "participantCount": room.active_count,
            "hostConnected": True,
        }

    async def join_room(self, room_id: str, name: str, transport_peer_id: str) -> str:
        """Add a waiting participant record.

        Returns:
            Participant id (the existing one if this peer already joined).

        Raises:
            NotFoundError: Unknown room.
            RoomInactiveError: Room has ended.
            CapacityError: Roster is full.
        """
        room_id = normalize_room_id(room_id)
        name = validate_name(name)
        transport_peer_id = validate_peer_id(transport_peer_id)

        async with self._store.lock(ROOM_KEY.format(room_id=room_id)):
            room = await self._load(room_id)
            if not room.is_active:
                raise RoomInactiveError("Meeting has ended")
            self._prune(room)

            existing = room.find_by_peer(transport_peer_id)
            if existing is not None:
                return existing.id

            if len(room.participants) >= room.max_participants:
                logger.info(f"Room {room_id} is full ({room.max_participants})")
                raise CapacityError("Room is full")

            participant_id = self._id_generator(PARTICIPANT_ID_LENGTH)
            while room.find(participant_id) is not None:
                participant_id = self._id_generator(PARTICIPANT_ID_LENGTH)

            room.participants.append(
                ParticipantRecord(
                    id=participant_id,
                    name=name,
                    transport_peer_id=transport_peer_id,
                    joined_at=self._clock(),
                )
            )
            await self._save(room)

        logger.info(f"Participant {participant_id} waiting in room {room_id}")
        return participant_id

    async def approve_participant(
        self, room_id: str, participant_id: str, auth_secret: str
    ) -> None:
        """Promote a waiting participant to active.

        Raises:
            UnauthorizedError: Secret mismatch.
            NotFoundError: Unknown room or participant.
        """
        room_id = normalize_room_id(room_id)
        async with self._store.lock(ROOM_KEY.format(room_id=room_id)):
            room = await self._load(room_id)
            self._authorize(room, auth_secret)
            if not room.is_active:
                raise RoomInactiveError("Meeting has ended")
            self._prune(room)
            participant = room.find(participant_id)
            if participant is None:
                raise NotFoundError("Participant not found")
            participant.status = STATUS_ACTIVE
            await self._save(room)
        logger.info(f"Participant {participant_id} approved in room {room_id}")

    async def remove_participant(
        self, room_id: str, participant_id: str, auth_secret: str
    ) -> bool:
        """Remove a participant record (leave, reject or close).

        Returns:
            True if a record was removed.
        """
        room_id = normalize_room_id(room_id)
        async with self._store.lock(ROOM_KEY.format(room_id=room_id)):
            room = await self._load(room_id)
            self._authorize(room, auth_secret)
            participant = room.find(participant_id)
            if participant is None:
                return False
            room.participants.remove(participant)
            await self._save(room)
        logger.info(f"Participant {participant_id} removed from room {room_id}")
        return True

    async def end_room(self, room_id: str, auth_secret: str) -> None:
        """Mark a room ended; later joins fail with RoomInactiveError."""
        room_id = normalize_room_id(room_id)
        async with self._store.lock(ROOM_KEY.format(room_id=room_id)):
            room = await self._load(room_id)
            self._authorize(room, auth_secret)
            if room.ended_at is None:
                room.ended_at = self._clock()
            room.host_peer_id = None
            room.participants = []
            await self._save(room)
        logger.info(f"Room {room_id} ended")
