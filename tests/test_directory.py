"""Tests for the room directory."""

import asyncio
import json

import pytest

from huddle.directory import (
    ROOM_KEY,
    RoomDirectory,
    SessionRoom,
    hash_secret,
    normalize_room_id,
    secret_matches,
    validate_name,
)
from huddle.errors import (
    CapacityError,
    ConflictError,
    NotFoundError,
    RoomInactiveError,
    UnauthorizedError,
    ValidationError,
)
from huddle.store import MemoryStore

SECRET = "hunter22"


class SequentialIds:
    """Deterministic id generator: ROOM0001, ROOM0002, ... / P00001, ..."""

    def __init__(self):
        self.count = 0

    def __call__(self, length: int) -> str:
        self.count += 1
        prefix = "ROOM" if length == 8 else "P"
        return f"{prefix}{self.count:0{length - len(prefix)}d}"


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def directory(store, clock):
    return RoomDirectory(store, max_participants=3, id_generator=SequentialIds(), clock=clock)


@pytest.fixture
async def room(directory):
    return await directory.create_room("Standup", SECRET)


class TestHelpers:
    """Tests for validation helpers."""

    def test_secret_hash_round_trip(self):
        digest = hash_secret(SECRET)
        assert secret_matches(SECRET, digest)
        assert not secret_matches("wrong", digest)
        assert not secret_matches(None, digest)
        assert not secret_matches("", digest)

    def test_normalize_room_id(self):
        assert normalize_room_id(" room0001 ") == "ROOM0001"

    @pytest.mark.parametrize("bad", ["", "ABC", "A" * 13, "ROOM-001", None])
    def test_normalize_room_id_rejects(self, bad):
        with pytest.raises(ValidationError):
            normalize_room_id(bad)

    def test_validate_name_caps_length(self):
        assert validate_name("  " + "x" * 80) == "x" * 50

    @pytest.mark.parametrize("bad", ["", "A", " B ", None])
    def test_validate_name_rejects_short(self, bad):
        with pytest.raises(ValidationError):
            validate_name(bad)


class TestCreateRoom:
    """Tests for create_room."""

    async def test_create_room(self, directory, clock):
        """New rooms are active, empty and stamped with the clock."""
        room = await directory.create_room("  Standup  ", SECRET)

        assert room.id == "ROOM0001"
        assert room.title == "Standup"
        assert room.is_active
        assert room.participants == []
        assert room.max_participants == 3
        assert room.created_at == clock()

    async def test_secret_stored_as_digest(self, directory, store, room):
        """The raw secret is never persisted."""
        raw = await store.get(ROOM_KEY.format(room_id=room.id))

        assert SECRET not in raw
        assert json.loads(raw)["hostSecretHash"] == hash_secret(SECRET)

    async def test_title_truncated(self, directory):
        room = await directory.create_room("t" * 150, SECRET)
        assert len(room.title) == 100

    @pytest.mark.parametrize(
        "title,secret,cap",
        [("", SECRET, None), ("Standup", "abc", None), ("Standup", SECRET, 1), ("Standup", SECRET, 51)],
    )
    async def test_invalid_input(self, directory, title, secret, cap):
        with pytest.raises(ValidationError):
            await directory.create_room(title, secret, cap)

    async def test_id_collision_retried(self, store, clock):
        """A colliding room id is retried."""
        ids = iter(["ROOMAAAA", "ROOMAAAA", "ROOMBBBB"])
        directory = RoomDirectory(store, id_generator=lambda n: next(ids), clock=clock)
        await directory.create_room("First", SECRET)

        room = await directory.create_room("Second", SECRET)

        assert room.id == "ROOMBBBB"

    async def test_id_exhaustion(self, store, clock):
        directory = RoomDirectory(
            store, max_attempts=2, id_generator=lambda n: "ROOMAAAA", clock=clock
        )
        await directory.create_room("First", SECRET)

        with pytest.raises(ConflictError):
            await directory.create_room("Second", SECRET)


class TestGetRoom:
    """Tests for get_room."""

    async def test_public_view(self, directory, room):
        """Without the secret the caller is not host and sees no roster."""
        await directory.join_room(room.id, "Ana", "peer-ana")

        view = await directory.get_room(room.id)

        assert view.is_host is False
        assert "participants" not in view.room
        assert view.room["waitingCount"] == 1
        assert view.room["participantCount"] == 0
        assert view.room["status"] == "active"

    async def test_host_view(self, directory, room):
        """The correct secret marks the caller host and includes the roster."""
        await directory.join_room(room.id, "Ana", "peer-ana")

        view = await directory.get_room(room.id.lower(), SECRET)

        assert view.is_host is True
        assert [p["name"] for p in view.room["participants"]] == ["Ana"]

    async def test_secret_never_exposed(self, directory, room):
        """No view, host or not, contains the secret or its digest."""
        for secret in (None, "wrong", SECRET):
            text = json.dumps((await directory.get_room(room.id, secret)).to_dict())
            assert SECRET not in text
            assert hash_secret(SECRET) not in text

    async def test_unknown_room(self, directory):
        with pytest.raises(NotFoundError):
            await directory.get_room("NOPE0000")

    async def test_expired_room(self, directory, room, clock):
        """Rooms past the room TTL are gone."""
        clock.advance(24 * 60 * 60)
        with pytest.raises(NotFoundError):
            await directory.get_room(room.id)

    async def test_host_peer_exposed(self, directory, room):
        """Participants learn the host's transport identity."""
        await directory.set_host_peer_id(room.id, SECRET, "peer-host")

        view = await directory.get_room(room.id)

        assert view.host_peer_id == "peer-host"
        assert view.room["hostConnected"] is True


class TestHostAuthority:
    """Every host operation requires the matching secret."""

    async def test_set_host_peer_id_wrong_secret(self, directory, room):
        with pytest.raises(UnauthorizedError):
            await directory.set_host_peer_id(room.id, "wrong", "peer-host")

    async def test_approve_wrong_secret(self, directory, room):
        pid = await directory.join_room(room.id, "Ana", "peer-ana")
        with pytest.raises(UnauthorizedError):
            await directory.approve_participant(room.id, pid, "wrong")

    async def test_remove_wrong_secret(self, directory, room):
        pid = await directory.join_room(room.id, "Ana", "peer-ana")
        with pytest.raises(UnauthorizedError):
            await directory.remove_participant(room.id, pid, None)

    async def test_end_wrong_secret(self, directory, room):
        with pytest.raises(UnauthorizedError):
            await directory.end_room(room.id, "wrong")
        assert (await directory.get_room(room.id)).room["status"] == "active"

    async def test_host_reconnect(self, directory, room, clock):
        """Reconnect replaces the host peer id and returns a summary."""
        await directory.set_host_peer_id(room.id, SECRET, "peer-old")

        summary = await directory.host_reconnect(room.id, SECRET, "peer-new")

        assert summary["id"] == room.id
        assert summary["hostConnected"] is True
        assert summary["expiresAt"] == clock() + 24 * 60 * 60
        assert (await directory.get_room(room.id)).host_peer_id == "peer-new"


class TestJoinAndApprove:
    """Tests for join_room / approve_participant / remove_participant."""

    async def test_join_creates_waiting_record(self, directory, room):
        pid = await directory.join_room(room.id, "Ana", "peer-ana")

        view = await directory.get_room(room.id, SECRET)
        record = view.room["participants"][0]
        assert record["id"] == pid
        assert record["admissionStatus"] == "waiting"
        assert record["transportPeerId"] == "peer-ana"

    async def test_rejoin_same_peer_returns_same_id(self, directory, room):
        """Repeated join from the same transport peer is idempotent."""
        first = await directory.join_room(room.id, "Ana", "peer-ana")
        second = await directory.join_room(room.id, "Ana", "peer-ana")

        assert first == second
        assert (await directory.get_room(room.id)).room["waitingCount"] == 1

    async def test_approve(self, directory, room):
        pid = await directory.join_room(room.id, "Ana", "peer-ana")

        await directory.approve_participant(room.id, pid, SECRET)

        view = await directory.get_room(room.id, SECRET)
        assert view.room["participants"][0]["admissionStatus"] == "active"
        assert view.room["participantCount"] == 1

    async def test_approve_unknown_participant(self, directory, room):
        with pytest.raises(NotFoundError):
            await directory.approve_participant(room.id, "P00099", SECRET)

    async def test_remove(self, directory, room):
        pid = await directory.join_room(room.id, "Ana", "peer-ana")

        assert await directory.remove_participant(room.id, pid, SECRET) is True
        assert await directory.remove_participant(room.id, pid, SECRET) is False

    async def test_capacity_boundary(self, directory, room):
        """Joins up to capacity succeed; the next one fails."""
        for i in range(3):
            await directory.join_room(room.id, f"Guest {i}", f"peer-{i}")

        with pytest.raises(CapacityError):
            await directory.join_room(room.id, "Late", "peer-late")

    async def test_capacity_freed_by_removal(self, directory, room):
        ids = [await directory.join_room(room.id, f"Guest {i}", f"peer-{i}") for i in range(3)]
        await directory.remove_participant(room.id, ids[0], SECRET)

        assert await directory.join_room(room.id, "Late", "peer-late")

    async def test_concurrent_joins_never_exceed_capacity(self, directory, room):
        """Racing joins are serialized by the room lock."""
        results = await asyncio.gather(
            *(directory.join_room(room.id, f"Guest {i}", f"peer-{i}") for i in range(6)),
            return_exceptions=True,
        )

        joined = [r for r in results if isinstance(r, str)]
        full = [r for r in results if isinstance(r, CapacityError)]
        assert len(joined) == 3
        assert len(full) == 3

    async def test_stale_waiting_records_pruned(self, directory, room, clock):
        """Waiting records older than the waiting TTL free their slot."""
        for i in range(3):
            await directory.join_room(room.id, f"Guest {i}", f"peer-{i}")
        clock.advance(5 * 60)

        await directory.join_room(room.id, "Fresh", "peer-fresh")

        view = await directory.get_room(room.id, SECRET)
        assert [p["name"] for p in view.room["participants"]] == ["Fresh"]

    async def test_active_records_not_pruned(self, directory, room, clock):
        pid = await directory.join_room(room.id, "Ana", "peer-ana")
        await directory.approve_participant(room.id, pid, SECRET)
        clock.advance(10 * 60)

        assert (await directory.get_room(room.id)).room["participantCount"] == 1

    async def test_join_validates_input(self, directory, room):
        with pytest.raises(ValidationError):
            await directory.join_room(room.id, "A", "peer-a")
        with pytest.raises(ValidationError):
            await directory.join_room(room.id, "Ana", "")


class TestEndRoom:
    """Tests for end_room."""

    async def test_end_room(self, directory, room):
        pid = await directory.join_room(room.id, "Ana", "peer-ana")
        await directory.approve_participant(room.id, pid, SECRET)
        await directory.set_host_peer_id(room.id, SECRET, "peer-host")

        await directory.end_room(room.id, SECRET)

        view = await directory.get_room(room.id, SECRET)
        assert view.room["status"] == "ended"
        assert view.room["participants"] == []
        assert view.host_peer_id is None

    async def test_join_after_end(self, directory, room):
        """Joining an ended room is an inactive-room error."""
        await directory.end_room(room.id, SECRET)

        with pytest.raises(RoomInactiveError):
            await directory.join_room(room.id, "Ana", "peer-ana")

    async def test_inactive_is_not_found(self, directory, room):
        """Callers catching NotFoundError also see ended rooms."""
        await directory.end_room(room.id, SECRET)
        with pytest.raises(NotFoundError):
            await directory.join_room(room.id, "Ana", "peer-ana")

    async def test_set_host_after_end(self, directory, room):
        await directory.end_room(room.id, SECRET)
        with pytest.raises(RoomInactiveError):
            await directory.set_host_peer_id(room.id, SECRET, "peer-host")


class TestSessionRoomSerialization:
    """SessionRoom JSON persistence."""

    def test_json_round_trip_preserves_roster(self):
        room = SessionRoom(id="ROOM0001", title="Standup", host_secret_hash="x", max_participants=5)
        room.host_peer_id = "peer-host"

        restored = SessionRoom.from_json(room.to_json())

        assert restored == room
