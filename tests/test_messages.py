"""Tests for session message framing and dispatch."""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from huddle.errors import ValidationError
from huddle.messages import MessageDispatcher, decode, encode
from huddle.proto.huddle import (
    ActivePeers,
    JoinRequest,
    PeerInfo,
    SessionMessage,
    StatusUpdate,
)


class TestFraming:
    """Tests for encode/decode."""

    def test_decode_names_kind(self):
        """The set oneof field is reported as the message kind."""
        kind, message = decode(encode(join_request=JoinRequest(name="Ana", participant_id="P1")))

        assert kind == "join_request"
        assert message.name == "Ana"
        assert message.participant_id == "P1"

    def test_nested_messages(self):
        data = encode(active_peers=ActivePeers(peers=[PeerInfo(peer_id="p1", name="Bo")]))

        kind, message = decode(data)

        assert kind == "active_peers"
        assert [p.peer_id for p in message.peers] == ["p1"]

    def test_all_false_status_still_has_kind(self):
        """A status update with both flags off is still a status update."""
        kind, message = decode(encode(status_update=StatusUpdate(has_audio=False, has_video=False)))

        assert kind == "status_update"
        assert message.has_audio is False

    def test_encode_requires_one_kind(self):
        with pytest.raises(ValueError):
            encode()
        with pytest.raises(ValueError):
            encode(
                join_request=JoinRequest(name="Ana"),
                status_update=StatusUpdate(),
            )

    def test_empty_frame(self):
        """A frame with no payload is rejected."""
        with pytest.raises(ValidationError):
            decode(bytes(SessionMessage()))

    def test_garbage_frame(self):
        with pytest.raises(ValidationError):
            decode(b"\xff\xff\xff\xff")


class TestMessageDispatcher:
    """Tests for MessageDispatcher."""

    async def test_routes_to_async_handler(self):
        dispatcher = MessageDispatcher()
        handler = AsyncMock()
        dispatcher.register("join_request", handler)

        await dispatcher.dispatch("peer-ana", encode(join_request=JoinRequest(name="Ana")))

        handler.assert_awaited_once()
        peer_id, message = handler.await_args.args
        assert peer_id == "peer-ana"
        assert message.name == "Ana"

    async def test_routes_to_sync_handler(self):
        dispatcher = MessageDispatcher()
        handler = Mock()
        dispatcher.register("status_update", handler)

        await dispatcher.dispatch("peer-ana", encode(status_update=StatusUpdate(has_audio=True)))

        handler.assert_called_once()

    async def test_unknown_kind_ignored(self):
        dispatcher = MessageDispatcher()
        assert dispatcher.has_handler("peer_left") is False

        await dispatcher.dispatch("peer-ana", encode(join_request=JoinRequest(name="Ana")))

    async def test_malformed_frame_dropped(self):
        dispatcher = MessageDispatcher()
        handler = AsyncMock()
        dispatcher.register("join_request", handler)

        await dispatcher.dispatch("peer-ana", b"\xff\xff\xff")

        handler.assert_not_awaited()

    async def test_handler_error_contained(self):
        """A failing handler never propagates to the caller."""
        dispatcher = MessageDispatcher()
        dispatcher.register("join_request", AsyncMock(side_effect=RuntimeError("boom")))

        await dispatcher.dispatch("peer-ana", encode(join_request=JoinRequest(name="Ana")))

    async def test_handler_timeout(self):
        dispatcher = MessageDispatcher(handler_timeout=0.01)

        async def slow(peer_id, message):
            await asyncio.sleep(1)

        dispatcher.register("join_request", slow)

        await dispatcher.dispatch("peer-ana", encode(join_request=JoinRequest(name="Ana")))
