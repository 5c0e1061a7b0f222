"""Tests for the aiortc transport's signaling flow (peers are faked)."""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import eventually
from huddle.config import Config, SessionConfig
from huddle.errors import StoreUnavailableError, TransportFailure
from huddle.relay import SignalMessage
from huddle.transport.rtc import RtcTransport


class FakeSignalClient:
    """Relay client that records posts and serves a scripted inbox."""

    def __init__(self):
        self.posted: list[SignalMessage] = []
        self.inbox: list[SignalMessage] = []
        self.failures = 0

    async def post_signal(self, message):
        self.posted.append(message)

    async def fetch_signals(self, peer_id):
        if self.failures:
            self.failures -= 1
            raise StoreUnavailableError("relay down")
        messages, self.inbox = self.inbox, []
        return messages

    def posted_kinds(self):
        return [m.kind for m in self.posted]


class FakePeer:
    """Stands in for PeerConnection without any ICE/DTLS."""

    def __init__(self):
        self.create_offer = AsyncMock(return_value="v=0 offer")
        self.accept_offer = AsyncMock(return_value="v=0 answer")
        self.set_remote_description = AsyncMock()
        self.wait_connected = AsyncMock()
        self.send = AsyncMock()
        self.is_open = True
        self.closed = False
        self._close_callback = None

    def on_close(self, callback):
        self._close_callback = callback

    def on_message(self, callback):
        self.message_callback = callback

    def on_track(self, callback):
        self.track_callback = callback

    async def close(self):
        if self.closed:
            return
        self.closed = True
        if self._close_callback:
            self._close_callback()


@pytest.fixture
def client():
    return FakeSignalClient()


@pytest.fixture
def peers():
    return []


@pytest.fixture
async def transport(client, peers):
    def factory():
        peer = FakePeer()
        peers.append(peer)
        return peer

    transport = RtcTransport(client, poll_interval=0.01, peer_factory=factory)
    yield transport
    await transport.close()


def offer_from(sender, connection_id, kind, **metadata):
    return SignalMessage(
        sender=sender,
        recipient="",
        kind="offer",
        connection_id=connection_id,
        sdp="v=0 remote offer",
        metadata={"type": kind, **metadata},
    )


class TestOpen:
    def test_from_config(self, client):
        config = Config(
            stun_servers=["stun:stun.example.org:3478"],
            session=SessionConfig(signal_poll_interval=0.25),
        )

        transport = RtcTransport.from_config(client, config)

        assert transport.stun_servers == ["stun:stun.example.org:3478"]
        assert transport.poll_interval == 0.25

    async def test_default_peers_use_configured_stun(self, client):
        transport = RtcTransport.from_config(client, Config())

        peer = transport._peer_factory()

        assert peer.stun_servers == Config().stun_servers

    async def test_open_assigns_peer_id(self, transport):
        peer_id = await transport.open()

        assert peer_id.startswith("rtc-")
        assert await transport.open() == peer_id
        assert transport.peer_id == peer_id

    async def test_connect_before_open(self, transport):
        with pytest.raises(TransportFailure, match="not open"):
            await transport.connect("rtc-other")

    async def test_open_after_close(self, transport):
        await transport.close()

        with pytest.raises(TransportFailure):
            await transport.open()


class TestOutbound:
    """Offers we send and the answers that come back."""

    async def test_connect_applies_answer(self, transport, client, peers):
        local_id = await transport.open()
        task = asyncio.create_task(
            transport.connect("rtc-host", {"role": "participant"})
        )
        await eventually(lambda: client.posted_kinds() == ["offer"])

        offer = client.posted[0]
        assert offer.sender == local_id
        assert offer.recipient == "rtc-host"
        assert offer.sdp == "v=0 offer"
        assert offer.metadata == {"type": "data", "role": "participant"}

        client.inbox.append(
            SignalMessage(
                sender="rtc-host",
                recipient=local_id,
                kind="answer",
                connection_id=offer.connection_id,
                sdp="v=0 host answer",
            )
        )
        connection = await task

        peers[0].set_remote_description.assert_awaited_once_with("v=0 host answer", "answer")
        assert connection.peer_id == "rtc-host"
        assert connection.metadata == {"role": "participant"}
        opened = Mock()
        connection.on_open(opened)
        await eventually(lambda: opened.called)
        assert connection.is_open

    async def test_connect_without_answer(self, transport, peers):
        await transport.open()
        transport.ANSWER_TIMEOUT = 0.05

        with pytest.raises(TransportFailure, match="No answer"):
            await transport.connect("rtc-nobody")

        assert peers[0].closed

    async def test_call_carries_media_kind(self, transport, client):
        await transport.open()
        task = asyncio.create_task(transport.call("rtc-peer", None, {"name": "Ana"}))
        await eventually(lambda: client.posted_kinds() == ["offer"])
        offer = client.posted[0]
        assert offer.metadata == {"type": "media", "name": "Ana"}

        client.inbox.append(
            SignalMessage(
                sender="rtc-peer",
                recipient=offer.sender,
                kind="answer",
                connection_id=offer.connection_id,
                sdp="v=0 answer",
            )
        )
        call = await task

        assert call.peer_id == "rtc-peer"
        with pytest.raises(TransportFailure, match="inbound"):
            await call.answer(None)


class TestInbound:
    """Offers addressed to us."""

    async def test_data_offer_answered(self, transport, client, peers):
        local_id = await transport.open()
        received = []
        transport.on_connection(received.append)

        client.inbox.append(offer_from("rtc-guest", "c1", "data", role="participant"))
        await eventually(lambda: received)

        connection = received[0]
        assert connection.peer_id == "rtc-guest"
        assert connection.connection_id == "c1"
        assert connection.metadata == {"role": "participant"}
        peers[0].accept_offer.assert_awaited_once_with("v=0 remote offer")
        answer = client.posted[0]
        assert (answer.kind, answer.sender, answer.recipient) == ("answer", local_id, "rtc-guest")
        assert answer.sdp == "v=0 answer"

    async def test_data_offer_without_handler(self, transport, client, peers):
        await transport.open()

        client.inbox.append(offer_from("rtc-guest", "c1", "data"))
        await eventually(lambda: "bye" in client.posted_kinds())

        assert peers[0].closed

    async def test_media_offer_answered_on_request(self, transport, client, peers):
        await transport.open()
        calls = []
        transport.on_call(calls.append)

        client.inbox.append(offer_from("rtc-guest", "m1", "media", name="Ana"))
        await eventually(lambda: calls)

        call = calls[0]
        assert call.metadata == {"name": "Ana"}
        assert client.posted == []

        await call.answer(None)

        peers[0].accept_offer.assert_awaited_once_with("v=0 remote offer", [])
        assert client.posted_kinds() == ["answer"]

    async def test_remote_track_delivers_stream(self, transport, client, peers):
        await transport.open()
        calls = []
        transport.on_call(calls.append)
        client.inbox.append(offer_from("rtc-guest", "m1", "media"))
        await eventually(lambda: calls)

        streams = []
        calls[0].on_stream(streams.append)
        peers[0].track_callback(Mock(kind="audio"))
        peers[0].track_callback(Mock(kind="video"))

        assert len(streams) == 1
        assert [t.kind for t in streams[0].tracks] == ["audio", "video"]

    async def test_bye_closes_connection(self, transport, client, peers):
        await transport.open()
        received = []
        transport.on_connection(received.append)
        client.inbox.append(offer_from("rtc-guest", "c1", "data"))
        await eventually(lambda: received)
        closed = Mock()
        received[0].on_close(closed)

        client.inbox.append(
            SignalMessage(sender="rtc-guest", recipient="", kind="bye", connection_id="c1")
        )
        await eventually(lambda: closed.called)

        assert peers[0].closed
        with pytest.raises(TransportFailure, match="closed"):
            await received[0].send(b"late")

    async def test_poll_failure_is_retried(self, transport, client):
        await transport.open()
        received = []
        transport.on_connection(received.append)
        client.failures = 2

        client.inbox.append(offer_from("rtc-guest", "c1", "data"))
        await eventually(lambda: received)

        assert client.failures == 0


class TestClose:
    async def test_close_says_bye_to_links(self, transport, client, peers):
        await transport.open()
        received = []
        transport.on_connection(received.append)
        client.inbox.append(offer_from("rtc-guest", "c1", "data"))
        await eventually(lambda: received)

        await transport.close()
        await transport.close()

        assert client.posted_kinds() == ["answer", "bye"]
        assert client.posted[-1].recipient == "rtc-guest"
        assert peers[0].closed
