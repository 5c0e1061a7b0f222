"""aiortc transport with SDP exchanged through the server's signaling relay.

Each data connection and each media call is its own RTCPeerConnection.
The initiator posts an `offer` addressed to the remote peer id and waits
for the matching `answer` (same connectionId); both sides poll their
mailbox with DirectoryClient.fetch_signals. A `bye` closes the other end.
"""

import asyncio
import logging
import secrets
from typing import Any, Callable, Optional

from huddle.client import DirectoryClient
from huddle.config import Config
from huddle.errors import StoreUnavailableError, TransportFailure
from huddle.media import MediaStream, MediaTrack
from huddle.peer import PeerConnection
from huddle.relay import SignalMessage
from huddle.transport.base import EventCallback, MessageCallback

logger = logging.getLogger(__name__)

KIND_DATA = "data"
KIND_MEDIA = "media"


def _local_tracks(stream: Optional[MediaStream]) -> list:
    if stream is None:
        return []
    return [t.source for t in stream.tracks if t.source is not None and not t.ended]


class RtcDataConnection:
    """Data connection over one PeerConnection's negotiated channel."""

    def __init__(
        self,
        transport: "RtcTransport",
        peer: PeerConnection,
        peer_id: str,
        connection_id: str,
        metadata: dict[str, Any],
    ):
        self._transport = transport
        self._peer = peer
        self._peer_id = peer_id
        self._connection_id = connection_id
        self._metadata = metadata
        self._opened = False
        self._closed = False
        self._open_callback: EventCallback | None = None
        self._close_callback: EventCallback | None = None
        self._waiter: asyncio.Task | None = None
        peer.on_close(self._handle_close)

    @property
    def peer_id(self) -> str:
        return self._peer_id

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def metadata(self) -> dict[str, Any]:
        return self._metadata

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed and self._peer.is_open

    def on_open(self, callback: EventCallback) -> None:
        self._open_callback = callback
        if self._opened and not self._closed:
            asyncio.get_running_loop().call_soon(callback)

    def on_message(self, callback: MessageCallback) -> None:
        self._peer.on_message(callback)

    def on_close(self, callback: EventCallback) -> None:
        self._close_callback = callback

    def start(self, timeout: float) -> None:
        """Wait in the background for the channel to open."""
        self._waiter = asyncio.create_task(self._wait_open(timeout))

    async def _wait_open(self, timeout: float) -> None:
        try:
            await self._peer.wait_connected(timeout=timeout)
        except TransportFailure as e:
            logger.warning(f"Connection to {self._peer_id[:8]}... failed: {e}")
            await self.close()
            return
        if self._closed:
            return
        self._opened = True
        if self._open_callback is not None:
            self._open_callback()

    async def send(self, data: bytes) -> None:
        if self._closed:
            raise TransportFailure(f"Connection to {self._peer_id} is closed")
        await self._peer.send(data)

    def _handle_close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._transport._forget(self._connection_id)
        if self._close_callback is not None:
            self._close_callback()

    async def close(self) -> None:
        if self._closed:
            return
        if self._waiter is not None and not self._waiter.done():
            self._waiter.cancel()
        await self._transport._send_bye(self._peer_id, self._connection_id)
        await self._peer.close()
        self._handle_close()


class RtcMediaCall:
    """Media call over a PeerConnection carrying audio/video tracks."""

    def __init__(
        self,
        transport: "RtcTransport",
        peer: PeerConnection,
        peer_id: str,
        connection_id: str,
        metadata: dict[str, Any],
        offer_sdp: str | None = None,
    ):
        self._transport = transport
        self._peer = peer
        self._peer_id = peer_id
        self._connection_id = connection_id
        self._metadata = metadata
        self._offer_sdp = offer_sdp
        self._remote_stream = MediaStream()
        self._stream_delivered = False
        self._closed = False
        self._stream_callback: Callable[[MediaStream], None] | None = None
        self._close_callback: EventCallback | None = None
        peer.on_track(self._handle_track)
        peer.on_close(self._handle_close)

    @property
    def peer_id(self) -> str:
        return self._peer_id

    @property
    def metadata(self) -> dict[str, Any]:
        return self._metadata

    async def answer(self, stream: Optional[MediaStream]) -> None:
        if self._offer_sdp is None:
            raise TransportFailure("Only inbound calls can be answered")
        if self._closed:
            raise TransportFailure(f"Call from {self._peer_id} is closed")
        answer_sdp = await self._peer.accept_offer(self._offer_sdp, _local_tracks(stream))
        self._offer_sdp = None
        await self._transport._post(
            SignalMessage(
                sender=self._transport.peer_id,
                recipient=self._peer_id,
                kind="answer",
                connection_id=self._connection_id,
                sdp=answer_sdp,
            )
        )

    def _handle_track(self, track) -> None:
        self._remote_stream.add_track(MediaTrack(track.kind, track))
        if self._stream_delivered:
            return
        self._stream_delivered = True
        if self._stream_callback is not None:
            self._stream_callback(self._remote_stream)

    def on_stream(self, callback: Callable[[MediaStream], None]) -> None:
        self._stream_callback = callback
        if self._stream_delivered:
            asyncio.get_running_loop().call_soon(callback, self._remote_stream)

    def on_close(self, callback: EventCallback) -> None:
        self._close_callback = callback

    def _handle_close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._transport._forget(self._connection_id)
        if self._close_callback is not None:
            self._close_callback()

    async def close(self) -> None:
        if self._closed:
            return
        await self._transport._send_bye(self._peer_id, self._connection_id)
        await self._peer.close()
        self._handle_close()


class RtcTransport:
    """Transport backed by aiortc and the HTTP signaling relay."""

    ANSWER_TIMEOUT = 30.0  # seconds to wait for the remote answer
    CONNECT_TIMEOUT = 30.0  # seconds for ICE/DTLS after the answer

    def __init__(
        self,
        client: DirectoryClient,
        stun_servers: list[str] | None = None,
        poll_interval: float = 1.0,
        peer_factory: Callable[[], PeerConnection] | None = None,
    ):
        """Initialize transport.

        Args:
            client: Client for the signaling relay.
            stun_servers: STUN URLs for every peer connection.
            poll_interval: Seconds between mailbox polls.
            peer_factory: Creates PeerConnections (for testing).
        """
        self._client = client
        self._stun_servers = stun_servers or []
        self._poll_interval = poll_interval
        self._peer_factory = peer_factory or self._default_peer_factory
        self._peer_id: str | None = None
        self._poll_task: asyncio.Task | None = None
        self._pending_answers: dict[str, asyncio.Future] = {}
        self._links: dict[str, RtcDataConnection | RtcMediaCall] = {}
        self._connection_callback: Callable[[RtcDataConnection], None] | None = None
        self._call_callback: Callable[[RtcMediaCall], None] | None = None
        self._closed = False

    @classmethod
    def from_config(cls, client: DirectoryClient, config: Config) -> "RtcTransport":
        """Build a transport using the configured STUN servers and poll interval."""
        return cls(
            client,
            stun_servers=config.stun_servers,
            poll_interval=config.session.signal_poll_interval,
        )

    def _default_peer_factory(self) -> PeerConnection:
        return PeerConnection(stun_servers=self._stun_servers)

    @property
    def peer_id(self) -> str | None:
        return self._peer_id

    @property
    def stun_servers(self) -> list[str]:
        return self._stun_servers

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    async def open(self) -> str:
        if self._closed:
            raise TransportFailure("Transport is closed")
        if self._peer_id is None:
            self._peer_id = f"rtc-{secrets.token_hex(8)}"
            self._poll_task = asyncio.create_task(self._poll_loop())
            logger.info(f"RTC transport open as {self._peer_id}")
        return self._peer_id

    def on_connection(self, callback: Callable[[RtcDataConnection], None]) -> None:
        self._connection_callback = callback

    def on_call(self, callback: Callable[[RtcMediaCall], None]) -> None:
        self._call_callback = callback

    def _require_open(self) -> str:
        if self._peer_id is None or self._closed:
            raise TransportFailure("Transport is not open")
        return self._peer_id

    async def _post(self, message: SignalMessage) -> None:
        try:
            await self._client.post_signal(message)
        except StoreUnavailableError as e:
            raise TransportFailure(f"Signaling failed: {e}") from e

    async def _send_bye(self, peer_id: str, connection_id: str) -> None:
        if self._peer_id is None:
            return
        try:
            await self._client.post_signal(
                SignalMessage(
                    sender=self._peer_id,
                    recipient=peer_id,
                    kind="bye",
                    connection_id=connection_id,
                )
            )
        except StoreUnavailableError as e:
            logger.debug(f"Could not send bye to {peer_id[:8]}...: {e}")

    async def _offer(
        self,
        peer_id: str,
        kind: str,
        metadata: dict[str, Any],
        stream: Optional[MediaStream] = None,
    ) -> tuple[PeerConnection, str]:
        local_id = self._require_open()
        connection_id = secrets.token_hex(8)
        peer = self._peer_factory()
        offer_sdp = await peer.create_offer(_local_tracks(stream))

        future = asyncio.get_running_loop().create_future()
        self._pending_answers[connection_id] = future
        try:
            await self._post(
                SignalMessage(
                    sender=local_id,
                    recipient=peer_id,
                    kind="offer",
                    connection_id=connection_id,
                    sdp=offer_sdp,
                    metadata={"type": kind, **metadata},
                )
            )
            async with asyncio.timeout(self.ANSWER_TIMEOUT):
                answer_sdp = await future
        except (TimeoutError, TransportFailure) as e:
            await peer.close()
            raise TransportFailure(f"No answer from {peer_id}: {e}") from e
        finally:
            self._pending_answers.pop(connection_id, None)

        await peer.set_remote_description(answer_sdp, "answer")
        return peer, connection_id

    async def connect(
        self, peer_id: str, metadata: dict[str, Any] | None = None
    ) -> RtcDataConnection:
        metadata = dict(metadata or {})
        peer, connection_id = await self._offer(peer_id, KIND_DATA, metadata)
        connection = RtcDataConnection(self, peer, peer_id, connection_id, metadata)
        self._links[connection_id] = connection
        connection.start(self.CONNECT_TIMEOUT)
        return connection

    async def call(
        self,
        peer_id: str,
        stream: Optional[MediaStream],
        metadata: dict[str, Any] | None = None,
    ) -> RtcMediaCall:
        metadata = dict(metadata or {})
        peer, connection_id = await self._offer(peer_id, KIND_MEDIA, metadata, stream)
        call = RtcMediaCall(self, peer, peer_id, connection_id, metadata)
        self._links[connection_id] = call
        return call

    async def _poll_loop(self) -> None:
        while not self._closed:
            try:
                messages = await self._client.fetch_signals(self._peer_id)
            except StoreUnavailableError as e:
                logger.warning(f"Signal poll failed: {e}")
                messages = []
            for message in messages:
                await self._handle_signal(message)
            await asyncio.sleep(self._poll_interval)

    async def _handle_signal(self, message: SignalMessage) -> None:
        if message.kind == "answer":
            future = self._pending_answers.get(message.connection_id)
            if future is not None and not future.done():
                future.set_result(message.sdp)
            return

        if message.kind == "bye":
            link = self._links.get(message.connection_id)
            if link is not None:
                await link._peer.close()
            return

        metadata = dict(message.metadata)
        kind = metadata.pop("type", KIND_DATA)
        peer = self._peer_factory()

        if kind == KIND_MEDIA:
            call = RtcMediaCall(
                self, peer, message.sender, message.connection_id, metadata, message.sdp
            )
            self._links[message.connection_id] = call
            if self._call_callback is None:
                await call.close()
                return
            self._call_callback(call)
            return

        try:
            answer_sdp = await peer.accept_offer(message.sdp)
            await self._post(
                SignalMessage(
                    sender=self._peer_id,
                    recipient=message.sender,
                    kind="answer",
                    connection_id=message.connection_id,
                    sdp=answer_sdp,
                )
            )
        except TransportFailure as e:
            logger.warning(f"Could not answer {message.sender[:8]}...: {e}")
            await peer.close()
            return

        connection = RtcDataConnection(
            self, peer, message.sender, message.connection_id, metadata
        )
        self._links[message.connection_id] = connection
        connection.start(self.CONNECT_TIMEOUT)
        if self._connection_callback is None:
            await connection.close()
            return
        self._connection_callback(connection)

    def _forget(self, connection_id: str) -> None:
        self._links.pop(connection_id, None)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
        for link in list(self._links.values()):
            await link.close()
        for future in self._pending_answers.values():
            if not future.done():
                future.cancel()
        logger.info(f"RTC transport {self._peer_id} closed")
