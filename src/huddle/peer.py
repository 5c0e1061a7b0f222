"""WebRTC peer connection wrapper."""

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)

from huddle.errors import TransportFailure

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = "huddle-data"


class PeerState(Enum):
    """State of a WebRTC peer connection."""

    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


class ConnectionTimer:
    """Track and log connection timing phases for debugging."""

    def __init__(self, label: str = "connection"):
        self._label = label
        self._start = time.perf_counter()
        self._marks: list[tuple[str, float]] = []

    def mark(self, phase: str) -> float:
        """Record a timing mark and return elapsed ms since start."""
        elapsed_ms = (time.perf_counter() - self._start) * 1000
        self._marks.append((phase, elapsed_ms))
        return elapsed_ms

    def log_mark(self, phase: str) -> None:
        elapsed_ms = self.mark(phase)
        logger.debug(f"[TIMING] {self._label}: {phase} @ {elapsed_ms:.1f}ms")

    def log_summary(self) -> None:
        if not self._marks:
            return
        summary = " | ".join(f"{phase}={ms:.0f}ms" for phase, ms in self._marks)
        logger.info(f"[TIMING] {self._label} summary: {summary}")


class PeerConnection:
    """WebRTC peer connection with a negotiated data channel and optional media."""

    def __init__(
        self,
        stun_servers: list[str] | None = None,
        pc_factory: Callable[[RTCConfiguration], RTCPeerConnection] | None = None,
        label: str = "webrtc",
    ):
        """Initialize peer connection.

        Args:
            stun_servers: List of STUN server URLs.
            pc_factory: Factory to create RTCPeerConnection (for testing).
            label: Name used in timing logs.
        """
        self.stun_servers = stun_servers or []
        self._pc_factory = pc_factory or self._default_pc_factory
        self._label = label
        self._state = PeerState.NEW
        self._pc: RTCPeerConnection | None = None
        self._channel = None
        self._timer: ConnectionTimer | None = None
        self._message_callback: Callable[[bytes], Awaitable[None]] | None = None
        self._close_callback: Callable[[], None] | None = None
        self._track_callback: Callable[[MediaStreamTrack], None] | None = None
        self._close_notified = False
        self._connected_event = asyncio.Event()
        self._channel_open_event = asyncio.Event()

    def _default_pc_factory(self, config: RTCConfiguration) -> RTCPeerConnection:
        """Create default RTCPeerConnection."""
        return RTCPeerConnection(configuration=config)

    @property
    def state(self) -> PeerState:
        """Current connection state."""
        return self._state

    def _notify_close(self) -> None:
        if self._close_notified:
            return
        self._close_notified = True
        if self._close_callback:
            self._close_callback()

    def _create_pc(self) -> None:
        """Create the underlying RTCPeerConnection and data channel."""
        self._timer = ConnectionTimer(self._label)
        self._timer.log_mark("pc_create_start")

        if self.stun_servers:
            config = RTCConfiguration(iceServers=[RTCIceServer(urls=self.stun_servers)])
        else:
            config = RTCConfiguration(iceServers=[])
        self._pc = self._pc_factory(config)

        timer = self._timer

        @self._pc.on("connectionstatechange")
        async def on_connection_state_change():
            state = self._pc.connectionState if self._pc else "closed"
            timer.log_mark(f"conn_{state}")

            if state == "connected":
                self._state = PeerState.CONNECTED
                self._connected_event.set()
            elif state == "failed":
                self._state = PeerState.FAILED
                self._notify_close()
            elif state == "disconnected":
                self._state = PeerState.DISCONNECTED
            elif state == "closed":
                self._state = PeerState.CLOSED
                self._notify_close()

        @self._pc.on("track")
        def on_track(track):
            logger.info(f"Remote {track.kind} track received")
            if self._track_callback:
                self._track_callback(track)

        # Negotiated channel: both sides create it with the same id
        self._channel = self._pc.createDataChannel(
            DATA_CHANNEL_LABEL,
            negotiated=True,
            id=0,
            ordered=True,
        )
        self._setup_channel(self._channel)

    def _setup_channel(self, channel) -> None:
        """Set up data channel handlers."""

        @channel.on("open")
        def on_open():
            self._timer.log_mark("channel_open")
            self._channel_open_event.set()

        if channel.readyState == "open":
            self._channel_open_event.set()

        @channel.on("message")
        async def on_message(message):
            if self._message_callback:
                if isinstance(message, str):
                    message = message.encode()
                await self._message_callback(message)

        @channel.on("close")
        def on_channel_close():
            logger.info("Data channel closed")
            self._notify_close()

    async def create_offer(self, tracks: list[MediaStreamTrack] | None = None) -> str:
        """Create SDP offer for an outgoing connection.

        Args:
            tracks: Local media tracks to send.

        Returns:
            Raw SDP offer string (starts with "v=0").
        """
        self._create_pc()
        for track in tracks or []:
            self._pc.addTrack(track)

        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        await self._wait_ice_gathering()

        self._state = PeerState.CONNECTING
        return self._pc.localDescription.sdp

    async def accept_offer(
        self, offer_sdp: str, tracks: list[MediaStreamTrack] | None = None
    ) -> str:
        """Accept SDP offer and return answer.

        Args:
            offer_sdp: Raw SDP offer string.
            tracks: Local media tracks to send back.

        Returns:
            Raw SDP answer string.
        """
        self._create_pc()

        offer = RTCSessionDescription(sdp=offer_sdp, type="offer")
        await self._pc.setRemoteDescription(offer)
        self._timer.log_mark("remote_desc_set")

        for track in tracks or []:
            self._pc.addTrack(track)

        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        await self._wait_ice_gathering()
        self._timer.log_mark("answer_ready")

        self._state = PeerState.CONNECTING
        return self._pc.localDescription.sdp

    async def set_remote_description(self, sdp: str, sdp_type: str = "answer") -> None:
        """Set remote SDP description."""
        if self._pc is None:
            raise TransportFailure("Peer connection not started")
        desc = RTCSessionDescription(sdp=sdp, type=sdp_type)
        await self._pc.setRemoteDescription(desc)

    async def _wait_ice_gathering(self, timeout: float = 10.0) -> None:
        """Wait for ICE gathering to complete."""
        if self._pc.iceGatheringState == "complete":
            return

        done = asyncio.Event()

        @self._pc.on("icegatheringstatechange")
        def on_ice_gathering_state_change():
            if self._pc.iceGatheringState == "complete":
                done.set()

        try:
            await asyncio.wait_for(done.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("ICE gathering timeout, proceeding anyway")

    async def wait_connected(self, timeout: float = 30.0) -> None:
        """Wait for connection and data channel to be established.

        Raises:
            TransportFailure: If connection times out.
        """
        try:
            await asyncio.wait_for(
                asyncio.gather(
                    self._connected_event.wait(),
                    self._channel_open_event.wait(),
                ),
                timeout=timeout,
            )
            if self._timer:
                self._timer.log_mark("fully_connected")
                self._timer.log_summary()
        except asyncio.TimeoutError:
            raise TransportFailure("Connection timeout") from None

    @property
    def is_open(self) -> bool:
        return (
            self._state == PeerState.CONNECTED
            and self._channel is not None
            and self._channel.readyState == "open"
        )

    async def send(self, data: bytes) -> None:
        """Send data over the data channel.

        Raises:
            TransportFailure: If not connected or channel not open.
        """
        if self._state != PeerState.CONNECTED:
            raise TransportFailure(f"Cannot send in state {self._state.value}")
        if not self._channel or self._channel.readyState != "open":
            raise TransportFailure("Data channel not open")
        self._channel.send(data)

    def on_message(self, callback: Callable[[bytes], Awaitable[None]]) -> None:
        """Register callback for incoming messages."""
        self._message_callback = callback

    def on_close(self, callback: Callable[[], None]) -> None:
        """Register callback for connection close."""
        self._close_callback = callback

    def on_track(self, callback: Callable[[MediaStreamTrack], None]) -> None:
        """Register callback for inbound media tracks."""
        self._track_callback = callback

    async def close(self) -> None:
        """Close the peer connection. Idempotent."""
        if self._state == PeerState.CLOSED:
            return
        if self._pc:
            await self._pc.close()
            self._pc = None
        self._state = PeerState.CLOSED
        self._notify_close()
        logger.info("Peer connection closed")

    async def __aenter__(self):
        """Enter async context."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context."""
        await self.close()
