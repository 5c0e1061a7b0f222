"""Multi-party session manager.

A SessionContext owns everything one client needs for one meeting: the
transport, the local media capture, the peer connections and calls, the
host's waiting room and the connection state machine. A context is used
for exactly one session (hosting or joining); after `leave()` or any other
move to `disconnected` it is closed and every resource it held is released.

Usage:
    ctx = SessionContext(transport, capture, directory=client)
    ctx.subscribe(render)
    await ctx.start_hosting(room_id, secret, "Alice")
    ...
    await ctx.approve_participant(peer_id)
    await ctx.leave()

All handlers run on one event loop. Any handler that awaits re-checks that
the context is still open and that the peer it works on is still present
before applying the result.
"""

import asyncio
import dataclasses
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Coroutine, Optional

from huddle.admission import JOIN_EXPIRED_REASON, WaitingEntry, WaitingRoom
from huddle.client import DirectoryClient
from huddle.config import SessionConfig
from huddle.errors import HuddleError, TransportFailure
from huddle.media import AUDIO, VIDEO, GatedTrack, MediaCapture, MediaStream
from huddle.messages import MessageDispatcher, encode
from huddle.proto.huddle import (
    ActivePeers,
    ChatMessage,
    JoinAccepted,
    JoinRejected,
    JoinRequest,
    PeerInfo,
    PeerLeft,
    StatusUpdate,
)
from huddle.state import ConnectionState, ConnectionStateMachine, default_timeouts
from huddle.track_monitor import TrackMonitor
from huddle.transport.base import DataConnection, MediaCall, Transport

logger = logging.getLogger(__name__)

ROLE_HOST = "host"
ROLE_PARTICIPANT = "participant"

MEDIA_ERROR = "Could not access camera/microphone"
REJECTED_REASON = "Host rejected your request"
HOST_CLOSED_ERROR = "Connection to host closed"
MAX_NAME_LENGTH = 50
MAX_CHAT_LENGTH = 2000
DEFAULT_GUEST_NAME = "Guest"
SYSTEM_SENDER = "system"


@dataclass
class Participant:
    """A roster entry, local or remote.

    `participant_id` is the directory record id; the host keeps it for
    admitted peers so it can remove the record when they leave.
    """

    peer_id: str
    name: str
    role: str = ROLE_PARTICIPANT
    is_local: bool = False
    has_audio: bool = True
    has_video: bool = True
    is_screen_sharing: bool = False
    stream: Optional[MediaStream] = None
    participant_id: str | None = None


@dataclass
class ChatEntry:
    """One line of meeting chat."""

    id: str
    sender_id: str
    sender_name: str
    text: str
    timestamp: float
    is_system: bool = False


@dataclass
class LocalSessionState:
    """Observable state of one SessionContext."""

    connection_state: ConnectionState = ConnectionState.WAITING
    participants: list[Participant] = field(default_factory=list)
    waiting_peers: list[WaitingEntry] = field(default_factory=list)
    messages: list[ChatEntry] = field(default_factory=list)
    audio_muted: bool = False
    video_muted: bool = False
    screen_sharing: bool = False
    error: str | None = None
    role: str | None = None
    room_id: str | None = None
    local_peer_id: str | None = None

    def find(self, peer_id: str) -> Participant | None:
        for participant in self.participants:
            if participant.peer_id == peer_id:
                return participant
        return None

    def snapshot(self) -> "LocalSessionState":
        """Copy safe to hand to observers."""
        return dataclasses.replace(
            self,
            participants=[dataclasses.replace(p) for p in self.participants],
            waiting_peers=list(self.waiting_peers),
            messages=list(self.messages),
        )


StateObserver = Callable[[LocalSessionState], None]


def clean_name(name: str | None) -> str:
    name = (name or "").strip()[:MAX_NAME_LENGTH]
    return name or DEFAULT_GUEST_NAME


class SessionContext:
    """One client's multi-party session."""

    def __init__(
        self,
        transport: Transport,
        media_capture: MediaCapture | None = None,
        directory: DirectoryClient | None = None,
        config: SessionConfig | None = None,
        screen_capture: MediaCapture | None = None,
        monitor_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize context.

        Args:
            transport: Peer transport (not yet opened).
            media_capture: Local camera/microphone source; None for no media.
            directory: Server client for room registration and approvals.
            config: Session timeouts and intervals.
            screen_capture: Display source for screen sharing; None disables it.
            monitor_sleep: Sleep used by the track monitor (for testing).
        """
        self._transport = transport
        self._capture = media_capture
        self._screen_capture = screen_capture
        self._directory = directory
        self._config = config or SessionConfig()

        self.state = LocalSessionState()
        self._observers: list[StateObserver] = []

        self._machine = ConnectionStateMachine(
            timeouts=default_timeouts(
                waiting=self._config.waiting_timeout,
                connecting=self._config.connect_timeout,
            )
        )
        self._machine.add_listener(self._on_state_change)

        self._local_stream: MediaStream | None = None
        self._media_attempted = False
        self._screen_stream: MediaStream | None = None
        self._camera_source = None
        self._connections: dict[str, DataConnection] = {}
        self._calls: dict[str, MediaCall] = {}
        self._waiting = WaitingRoom(
            ttl=self._config.waiting_room_ttl, on_expired=self._on_waiting_expired
        )
        self._monitor = TrackMonitor(
            self._on_track_flags,
            interval=self._config.track_poll_interval,
            sleep=monitor_sleep,
        )
        self._dispatcher = MessageDispatcher()
        self._tasks: set[asyncio.Task] = set()
        self._cleanup_task: asyncio.Task | None = None
        self._closed = False

        self._name = ""
        self._auth_secret: str | None = None
        self._host_peer_id: str | None = None

    # =========================================================================
    # Observation
    # =========================================================================

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def connection_state(self) -> ConnectionState:
        return self._machine.state

    @property
    def local_stream(self) -> MediaStream | None:
        return self._local_stream

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        """Register an observer called synchronously on every change.

        Returns:
            Function that unsubscribes.
        """
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self) -> None:
        self.state.waiting_peers = self._waiting.entries()
        snapshot = self.state.snapshot()
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception as e:
                logger.error(f"Session observer error: {e}")

    def _on_state_change(
        self, old: ConnectionState, new: ConnectionState, error: str | None
    ) -> None:
        self.state.connection_state = new
        if error is not None:
            self.state.error = error
        if new == ConnectionState.DISCONNECTED:
            self._release_local()
            self._cleanup_task = asyncio.create_task(self._close_links())
        self._notify()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Session task failed: {task.exception()}")

    def _claim_role(self, role: str) -> None:
        if self._closed or self.state.role is not None:
            raise RuntimeError("Session context already used; create a new one")
        self.state.role = role
        self._machine.start()

    def _advance(self, *states: ConnectionState) -> None:
        for state in states:
            if self._closed:
                return
            self._machine.transition_to(state)

    def _local_participant(self, peer_id: str, role: str) -> Participant:
        return Participant(
            peer_id=peer_id,
            name=self._name,
            role=role,
            is_local=True,
            has_audio=self._has_local(AUDIO) and not self.state.audio_muted,
            has_video=self._has_local(VIDEO) and not self.state.video_muted,
            is_screen_sharing=self.state.screen_sharing,
            stream=self._local_stream,
        )

    def _refresh_local_participant(self) -> None:
        for participant in self.state.participants:
            if participant.is_local:
                participant.has_audio = self._has_local(AUDIO) and not self.state.audio_muted
                participant.has_video = self._has_local(VIDEO) and not self.state.video_muted
                participant.is_screen_sharing = self.state.screen_sharing

    def _open_peers(self, exclude: str | None = None) -> list[DataConnection]:
        """Open connections to admitted peers (for a participant: the host)."""
        peers = []
        for peer_id, connection in self._connections.items():
            if peer_id == exclude or not connection.is_open:
                continue
            if self.state.role == ROLE_HOST and self.state.find(peer_id) is None:
                continue
            peers.append(connection)
        return peers

    def _has_local(self, kind: str) -> bool:
        if self._local_stream is None:
            return False
        return any(t.kind == kind for t in self._local_stream.tracks)

    async def _send(self, connection: DataConnection, data: bytes) -> bool:
        try:
            await connection.send(data)
            return True
        except TransportFailure as e:
            logger.warning(f"Send to {connection.peer_id[:8]}... failed: {e}")
            return False

    def _watch_connection(self, connection: DataConnection) -> None:
        peer_id = connection.peer_id
        self._connections[peer_id] = connection

        async def on_message(data: bytes) -> None:
            if self._closed or self._connections.get(peer_id) is not connection:
                return
            await self._dispatcher.dispatch(peer_id, data)

        connection.on_message(on_message)
        connection.on_close(lambda: self._on_connection_closed(peer_id, connection))

    # =========================================================================
    # Media
    # =========================================================================

    async def initialize_media(self) -> MediaStream | None:
        """Acquire local media once per context.

        A failed capture records an error and the session continues
        without local media.
        """
        if self._local_stream is not None or self._media_attempted:
            return self._local_stream
        self._media_attempted = True
        if self._capture is None:
            return None

        try:
            stream = await self._capture.capture()
        except Exception as e:
            logger.warning(f"Media capture failed: {e}")
            self.state.error = MEDIA_ERROR
            self._notify()
            return None

        if self._closed:
            stream.stop()
            return None

        self._local_stream = stream
        for track in stream.audio_tracks():
            track.enabled = not self.state.audio_muted
        for track in stream.video_tracks():
            track.enabled = not self.state.video_muted
        self._notify()
        return stream

    def toggle_audio(self) -> bool:
        """Flip the local audio mute flag.

        Returns:
            New audio_muted value.
        """
        return self._toggle(AUDIO)

    def toggle_video(self) -> bool:
        """Flip the local video mute flag.

        While the screen is shared this stops sharing instead and the
        camera comes back unmuted.

        Returns:
            New video_muted value.
        """
        if self.state.screen_sharing:
            self.stop_screen_share()
            return self.state.video_muted
        return self._toggle(VIDEO)

    def _toggle(self, kind: str) -> bool:
        if kind == AUDIO:
            self.state.audio_muted = muted = not self.state.audio_muted
        else:
            self.state.video_muted = muted = not self.state.video_muted

        if self._local_stream is not None:
            for track in self._local_stream.tracks:
                if track.kind == kind:
                    track.enabled = not muted

        self._status_changed()
        return muted

    def _status_changed(self) -> None:
        self._refresh_local_participant()
        if not self._closed:
            self._spawn(self._broadcast_status())
        self._notify()

    async def _broadcast_status(self) -> None:
        data = encode(
            status_update=StatusUpdate(
                has_audio=self._has_local(AUDIO) and not self.state.audio_muted,
                has_video=self._has_local(VIDEO) and not self.state.video_muted,
                is_screen_sharing=self.state.screen_sharing,
            )
        )
        for connection in self._open_peers():
            await self._send(connection, data)

    def _local_video_gate(self) -> GatedTrack | None:
        if self._local_stream is None:
            return None
        for track in self._local_stream.video_tracks():
            if isinstance(track.source, GatedTrack) and not track.ended:
                return track.source
        return None

    async def start_screen_share(self) -> bool:
        """Send the screen instead of the camera on every call.

        The local video track's source is swapped in place, so calls that
        are already up switch without renegotiation.

        Returns:
            True if the screen is now shared.
        """
        if self._closed or self.state.screen_sharing or self._screen_capture is None:
            return False
        if self._local_video_gate() is None:
            logger.warning("Screen sharing needs a local video track")
            return False

        try:
            screen = await self._screen_capture.capture(audio=False, video=True)
        except Exception as e:
            logger.warning(f"Screen capture failed: {e}")
            return False
        gate = self._local_video_gate()
        sources = [t.source for t in screen.video_tracks() if t.source is not None]
        if self._closed or self.state.screen_sharing or gate is None or not sources:
            screen.stop()
            return False

        screen_source = sources[0]
        self._camera_source = gate.replace_source(screen_source)
        self._screen_stream = screen
        screen_source.on("ended", lambda: self._on_screen_ended(screen))

        for track in self._local_stream.video_tracks():
            track.enabled = True
        self.state.video_muted = False
        self.state.screen_sharing = True
        logger.info("Screen sharing started")
        self._status_changed()
        return True

    def stop_screen_share(self) -> bool:
        """Put the camera back on every call.

        Returns:
            True if sharing was stopped.
        """
        if not self.state.screen_sharing:
            return False
        self._restore_camera()
        self.state.screen_sharing = False
        self.state.video_muted = False
        if self._local_stream is not None:
            for track in self._local_stream.video_tracks():
                track.enabled = True
        logger.info("Screen sharing stopped")
        self._status_changed()
        return True

    def _on_screen_ended(self, screen: MediaStream) -> None:
        if self._screen_stream is screen and not self._closed:
            self.stop_screen_share()

    def _restore_camera(self) -> None:
        screen, self._screen_stream = self._screen_stream, None
        camera, self._camera_source = self._camera_source, None
        gate = self._local_video_gate()
        if gate is not None and camera is not None:
            gate.replace_source(camera)
        if screen is not None:
            screen.stop()

    # =========================================================================
    # Chat
    # =========================================================================

    async def send_message(self, text: str) -> ChatEntry | None:
        """Post a chat line to everyone in the meeting.

        A participant sends to the host, which relays it to the others.

        Returns:
            The entry added to `state.messages`, or None if nothing was sent.
        """
        text = (text or "").strip()[:MAX_CHAT_LENGTH]
        if not text or self._closed or self._machine.state != ConnectionState.ACTIVE:
            return None
        entry = ChatEntry(
            id=secrets.token_hex(8),
            sender_id=self.state.local_peer_id,
            sender_name=self._name,
            text=text,
            timestamp=time.time(),
        )
        self.state.messages.append(entry)
        self._notify()
        await self._send_chat(entry)
        return entry

    async def _send_chat(self, entry: ChatEntry, exclude: str | None = None) -> None:
        data = encode(
            chat_message=ChatMessage(
                id=entry.id,
                sender_id=entry.sender_id,
                sender_name=entry.sender_name,
                text=entry.text,
                timestamp=entry.timestamp,
            )
        )
        for connection in self._open_peers(exclude=exclude):
            await self._send(connection, data)

    async def _handle_chat_message(self, peer_id: str, message: ChatMessage) -> None:
        if self.state.role == ROLE_HOST:
            sender = self.state.find(peer_id)
            if sender is None:
                return
            # The host vouches for who sent it.
            sender_id, sender_name = peer_id, sender.name
        elif peer_id == self._host_peer_id:
            sender_id = message.sender_id or peer_id
            sender_name = clean_name(message.sender_name)
        else:
            return
        text = message.text.strip()[:MAX_CHAT_LENGTH]
        if not text:
            return
        entry = ChatEntry(
            id=message.id or secrets.token_hex(8),
            sender_id=sender_id,
            sender_name=sender_name,
            text=text,
            timestamp=message.timestamp or time.time(),
        )
        self.state.messages.append(entry)
        self._notify()
        if self.state.role == ROLE_HOST:
            await self._send_chat(entry, exclude=peer_id)

    def _add_system_message(self, text: str) -> None:
        self.state.messages.append(
            ChatEntry(
                id=secrets.token_hex(8),
                sender_id=SYSTEM_SENDER,
                sender_name="System",
                text=text,
                timestamp=time.time(),
                is_system=True,
            )
        )

    # =========================================================================
    # Host
    # =========================================================================

    async def start_hosting(self, room_id: str, auth_secret: str, name: str) -> None:
        """Open the transport and register as the room's host.

        Ends `active` with the host alone in the roster, or `disconnected`
        with an error.
        """
        self._claim_role(ROLE_HOST)
        self._name = clean_name(name)
        self._auth_secret = auth_secret
        self.state.room_id = room_id

        self._dispatcher.register("join_request", self._handle_join_request)
        self._dispatcher.register("status_update", self._handle_status_update)
        self._dispatcher.register("chat_message", self._handle_chat_message)
        self._transport.on_connection(self._on_inbound_connection)
        self._transport.on_call(self._on_inbound_call)

        await self.initialize_media()
        if self._closed:
            return
        self._advance(ConnectionState.CONNECTING)

        try:
            peer_id = await self._transport.open()
        except TransportFailure as e:
            self._machine.fail(f"Could not open transport: {e}")
            return
        if self._closed:
            return
        self.state.local_peer_id = peer_id

        if self._directory is not None:
            try:
                await self._directory.set_host_peer_id(room_id, auth_secret, peer_id)
            except HuddleError as e:
                self._machine.fail(f"Could not register as host: {e}")
                return
            if self._closed:
                return

        self.state.participants = [self._local_participant(peer_id, ROLE_HOST)]
        logger.info(f"Hosting room {room_id} as {peer_id}")
        self._advance(ConnectionState.CONNECTED, ConnectionState.ACTIVE)

    def _on_inbound_connection(self, connection: DataConnection) -> None:
        if self._closed:
            self._spawn(connection.close())
            return
        self._watch_connection(connection)

    async def _handle_join_request(self, peer_id: str, message: JoinRequest) -> None:
        if self.state.role != ROLE_HOST or self._closed:
            return
        connection = self._connections.get(peer_id)
        if connection is None or self.state.find(peer_id) is not None:
            return
        self._waiting.add(
            peer_id,
            clean_name(message.name),
            connection,
            participant_id=message.participant_id or None,
        )
        self._notify()

    async def approve_participant(self, peer_id: str) -> bool:
        """Admit a waiting peer.

        Sends JoinAccepted and the list of current participants (so the
        newcomer can call them), then calls the newcomer with local media.

        Returns:
            True if the peer is now in the roster.
        """
        if self.state.role != ROLE_HOST or self._closed:
            return False
        entry = self._waiting.approve(peer_id)
        if entry is None:
            return False
        self._notify()
        connection = entry.connection

        def still_here() -> bool:
            return not self._closed and self._connections.get(peer_id) is connection

        if not await self._send(connection, encode(join_accepted=JoinAccepted(host_name=self._name))):
            await self._drop_connection(peer_id, connection)
            return False

        existing = [
            PeerInfo(peer_id=p.peer_id, name=p.name)
            for p in self.state.participants
            if not p.is_local and p.peer_id != peer_id
        ]
        if existing and still_here():
            await self._send(connection, encode(active_peers=ActivePeers(peers=existing)))
        if not still_here():
            return False

        self.state.participants.append(
            Participant(peer_id=peer_id, name=entry.name, participant_id=entry.participant_id)
        )
        self._add_system_message(f"{entry.name} joined the meeting")
        self._notify()

        try:
            call = await self._transport.call(peer_id, self._local_stream, {"name": self._name})
        except TransportFailure as e:
            logger.warning(f"Could not call {entry.name!r}: {e}")
            call = None
        if not still_here() or self.state.find(peer_id) is None:
            if call is not None:
                await call.close()
            return False
        if call is not None:
            self._setup_call(peer_id, call, entry.name)

        if self._directory is not None and entry.participant_id:
            try:
                await self._directory.approve_participant(
                    self.state.room_id, entry.participant_id, self._auth_secret
                )
            except HuddleError as e:
                logger.warning(f"Directory approval for {entry.name!r} failed: {e}")
            if self.state.find(peer_id) is None:
                # Left while the approval was in flight.
                await self._forget_in_directory(entry.participant_id)
                return False

        logger.info(f"{entry.name!r} joined the meeting")
        return True

    async def reject_participant(self, peer_id: str) -> bool:
        """Refuse a waiting peer and close its connection.

        Returns:
            True if a waiting entry was rejected.
        """
        if self.state.role != ROLE_HOST or self._closed:
            return False
        entry = self._waiting.reject(peer_id)
        if entry is None:
            return False
        self._notify()
        await self._refuse(entry, REJECTED_REASON)
        return True

    def _on_waiting_expired(self, entry: WaitingEntry) -> None:
        if self._closed:
            return
        self._spawn(self._refuse(entry, JOIN_EXPIRED_REASON))
        self._notify()

    async def _refuse(self, entry: WaitingEntry, reason: str) -> None:
        connection = entry.connection
        if connection.is_open:
            await self._send(connection, encode(join_rejected=JoinRejected(reason=reason)))
        await self._drop_connection(entry.peer_id, connection)
        await self._forget_in_directory(entry.participant_id)

    async def _drop_connection(self, peer_id: str, connection: DataConnection) -> None:
        if self._connections.get(peer_id) is connection:
            del self._connections[peer_id]
        await connection.close()

    async def _forget_in_directory(self, participant_id: str | None) -> None:
        if self._directory is None or not participant_id or self._auth_secret is None:
            return
        try:
            await self._directory.remove_participant(
                self.state.room_id, participant_id, self._auth_secret
            )
        except HuddleError as e:
            logger.warning(f"Directory removal of {participant_id} failed: {e}")

    # =========================================================================
    # Participant
    # =========================================================================

    async def join_room(
        self, host_peer_id: str, name: str, participant_id: str | None = None
    ) -> None:
        """Connect to a host and ask to be admitted.

        Stays `connecting` until the host answers; JoinAccepted moves to
        `active`, JoinRejected or a closed host link to `disconnected`.
        """
        if self.state.role is None:
            self._claim_role(ROLE_PARTICIPANT)
        elif self.state.role != ROLE_PARTICIPANT or self._host_peer_id is not None:
            raise RuntimeError("Session context already used; create a new one")
        self._name = clean_name(name)
        self._host_peer_id = host_peer_id

        self._dispatcher.register("join_accepted", self._handle_join_accepted)
        self._dispatcher.register("join_rejected", self._handle_join_rejected)
        self._dispatcher.register("active_peers", self._handle_active_peers)
        self._dispatcher.register("peer_left", self._handle_peer_left)
        self._dispatcher.register("status_update", self._handle_status_update)
        self._dispatcher.register("chat_message", self._handle_chat_message)
        self._transport.on_connection(lambda c: self._spawn(c.close()))
        self._transport.on_call(self._on_inbound_call)

        await self.initialize_media()
        if self._closed:
            return
        if self._machine.state == ConnectionState.WAITING:
            self._advance(ConnectionState.CONNECTING)
        self._notify()

        try:
            local_id = await self._transport.open()
            connection = await self._transport.connect(host_peer_id, {"name": self._name})
        except TransportFailure as e:
            self._machine.fail(f"Could not reach host: {e}")
            return
        if self._closed:
            await connection.close()
            return
        self.state.local_peer_id = local_id

        self._watch_connection(connection)
        request = encode(
            join_request=JoinRequest(name=self._name, participant_id=participant_id or "")
        )
        connection.on_open(lambda: self._spawn(self._send(connection, request)))
        logger.info(f"Asked {host_peer_id} to join as {self._name!r}")

    async def join_by_code(self, code: str, name: str) -> str | None:
        """Resolve a meeting code, join the room in the directory, then connect.

        Returns:
            Directory participant id, or None if joining failed (the context
            is then `disconnected` with an error).
        """
        if self._directory is None:
            raise RuntimeError("join_by_code requires a directory client")
        self._claim_role(ROLE_PARTICIPANT)
        self._advance(ConnectionState.CONNECTING)
        self._notify()

        try:
            room_id = await self._directory.resolve_code(code)
            view = await self._directory.get_room(room_id)
            host_peer_id = view.get("hostPeerId")
            if not host_peer_id:
                self._machine.fail("Host is not connected yet")
                return None
            local_id = await self._transport.open()
            participant_id = await self._directory.join_room(room_id, name, local_id)
        except (HuddleError, TransportFailure) as e:
            self._machine.fail(str(e))
            return None
        if self._closed:
            return None

        self.state.room_id = room_id
        await self.join_room(host_peer_id, name, participant_id)
        return participant_id

    async def _handle_join_accepted(self, peer_id: str, message: JoinAccepted) -> None:
        if peer_id != self._host_peer_id or self._machine.state != ConnectionState.CONNECTING:
            return
        if self.state.find(peer_id) is None:
            self.state.participants.append(
                Participant(peer_id=peer_id, name=message.host_name or "Host", role=ROLE_HOST)
            )
        self.state.participants.insert(
            0, self._local_participant(self.state.local_peer_id, ROLE_PARTICIPANT)
        )
        logger.info(f"Admitted by {message.host_name or 'host'}")
        self._advance(ConnectionState.CONNECTED, ConnectionState.ACTIVE)

    async def _handle_join_rejected(self, peer_id: str, message: JoinRejected) -> None:
        if peer_id != self._host_peer_id:
            return
        self._machine.fail(message.reason or REJECTED_REASON)

    async def _handle_active_peers(self, peer_id: str, message: ActivePeers) -> None:
        if peer_id != self._host_peer_id:
            return
        for peer in message.peers:
            if peer.peer_id in (self.state.local_peer_id, self._host_peer_id):
                continue
            if self._closed:
                return
            if peer.peer_id in self._calls:
                continue
            try:
                call = await self._transport.call(
                    peer.peer_id, self._local_stream, {"name": self._name}
                )
            except TransportFailure as e:
                logger.warning(f"Could not call {peer.name!r}: {e}")
                continue
            if self._closed:
                await call.close()
                return
            self._setup_call(peer.peer_id, call, clean_name(peer.name))

    async def _handle_peer_left(self, peer_id: str, message: PeerLeft) -> None:
        if peer_id != self._host_peer_id:
            return
        await self._remove_peer(message.peer_id)

    # =========================================================================
    # Shared
    # =========================================================================

    async def _handle_status_update(self, peer_id: str, message: StatusUpdate) -> None:
        participant = self.state.find(peer_id)
        if participant is None or participant.is_local:
            return
        participant.has_audio = message.has_audio
        participant.has_video = message.has_video
        participant.is_screen_sharing = message.is_screen_sharing
        self._notify()

    def _on_inbound_call(self, call: MediaCall) -> None:
        if self._closed:
            self._spawn(call.close())
            return
        peer_id = call.peer_id
        if self.state.role == ROLE_HOST:
            admitted = self.state.find(peer_id) is not None
        else:
            admitted = peer_id == self._host_peer_id or self._machine.state in (
                ConnectionState.CONNECTED,
                ConnectionState.ACTIVE,
            )
        if not admitted:
            logger.info(f"Refusing call from unadmitted peer {peer_id[:8]}...")
            self._spawn(call.close())
            return
        name = clean_name(call.metadata.get("name"))
        self._spawn(self._answer(call, name))

    async def _answer(self, call: MediaCall, name: str) -> None:
        try:
            await call.answer(self._local_stream)
        except TransportFailure as e:
            logger.warning(f"Could not answer {call.peer_id[:8]}...: {e}")
            return
        if self._closed:
            await call.close()
            return
        self._setup_call(call.peer_id, call, name)

    def _setup_call(self, peer_id: str, call: MediaCall, name: str) -> None:
        previous = self._calls.get(peer_id)
        if previous is not None and previous is not call:
            self._spawn(previous.close())
        self._calls[peer_id] = call

        participant = self.state.find(peer_id)
        if participant is None:
            role = ROLE_HOST if peer_id == self._host_peer_id else ROLE_PARTICIPANT
            participant = Participant(peer_id=peer_id, name=name, role=role)
            self.state.participants.append(participant)
        elif peer_id == self._host_peer_id and name and participant.name == "Host":
            participant.name = name

        call.on_stream(lambda stream: self._on_remote_stream(peer_id, call, stream))
        call.on_close(lambda: self._on_call_closed(peer_id, call))
        self._notify()

    def _on_remote_stream(self, peer_id: str, call: MediaCall, stream: MediaStream) -> None:
        if self._closed or self._calls.get(peer_id) is not call:
            return
        participant = self.state.find(peer_id)
        if participant is None:
            return
        participant.stream = stream
        participant.has_audio, participant.has_video = self._monitor.watch(peer_id, stream)
        self._notify()

    def _on_track_flags(self, peer_id: str, has_audio: bool, has_video: bool) -> None:
        participant = self.state.find(peer_id)
        if self._closed or participant is None:
            return
        participant.has_audio = has_audio
        participant.has_video = has_video
        self._notify()

    def _on_call_closed(self, peer_id: str, call: MediaCall) -> None:
        if self._calls.get(peer_id) is not call:
            return
        del self._calls[peer_id]
        self._monitor.unwatch(peer_id)
        if self._closed:
            return
        if peer_id in self._connections:
            participant = self.state.find(peer_id)
            if participant is not None:
                participant.stream = None
            self._notify()
        else:
            self._spawn(self._remove_peer(peer_id))

    def _on_connection_closed(self, peer_id: str, connection: DataConnection) -> None:
        if self._connections.get(peer_id) is not connection:
            return
        del self._connections[peer_id]
        if self._closed:
            return

        if self.state.role == ROLE_PARTICIPANT:
            if peer_id == self._host_peer_id:
                self._machine.fail(HOST_CLOSED_ERROR)
            return

        entry = self._waiting.claim(peer_id)
        if entry is not None:
            logger.info(f"Waiting peer {entry.name!r} left")
            self._spawn(self._forget_in_directory(entry.participant_id))
            self._notify()
            return
        participant = self.state.find(peer_id)
        if participant is not None:
            logger.info(f"{participant.name!r} left the meeting")
            self._spawn(self._remove_peer(peer_id))

    async def _remove_peer(self, peer_id: str) -> None:
        """Drop a peer from the roster and close its call; hosts tell the rest."""
        participant = self.state.find(peer_id)
        if self._closed or participant is None:
            return
        self._remove_from_roster(peer_id)
        self._monitor.unwatch(peer_id)
        if self.state.role == ROLE_HOST:
            self._add_system_message(f"{participant.name} left the meeting")
        self._notify()

        call = self._calls.pop(peer_id, None)
        if call is not None:
            await call.close()

        if self.state.role == ROLE_HOST:
            notice = encode(peer_left=PeerLeft(peer_id=peer_id))
            for connection in self._open_peers():
                await self._send(connection, notice)
            await self._forget_in_directory(participant.participant_id)

    def _remove_from_roster(self, peer_id: str) -> None:
        self.state.participants = [p for p in self.state.participants if p.peer_id != peer_id]

    # =========================================================================
    # Teardown
    # =========================================================================

    async def leave(self) -> None:
        """Stop media, close every connection and call, close the transport.

        Always ends `disconnected` with an empty roster. The context cannot
        be reused afterwards.
        """
        if not self._machine.is_terminal:
            logger.info("Leaving session")
            self._machine.close()
        if self._cleanup_task is not None:
            await self._cleanup_task

    def _release_local(self) -> None:
        """Synchronous part of teardown: runs before observers hear of it."""
        if self._closed:
            return
        self._closed = True
        self._restore_camera()
        self.state.screen_sharing = False
        if self._local_stream is not None:
            self._local_stream.stop()
        self._waiting.clear()
        self.state.participants = []
        self.state.waiting_peers = []
        self.state.messages = []

    async def _close_links(self) -> None:
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        await self._monitor.stop()

        connections = list(self._connections.values())
        calls = list(self._calls.values())
        self._connections.clear()
        self._calls.clear()
        for connection in connections:
            await connection.close()
        for call in calls:
            await call.close()
        await self._transport.close()
        logger.info("Session resources released")
