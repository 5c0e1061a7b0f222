"""In-process transport.

A LoopbackBroker plays the role of the transport network: every
LoopbackTransport registered with it can connect to and call every other
one. Events are delivered in order on the running event loop, never
synchronously from inside the call that caused them, so handlers see the
same interleavings as with a real network transport.

Media calls hand the caller's MediaStream object itself to the callee (and
vice versa), so mute flags set on one side are visible on the other.
"""

import asyncio
import logging
import secrets
from typing import Any, Callable, Optional

from huddle.errors import TransportFailure
from huddle.media import MediaStream
from huddle.transport.base import EventCallback, MessageCallback

logger = logging.getLogger(__name__)

_CLOSE = object()


class LoopbackBroker:
    """Registry of in-process transports by peer id."""

    def __init__(self) -> None:
        self._transports: dict[str, "LoopbackTransport"] = {}

    def transport(self, peer_id: str | None = None) -> "LoopbackTransport":
        """Create a transport attached to this broker."""
        return LoopbackTransport(self, peer_id=peer_id)

    def register(self, transport: "LoopbackTransport", peer_id: str) -> None:
        if peer_id in self._transports:
            raise TransportFailure(f"Peer id already in use: {peer_id}")
        self._transports[peer_id] = transport

    def unregister(self, peer_id: str) -> None:
        self._transports.pop(peer_id, None)

    def lookup(self, peer_id: str) -> "LoopbackTransport":
        transport = self._transports.get(peer_id)
        if transport is None:
            raise TransportFailure(f"Peer unavailable: {peer_id}")
        return transport

    @property
    def peer_ids(self) -> list[str]:
        return list(self._transports)


class LoopbackConnection:
    """One end of an in-process data connection."""

    def __init__(self, owner: "LoopbackTransport", peer_id: str, metadata: dict[str, Any]):
        self._owner = owner
        self._peer_id = peer_id
        self._metadata = metadata
        self._remote: Optional["LoopbackConnection"] = None
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._pump: asyncio.Task | None = None
        self._open = False
        self._closed = False
        self._close_fired = False
        self._open_callback: EventCallback | None = None
        self._message_callback: MessageCallback | None = None
        self._close_callback: EventCallback | None = None

    @property
    def peer_id(self) -> str:
        return self._peer_id

    @property
    def metadata(self) -> dict[str, Any]:
        return self._metadata

    @property
    def is_open(self) -> bool:
        return self._open and not self._closed

    def on_open(self, callback: EventCallback) -> None:
        self._open_callback = callback
        if self.is_open:
            asyncio.get_running_loop().call_soon(callback)

    def on_message(self, callback: MessageCallback) -> None:
        self._message_callback = callback

    def on_close(self, callback: EventCallback) -> None:
        self._close_callback = callback

    def _set_open(self) -> None:
        if self._closed:
            return
        self._open = True
        self._pump = asyncio.create_task(self._run_pump())
        if self._open_callback is not None:
            self._open_callback()

    async def send(self, data: bytes) -> None:
        if not self.is_open or self._remote is None:
            raise TransportFailure(f"Connection to {self._peer_id} is closed")
        self._remote._inbox.put_nowait(bytes(data))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._inbox.put_nowait(_CLOSE)
        remote = self._remote
        if remote is not None and not remote._closed:
            remote._closed = True
            remote._inbox.put_nowait(_CLOSE)
            if not remote._open:
                remote._fire_close()
        if not self._open:
            self._fire_close()

    async def _run_pump(self) -> None:
        while True:
            item = await self._inbox.get()
            if item is _CLOSE:
                self._fire_close()
                return
            if self._message_callback is None:
                logger.debug(f"Dropping message from {self._peer_id}: no handler")
                continue
            try:
                await self._message_callback(item)
            except Exception as e:
                logger.error(f"Message handler error ({self._peer_id}): {e}")

    def _fire_close(self) -> None:
        if self._close_fired:
            return
        self._close_fired = True
        self._owner._forget_connection(self)
        if self._close_callback is not None:
            try:
                self._close_callback()
            except Exception as e:
                logger.error(f"Close handler error ({self._peer_id}): {e}")


class LoopbackCall:
    """One end of an in-process media call."""

    def __init__(
        self,
        owner: "LoopbackTransport",
        peer_id: str,
        metadata: dict[str, Any],
        local_stream: Optional[MediaStream],
    ):
        self._owner = owner
        self._peer_id = peer_id
        self._metadata = metadata
        self._local_stream = local_stream
        self._remote: Optional["LoopbackCall"] = None
        self._remote_stream: MediaStream | None = None
        self._closed = False
        self._stream_callback: Callable[[MediaStream], None] | None = None
        self._close_callback: EventCallback | None = None

    @property
    def peer_id(self) -> str:
        return self._peer_id

    @property
    def metadata(self) -> dict[str, Any]:
        return self._metadata

    @property
    def remote_stream(self) -> MediaStream | None:
        return self._remote_stream

    async def answer(self, stream: Optional[MediaStream]) -> None:
        if self._closed or self._remote is None:
            raise TransportFailure(f"Call from {self._peer_id} is closed")
        self._local_stream = stream
        loop = asyncio.get_running_loop()
        caller = self._remote
        if stream is not None:
            loop.call_soon(caller._deliver_stream, stream)
        if caller._local_stream is not None:
            loop.call_soon(self._deliver_stream, caller._local_stream)

    def on_stream(self, callback: Callable[[MediaStream], None]) -> None:
        self._stream_callback = callback
        if self._remote_stream is not None:
            asyncio.get_running_loop().call_soon(callback, self._remote_stream)

    def on_close(self, callback: EventCallback) -> None:
        self._close_callback = callback

    def _deliver_stream(self, stream: MediaStream) -> None:
        if self._closed:
            return
        self._remote_stream = stream
        if self._stream_callback is not None:
            self._stream_callback(stream)

    async def close(self) -> None:
        if self._closed:
            return
        loop = asyncio.get_running_loop()
        self._closed = True
        loop.call_soon(self._fire_close)
        remote = self._remote
        if remote is not None and not remote._closed:
            remote._closed = True
            loop.call_soon(remote._fire_close)

    def _fire_close(self) -> None:
        self._owner._forget_call(self)
        if self._close_callback is not None:
            try:
                self._close_callback()
            except Exception as e:
                logger.error(f"Call close handler error ({self._peer_id}): {e}")


class LoopbackTransport:
    """Transport whose network is a LoopbackBroker."""

    def __init__(self, broker: LoopbackBroker, peer_id: str | None = None):
        self._broker = broker
        self._requested_id = peer_id
        self._peer_id: str | None = None
        self._closed = False
        self._connections: list[LoopbackConnection] = []
        self._calls: list[LoopbackCall] = []
        self._connection_callback: Callable[[LoopbackConnection], None] | None = None
        self._call_callback: Callable[[LoopbackCall], None] | None = None

    @property
    def peer_id(self) -> str | None:
        return self._peer_id

    @property
    def connections(self) -> list[LoopbackConnection]:
        return list(self._connections)

    @property
    def calls(self) -> list[LoopbackCall]:
        return list(self._calls)

    async def open(self) -> str:
        if self._closed:
            raise TransportFailure("Transport is closed")
        if self._peer_id is None:
            peer_id = self._requested_id or f"peer-{secrets.token_hex(6)}"
            self._broker.register(self, peer_id)
            self._peer_id = peer_id
            logger.debug(f"Loopback transport open as {peer_id}")
        return self._peer_id

    def on_connection(self, callback: Callable[[LoopbackConnection], None]) -> None:
        self._connection_callback = callback

    def on_call(self, callback: Callable[[LoopbackCall], None]) -> None:
        self._call_callback = callback

    def _require_open(self) -> str:
        if self._peer_id is None or self._closed:
            raise TransportFailure("Transport is not open")
        return self._peer_id

    async def connect(
        self, peer_id: str, metadata: dict[str, Any] | None = None
    ) -> LoopbackConnection:
        local_id = self._require_open()
        remote_transport = self._broker.lookup(peer_id)
        metadata = dict(metadata or {})

        local = LoopbackConnection(self, peer_id, metadata)
        remote = LoopbackConnection(remote_transport, local_id, metadata)
        local._remote, remote._remote = remote, local
        self._connections.append(local)
        remote_transport._connections.append(remote)

        loop = asyncio.get_running_loop()
        loop.call_soon(remote_transport._accept_connection, remote)
        loop.call_soon(remote._set_open)
        loop.call_soon(local._set_open)
        return local

    def _accept_connection(self, connection: LoopbackConnection) -> None:
        if self._connection_callback is None:
            logger.debug(f"No connection handler on {self._peer_id}, closing")
            asyncio.create_task(connection.close())
            return
        self._connection_callback(connection)

    async def call(
        self,
        peer_id: str,
        stream: Optional[MediaStream],
        metadata: dict[str, Any] | None = None,
    ) -> LoopbackCall:
        local_id = self._require_open()
        remote_transport = self._broker.lookup(peer_id)
        metadata = dict(metadata or {})

        local = LoopbackCall(self, peer_id, metadata, stream)
        remote = LoopbackCall(remote_transport, local_id, metadata, None)
        local._remote, remote._remote = remote, local
        self._calls.append(local)
        remote_transport._calls.append(remote)

        asyncio.get_running_loop().call_soon(remote_transport._accept_call, remote)
        return local

    def _accept_call(self, call: LoopbackCall) -> None:
        if self._call_callback is None:
            asyncio.create_task(call.close())
            return
        self._call_callback(call)

    def _forget_connection(self, connection: LoopbackConnection) -> None:
        if connection in self._connections:
            self._connections.remove(connection)

    def _forget_call(self, call: LoopbackCall) -> None:
        if call in self._calls:
            self._calls.remove(call)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for connection in list(self._connections):
            await connection.close()
        for call in list(self._calls):
            await call.close()
        if self._peer_id is not None:
            self._broker.unregister(self._peer_id)
        logger.debug(f"Loopback transport {self._peer_id} closed")
