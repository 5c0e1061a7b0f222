"""Transport contract shared by the loopback and aiortc transports."""

from typing import Any, Awaitable, Callable, Optional, Protocol

from huddle.media import MediaStream

MessageCallback = Callable[[bytes], Awaitable[None]]
EventCallback = Callable[[], None]


class DataConnection(Protocol):
    """Ordered, reliable byte channel to one remote peer."""

    @property
    def peer_id(self) -> str:
        """Transport id of the remote peer."""
        ...

    @property
    def metadata(self) -> dict[str, Any]:
        """Metadata the initiator attached to the connection."""
        ...

    @property
    def is_open(self) -> bool:
        ...

    def on_open(self, callback: EventCallback) -> None:
        """Register open callback. Fires soon if the channel is already open."""
        ...

    def on_message(self, callback: MessageCallback) -> None:
        ...

    def on_close(self, callback: EventCallback) -> None:
        """Register close callback. Fires at most once."""
        ...

    async def send(self, data: bytes) -> None:
        """Send a frame. Raises TransportFailure when the channel is closed."""
        ...

    async def close(self) -> None:
        """Close the channel (idempotent)."""
        ...


class MediaCall(Protocol):
    """Media exchange with one remote peer."""

    @property
    def peer_id(self) -> str:
        ...

    @property
    def metadata(self) -> dict[str, Any]:
        ...

    async def answer(self, stream: Optional[MediaStream]) -> None:
        """Accept an inbound call, sending our stream (if any) back."""
        ...

    def on_stream(self, callback: Callable[[MediaStream], None]) -> None:
        """Register remote stream callback. Fires soon if already received."""
        ...

    def on_close(self, callback: EventCallback) -> None:
        ...

    async def close(self) -> None:
        ...


class Transport(Protocol):
    """Peer transport: identity, data connections and media calls."""

    @property
    def peer_id(self) -> str | None:
        """Local transport id once open."""
        ...

    async def open(self) -> str:
        """Register with the transport network.

        Returns:
            Local peer id.
        """
        ...

    async def connect(
        self, peer_id: str, metadata: dict[str, Any] | None = None
    ) -> DataConnection:
        """Open a data connection. Raises TransportFailure if unreachable."""
        ...

    async def call(
        self,
        peer_id: str,
        stream: Optional[MediaStream],
        metadata: dict[str, Any] | None = None,
    ) -> MediaCall:
        ...

    def on_connection(self, callback: Callable[[DataConnection], None]) -> None:
        """Register callback for inbound data connections."""
        ...

    def on_call(self, callback: Callable[[MediaCall], None]) -> None:
        """Register callback for inbound media calls."""
        ...

    async def close(self) -> None:
        """Close every connection and call and leave the network."""
        ...
