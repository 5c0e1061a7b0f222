"""Data-channel message framing and routing.

Every frame on a peer data connection is one serialized SessionMessage;
the set field of its `payload` oneof names the message kind.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Coroutine, Union

import betterproto

from huddle.errors import ValidationError
from huddle.proto.huddle import SessionMessage

logger = logging.getLogger(__name__)

# Handler type: async or sync function taking (peer_id, message)
Handler = Union[
    Callable[[str, Any], Coroutine[Any, Any, None]],
    Callable[[str, Any], None],
]


def encode(**payload: betterproto.Message) -> bytes:
    """Serialize one oneof member, e.g. encode(peer_left=PeerLeft(...))."""
    if len(payload) != 1:
        raise ValueError("Exactly one message kind must be given")
    return bytes(SessionMessage(**payload))


def decode(data: bytes) -> tuple[str, Any]:
    """Parse a frame into (kind, message).

    Raises:
        ValidationError: If the frame is not a SessionMessage or carries
            no payload.
    """
    try:
        message = SessionMessage().parse(data)
    except Exception as e:
        raise ValidationError(f"Malformed session message: {e}") from e
    kind, value = betterproto.which_one_of(message, "payload")
    if not kind:
        raise ValidationError("Session message has no payload")
    return kind, value


class MessageDispatcher:
    """Route decoded frames to registered handlers by oneof field name."""

    def __init__(self, handler_timeout: float = 10.0):
        """Initialize dispatcher.

        Args:
            handler_timeout: Maximum time for an async handler (seconds).
        """
        self._handlers: dict[str, Handler] = {}
        self._handler_timeout = handler_timeout

    def register(self, kind: str, handler: Handler) -> None:
        """Register a handler for a message kind (e.g. "join_request")."""
        self._handlers[kind] = handler

    def has_handler(self, kind: str) -> bool:
        return kind in self._handlers

    async def dispatch(self, peer_id: str, data: bytes) -> None:
        """Decode a frame and run its handler.

        Malformed frames, unknown kinds and handler failures are logged and
        dropped; they never propagate into the transport's event loop.
        """
        try:
            kind, message = decode(data)
        except ValidationError as e:
            logger.warning(f"Dropping frame from {peer_id[:8]}...: {e}")
            return

        handler = self._handlers.get(kind)
        if handler is None:
            logger.debug(f"No handler for message kind: {kind}")
            return

        try:
            if inspect.iscoroutinefunction(handler):
                await asyncio.wait_for(handler(peer_id, message), timeout=self._handler_timeout)
            else:
                handler(peer_id, message)
        except asyncio.TimeoutError:
            logger.error(
                f"Handler timeout for {kind} "
                f"(peer={peer_id[:8]}..., timeout={self._handler_timeout}s)"
            )
        except Exception as e:
            logger.error(f"Handler error for {kind} (peer={peer_id[:8]}...): {e}")
