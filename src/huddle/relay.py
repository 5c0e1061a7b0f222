"""Signaling relay: in-memory mailboxes keyed by transport peer id.

Clients post SDP offers/answers addressed to a peer id and the addressee
drains its mailbox by polling. Mailboxes that nobody touched for
`idle_ttl` seconds are purged.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from huddle.errors import ValidationError

logger = logging.getLogger(__name__)

SIGNAL_KINDS = ("offer", "answer", "bye")
MAX_PEER_ID_LENGTH = 128
MAX_MAILBOX_SIZE = 100


@dataclass
class SignalMessage:
    """One relayed signaling message."""

    sender: str
    recipient: str
    kind: str
    connection_id: str
    sdp: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "from": self.sender,
            "to": self.recipient,
            "kind": self.kind,
            "connectionId": self.connection_id,
            "sdp": self.sdp,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "SignalMessage":
        """Build a message from a request body.

        Raises:
            ValidationError: On missing or malformed fields.
        """
        if not isinstance(d, dict):
            raise ValidationError("Signal message must be an object")
        sender = d.get("from")
        recipient = d.get("to")
        for label, value in (("from", sender), ("to", recipient)):
            if not isinstance(value, str) or not value or len(value) > MAX_PEER_ID_LENGTH:
                raise ValidationError(f"Invalid '{label}' peer id")
        kind = d.get("kind")
        if kind not in SIGNAL_KINDS:
            raise ValidationError(f"Invalid signal kind: {kind}")
        connection_id = d.get("connectionId")
        if not isinstance(connection_id, str) or not connection_id:
            raise ValidationError("connectionId is required")
        sdp = d.get("sdp") or ""
        if not isinstance(sdp, str):
            raise ValidationError("sdp must be a string")
        metadata = d.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object")
        return cls(
            sender=sender,
            recipient=recipient,
            kind=kind,
            connection_id=connection_id,
            sdp=sdp,
            metadata=metadata,
        )


@dataclass
class _Mailbox:
    messages: list[SignalMessage] = field(default_factory=list)
    touched_at: float = 0.0


class SignalRelay:
    """Per-peer signaling mailboxes."""

    def __init__(
        self,
        idle_ttl: float = 15 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._idle_ttl = idle_ttl
        self._clock = clock
        self._mailboxes: dict[str, _Mailbox] = {}

    def post(self, message: SignalMessage) -> None:
        """Queue message for its recipient."""
        self.purge_idle()
        mailbox = self._mailboxes.setdefault(message.recipient, _Mailbox())
        if len(mailbox.messages) >= MAX_MAILBOX_SIZE:
            dropped = mailbox.messages.pop(0)
            logger.warning(
                f"Mailbox for {message.recipient[:8]}... full, dropped {dropped.kind}"
            )
        mailbox.messages.append(message)
        mailbox.touched_at = self._clock()

    def drain(self, peer_id: str) -> list[SignalMessage]:
        """Return and clear every queued message for peer_id."""
        self.purge_idle()
        mailbox = self._mailboxes.get(peer_id)
        if mailbox is None:
            self._mailboxes[peer_id] = _Mailbox(touched_at=self._clock())
            return []
        messages, mailbox.messages = mailbox.messages, []
        mailbox.touched_at = self._clock()
        return messages

    def purge_idle(self) -> int:
        """Drop mailboxes idle longer than idle_ttl.

        Returns:
            Number of mailboxes removed.
        """
        cutoff = self._clock() - self._idle_ttl
        idle = [k for k, box in self._mailboxes.items() if box.touched_at <= cutoff]
        for key in idle:
            del self._mailboxes[key]
        if idle:
            logger.debug(f"Purged {len(idle)} idle signaling mailbox(es)")
        return len(idle)

    def __len__(self) -> int:
        return len(self._mailboxes)
