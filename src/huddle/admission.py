"""Admission control: verification codes and the host waiting room.

Two independent gates decide whether a connected peer may take part:

- VerificationGate (pairwise transfer): the initiator shows a random
  6-digit code, the responder types it back. The code guards against typos
  and code collisions; it is not bound to the transport's DTLS fingerprints.
- WaitingRoom (multi-party): join requests queue on the host until the host
  approves or rejects them, or until they expire.
"""

import asyncio
import hmac
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

VERIFICATION_CODE_LENGTH = 6
JOIN_EXPIRED_REASON = "Join request expired"


def generate_verification_code(length: int = VERIFICATION_CODE_LENGTH) -> str:
    """Random numeric code, zero-padded."""
    return "".join(secrets.choice("0123456789") for _ in range(length))


@dataclass
class VerificationSession:
    """State of one verification exchange.

    Attributes:
        session_id: Identifier sent in the VerificationRequest.
        verification_code: Code displayed by the initiator.
        confirmed: True once the responder typed the right code.
        attempts: Number of wrong codes received.
    """

    session_id: str
    verification_code: str
    confirmed: bool = False
    attempts: int = 0


class VerificationGate:
    """Initiator-side check of a typed verification code."""

    def __init__(
        self,
        max_attempts: int = 5,
        code_generator: Callable[[], str] = generate_verification_code,
        session_id: str | None = None,
    ):
        """Initialize gate with a fresh code.

        Args:
            max_attempts: Wrong codes tolerated before the gate is exhausted.
            code_generator: Code source (injectable for testing).
            session_id: Exchange identifier; random if omitted.
        """
        self._max_attempts = max_attempts
        self.session = VerificationSession(
            session_id=session_id or secrets.token_hex(8),
            verification_code=code_generator(),
        )

    @property
    def code(self) -> str:
        return self.session.verification_code

    @property
    def confirmed(self) -> bool:
        return self.session.confirmed

    @property
    def attempts_left(self) -> int:
        return max(0, self._max_attempts - self.session.attempts)

    @property
    def exhausted(self) -> bool:
        return not self.session.confirmed and self.attempts_left == 0

    def check(self, candidate: str) -> bool:
        """Compare a typed code against the displayed one in constant time.

        Returns:
            True if the code matches. A wrong code counts an attempt; once
            exhausted every further check fails.
        """
        if self.session.confirmed:
            return True
        if self.exhausted:
            return False

        typed = (candidate or "").strip().encode("utf-8")
        if hmac.compare_digest(typed, self.code.encode("utf-8")):
            self.session.confirmed = True
            logger.info(f"Verification {self.session.session_id} confirmed")
            return True

        self.session.attempts += 1
        logger.warning(
            f"Wrong verification code for {self.session.session_id} "
            f"({self.attempts_left} attempts left)"
        )
        return False


@dataclass
class WaitingEntry:
    """A pending join request held by the host."""

    peer_id: str
    name: str
    connection: Any  # DataConnection to the requester
    participant_id: str | None = None
    requested_at: float = field(default_factory=time.monotonic)
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


class WaitingRoom:
    """Join requests keyed by transport peer id.

    Entries expire after `ttl` seconds; `on_expired` is then called with the
    removed entry so the owner can reject and close the requester.
    """

    def __init__(
        self,
        ttl: float = 5 * 60,
        on_expired: Callable[[WaitingEntry], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl
        self._on_expired = on_expired
        self._clock = clock
        self._entries: dict[str, WaitingEntry] = {}

    def add(
        self,
        peer_id: str,
        name: str,
        connection: Any,
        participant_id: str | None = None,
    ) -> WaitingEntry:
        """Queue a join request, replacing any earlier one from the same peer."""
        previous = self._entries.pop(peer_id, None)
        if previous is not None:
            self._cancel(previous)

        entry = WaitingEntry(
            peer_id=peer_id,
            name=name,
            connection=connection,
            participant_id=participant_id,
            requested_at=self._clock(),
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None and self._ttl > 0:
            entry.timer = loop.call_later(self._ttl, self._expire, peer_id, entry)
        self._entries[peer_id] = entry
        logger.info(f"Join request from {name!r} ({peer_id[:8]}...) is waiting")
        return entry

    def get(self, peer_id: str) -> WaitingEntry | None:
        return self._entries.get(peer_id)

    def entries(self) -> list[WaitingEntry]:
        """Pending requests, oldest first."""
        return sorted(self._entries.values(), key=lambda e: e.requested_at)

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def claim(self, peer_id: str) -> WaitingEntry | None:
        """Remove and return an entry. None if it was already claimed."""
        entry = self._entries.pop(peer_id, None)
        if entry is not None:
            self._cancel(entry)
        return entry

    def approve(self, peer_id: str) -> WaitingEntry | None:
        entry = self.claim(peer_id)
        if entry is not None:
            logger.info(f"Approved {entry.name!r} ({peer_id[:8]}...)")
        return entry

    def reject(self, peer_id: str) -> WaitingEntry | None:
        entry = self.claim(peer_id)
        if entry is not None:
            logger.info(f"Rejected {entry.name!r} ({peer_id[:8]}...)")
        return entry

    def expire_stale(self) -> list[WaitingEntry]:
        """Expire every entry older than ttl on the injected clock."""
        cutoff = self._clock() - self._ttl
        stale = [e.peer_id for e in self._entries.values() if e.requested_at <= cutoff]
        expired = []
        for peer_id in stale:
            entry = self._entries[peer_id]
            self._expire(peer_id, entry)
            expired.append(entry)
        return expired

    def clear(self) -> list[WaitingEntry]:
        """Drop every entry without notification."""
        entries = list(self._entries.values())
        for entry in entries:
            self._cancel(entry)
        self._entries.clear()
        return entries

    def _expire(self, peer_id: str, entry: WaitingEntry) -> None:
        if self._entries.get(peer_id) is not entry:
            return
        del self._entries[peer_id]
        self._cancel(entry)
        logger.info(f"Join request from {entry.name!r} ({peer_id[:8]}...) expired")
        if self._on_expired is not None:
            self._on_expired(entry)

    @staticmethod
    def _cancel(entry: WaitingEntry) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
