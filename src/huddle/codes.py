"""Short-code rendezvous registry.

Maps short, human-typeable codes to long-lived identifiers (a transport
peer id for pairwise transfers, a room id for meetings). Codes live in the
key-value store under `code:{CODE}` with a TTL; generation retries on
collision up to a fixed bound and then fails explicitly.
"""

import logging
import re
import secrets
import string
import time
from dataclasses import dataclass
from typing import Callable

from huddle.errors import NotFoundError, RegistrationExhaustedError, ValidationError
from huddle.store import KeyValueStore

logger = logging.getLogger(__name__)

CODE_LENGTH = 6
CODE_ALPHABET = string.ascii_uppercase + string.digits  # A-Z0-9
CODE_PATTERN = re.compile(r"^[A-Z0-9]{6}$")
CODE_KEY = "code:{code}"

MAX_TARGET_LENGTH = 256

KIND_TRANSFER = "transfer"
KIND_MEETING = "meeting"


def generate_code(length: int = CODE_LENGTH) -> str:
    """Generate a random short code.

    Returns:
        `length` characters from A-Z0-9.
    """
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str | None) -> str:
    """Normalise and validate user-typed code.

    Args:
        code: Code as typed (any case, surrounding whitespace allowed).

    Returns:
        Upper-case code.

    Raises:
        ValidationError: If the code is not 6 alphanumeric characters.
    """
    if not isinstance(code, str):
        raise ValidationError("Short code required")
    normalized = code.strip().upper()
    if not CODE_PATTERN.match(normalized):
        raise ValidationError("Short code must be 6 letters or digits")
    return normalized


@dataclass(frozen=True)
class ShortCode:
    """A registered short code.

    Attributes:
        code: 6-character code.
        target: Identifier the code resolves to.
        expires_at: Unix timestamp after which the code is gone.
        ttl: Lifetime in seconds.
    """

    code: str
    target: str
    expires_at: float
    ttl: int


class ShortCodeRegistry:
    """Registers and resolves short codes."""

    def __init__(
        self,
        store: KeyValueStore,
        max_attempts: int = 10,
        transfer_ttl: int = 15 * 60,
        meeting_ttl: int = 2 * 60 * 60,
        generator: Callable[[], str] = generate_code,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize registry.

        Args:
            store: TTL key-value backend.
            max_attempts: Collision retries before giving up.
            transfer_ttl: Lifetime of pairwise transfer codes (seconds).
            meeting_ttl: Lifetime of meeting codes (seconds).
            generator: Code generator (injectable for testing).
            clock: Wall clock for expires_at reporting.
        """
        self._store = store
        self._max_attempts = max_attempts
        self._ttls = {KIND_TRANSFER: transfer_ttl, KIND_MEETING: meeting_ttl}
        self._generator = generator
        self._clock = clock

    def ttl_for(self, kind: str) -> int:
        """Return the TTL used for a code kind.

        Raises:
            ValidationError: If kind is unknown.
        """
        if not isinstance(kind, str) or kind not in self._ttls:
            raise ValidationError(f"Unknown code kind: {kind!r}")
        return self._ttls[kind]

    async def register(self, target: str, kind: str = KIND_TRANSFER) -> ShortCode:
        """Register a new short code for target.

        Args:
            target: Peer id or room id the code should resolve to.
            kind: "transfer" or "meeting" (selects the TTL).

        Returns:
            The registered ShortCode.

        Raises:
            ValidationError: If target is empty or too long.
            RegistrationExhaustedError: If every attempt collided.
        """
        if not isinstance(target, str) or not target.strip():
            raise ValidationError("Target identifier required")
        target = target.strip()
        if len(target) > MAX_TARGET_LENGTH:
            raise ValidationError("Target identifier too long")
        ttl = self.ttl_for(kind)

        for attempt in range(1, self._max_attempts + 1):
            code = self._generator()
            if await self._store.add(CODE_KEY.format(code=code), target, ttl):
                logger.info(f"Registered {kind} code {code} (attempt {attempt})")
                return ShortCode(
                    code=code,
                    target=target,
                    expires_at=self._clock() + ttl,
                    ttl=ttl,
                )
            logger.info(f"Short code collision on attempt {attempt}")

        logger.error(f"Failed to generate unique short code after {self._max_attempts} attempts")
        raise RegistrationExhaustedError("Failed to generate unique short code")

    async def resolve(self, code: str) -> str:
        """Resolve a short code to its target.

        Raises:
            ValidationError: If the code is malformed.
            NotFoundError: If the code is unknown or expired.
        """
        normalized = normalize_code(code)
        target = await self._store.get(CODE_KEY.format(code=normalized))
        if target is None:
            raise NotFoundError("Short code not found or expired")
        return target

    async def release(self, code: str) -> None:
        """Delete a short code. Unknown codes are ignored."""
        normalized = normalize_code(code)
        await self._store.delete(CODE_KEY.format(code=normalized))
        logger.debug(f"Released short code {normalized}")
