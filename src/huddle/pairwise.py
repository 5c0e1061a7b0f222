"""Pairwise transfer session guarded by a verification code.

Sender:
    session = PairwiseSession(transport, directory=client)
    short_code = await session.start_sending()      # share short_code.code
    # ... receiver connects; session.verification_code is shown locally

Receiver:
    session = PairwiseSession(transport, directory=client)
    await session.start_receiving(code)
    await session.submit_code("123456")             # typed by the user

Once the receiver's typed code matches, both sides are `connected` and may
exchange payloads; the first payload moves a side to `active`. Payloads
arriving before verification are dropped.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from huddle.admission import VerificationGate
from huddle.client import DirectoryClient
from huddle.codes import KIND_TRANSFER, ShortCode
from huddle.config import SessionConfig
from huddle.errors import HuddleError, TransportFailure
from huddle.messages import MessageDispatcher, encode
from huddle.proto.huddle import (
    Payload,
    VerificationRequest,
    VerificationResponse,
    VerificationResult,
)
from huddle.state import ConnectionState, ConnectionStateMachine, default_timeouts
from huddle.transport.base import DataConnection, Transport

logger = logging.getLogger(__name__)

ROLE_SENDER = "sender"
ROLE_RECEIVER = "receiver"

EXHAUSTED_ERROR = "Too many incorrect verification codes"
WRONG_CODE_ERROR = "Incorrect verification code"
PEER_CLOSED_ERROR = "Peer disconnected"

DataCallback = Callable[[bytes], Awaitable[None]]
StateCallback = Callable[[ConnectionState, Optional[str]], None]

VERIFIED_STATES = (ConnectionState.CONNECTED, ConnectionState.ACTIVE)


class PairwiseSession:
    """One side of a verified point-to-point transfer."""

    def __init__(
        self,
        transport: Transport,
        directory: DirectoryClient | None = None,
        config: SessionConfig | None = None,
        gate_factory: Callable[[int], VerificationGate] | None = None,
    ):
        """Initialize session.

        Args:
            transport: Peer transport (not yet opened).
            directory: Server client for registering/resolving short codes.
            config: Timeouts and the verification attempt limit.
            gate_factory: Builds the sender's VerificationGate from the
                attempt limit (for testing).
        """
        self._transport = transport
        self._directory = directory
        self._config = config or SessionConfig()
        self._gate_factory = gate_factory or (lambda n: VerificationGate(max_attempts=n))

        self._machine = ConnectionStateMachine(
            timeouts=default_timeouts(
                waiting=self._config.waiting_timeout,
                connecting=self._config.connect_timeout,
            )
        )
        self._machine.add_listener(self._on_state_change)
        self._dispatcher = MessageDispatcher()
        self._dispatcher.register("verification_request", self._handle_verification_request)
        self._dispatcher.register("verification_response", self._handle_verification_response)
        self._dispatcher.register("verification_result", self._handle_verification_result)
        self._dispatcher.register("data", self._handle_data)

        self._role: str | None = None
        self._connection: DataConnection | None = None
        self._gate: VerificationGate | None = None
        self._short_code: ShortCode | None = None
        self._session_id: str | None = None
        self._data_callback: DataCallback | None = None
        self._listeners: list[StateCallback] = []
        self._cleanup_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._closed = False
        self.last_error: str | None = None

    @property
    def state(self) -> ConnectionState:
        return self._machine.state

    @property
    def error(self) -> str | None:
        """Terminal failure reason, if any."""
        return self._machine.error

    @property
    def role(self) -> str | None:
        return self._role

    @property
    def short_code(self) -> ShortCode | None:
        return self._short_code

    @property
    def verification_code(self) -> str | None:
        """Code to display on the sender while verifying."""
        return self._gate.code if self._gate else None

    def subscribe(self, listener: StateCallback) -> None:
        self._listeners.append(listener)

    def on_data(self, callback: DataCallback) -> None:
        self._data_callback = callback

    def _on_state_change(
        self, old: ConnectionState, new: ConnectionState, error: str | None
    ) -> None:
        if new == ConnectionState.DISCONNECTED and not self._closed:
            self._closed = True
            self._cleanup_task = asyncio.create_task(self._release())
        for listener in list(self._listeners):
            try:
                listener(new, error)
            except Exception as e:
                logger.error(f"Pairwise listener error: {e}")

    def _claim_role(self, role: str) -> None:
        if self._role is not None or self._closed:
            raise RuntimeError("Pairwise session already used; create a new one")
        self._role = role
        self._machine.start()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _attach(self, connection: DataConnection) -> None:
        self._connection = connection

        async def on_message(data: bytes) -> None:
            if self._closed or self._connection is not connection:
                return
            await self._dispatcher.dispatch(connection.peer_id, data)

        def on_close() -> None:
            if self._connection is connection:
                self._machine.fail(PEER_CLOSED_ERROR)

        connection.on_message(on_message)
        connection.on_close(on_close)
        connection.on_open(lambda: self._on_open(connection))

    def _on_open(self, connection: DataConnection) -> None:
        if self._closed or self._connection is not connection:
            return
        if self._machine.state != ConnectionState.CONNECTING:
            return
        self._machine.transition_to(ConnectionState.VERIFYING)
        if self._role == ROLE_SENDER:
            self._gate = self._gate_factory(self._config.verification_attempts)
            self._session_id = self._gate.session.session_id
            logger.info("Peer connected; waiting for verification code")
            self._spawn(
                self._send(
                    encode(verification_request=VerificationRequest(session_id=self._session_id))
                )
            )

    async def _send(self, data: bytes) -> bool:
        connection = self._connection
        if connection is None:
            return False
        try:
            await connection.send(data)
            return True
        except TransportFailure as e:
            logger.warning(f"Send failed: {e}")
            return False

    # =========================================================================
    # Sender
    # =========================================================================

    async def start_sending(self) -> ShortCode | None:
        """Open the transport and publish its peer id as a transfer code.

        Returns:
            The short code to share, or None if registration failed.
        """
        if self._directory is None:
            raise RuntimeError("start_sending requires a directory client")
        self._claim_role(ROLE_SENDER)
        self._transport.on_connection(self._on_inbound_connection)

        try:
            peer_id = await self._transport.open()
            short_code = await self._directory.register_code(peer_id, KIND_TRANSFER)
        except (HuddleError, TransportFailure) as e:
            self._machine.fail(f"Could not publish transfer code: {e}")
            return None
        if self._closed:
            await self._release_code(short_code.code)
            return None

        self._short_code = short_code
        logger.info(f"Waiting for receiver on code {short_code.code}")
        return short_code

    def _on_inbound_connection(self, connection: DataConnection) -> None:
        if self._closed or self._connection is not None:
            logger.info(f"Refusing extra connection from {connection.peer_id[:8]}...")
            self._spawn(connection.close())
            return
        self._machine.transition_to(ConnectionState.CONNECTING)
        self._attach(connection)

    async def _handle_verification_response(
        self, peer_id: str, message: VerificationResponse
    ) -> None:
        if self._role != ROLE_SENDER or self._gate is None:
            return
        if self._machine.state != ConnectionState.VERIFYING:
            return

        success = self._gate.check(message.code)
        result = VerificationResult(success=success, attempts_left=self._gate.attempts_left)
        await self._send(encode(verification_result=result))
        if self._closed:
            return

        if success:
            self._machine.transition_to(ConnectionState.CONNECTED)
        elif self._gate.exhausted:
            self._machine.fail(EXHAUSTED_ERROR)
        else:
            self.last_error = WRONG_CODE_ERROR

    # =========================================================================
    # Receiver
    # =========================================================================

    async def start_receiving(self, code: str) -> bool:
        """Resolve a transfer code and connect to the sender.

        Returns:
            True if the connection attempt started.
        """
        if self._directory is None:
            raise RuntimeError("start_receiving requires a directory client")
        self._claim_role(ROLE_RECEIVER)
        self._transport.on_connection(lambda c: self._spawn(c.close()))
        self._machine.transition_to(ConnectionState.CONNECTING)

        try:
            sender_id = await self._directory.resolve_code(code)
            await self._transport.open()
            connection = await self._transport.connect(sender_id, {"kind": KIND_TRANSFER})
        except (HuddleError, TransportFailure) as e:
            self._machine.fail(f"Could not reach sender: {e}")
            return False
        if self._closed:
            await connection.close()
            return False

        self._attach(connection)
        return True

    async def _handle_verification_request(
        self, peer_id: str, message: VerificationRequest
    ) -> None:
        if self._role == ROLE_RECEIVER:
            self._session_id = message.session_id

    async def submit_code(self, code: str) -> None:
        """Send the code the user typed. Only valid while verifying."""
        if self._role != ROLE_RECEIVER or self._machine.state != ConnectionState.VERIFYING:
            raise RuntimeError("No verification in progress")
        await self._send(encode(verification_response=VerificationResponse(code=code.strip())))

    async def _handle_verification_result(
        self, peer_id: str, message: VerificationResult
    ) -> None:
        if self._role != ROLE_RECEIVER or self._machine.state != ConnectionState.VERIFYING:
            return
        if message.success:
            self.last_error = None
            self._machine.transition_to(ConnectionState.CONNECTED)
        elif message.attempts_left == 0:
            self._machine.fail(EXHAUSTED_ERROR)
        else:
            self.last_error = WRONG_CODE_ERROR
            logger.info(f"{WRONG_CODE_ERROR} ({message.attempts_left} attempts left)")

    # =========================================================================
    # Data
    # =========================================================================

    async def send(self, data: bytes) -> None:
        """Send a payload to the verified peer.

        Raises:
            TransportFailure: Before verification or after the session closed.
        """
        if self._machine.state not in VERIFIED_STATES:
            raise TransportFailure("Session is not verified")
        if not await self._send(encode(data=Payload(data=data))):
            raise TransportFailure("Payload could not be sent")
        self._mark_active()

    async def _handle_data(self, peer_id: str, message: Payload) -> None:
        if self._machine.state not in VERIFIED_STATES:
            logger.warning("Dropping payload received before verification")
            return
        self._mark_active()
        if self._data_callback is not None:
            await self._data_callback(message.data)

    def _mark_active(self) -> None:
        if self._machine.state == ConnectionState.CONNECTED:
            self._machine.transition_to(ConnectionState.ACTIVE)

    # =========================================================================
    # Teardown
    # =========================================================================

    async def close(self) -> None:
        """Close the connection and transport, releasing the short code."""
        if not self._machine.is_terminal:
            self._machine.close()
        if self._cleanup_task is not None:
            await self._cleanup_task

    async def _release_code(self, code: str) -> None:
        if self._directory is None:
            return
        try:
            await self._directory.release_code(code)
        except HuddleError as e:
            logger.warning(f"Could not release short code {code}: {e}")

    async def _release(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()
        await self._transport.close()
        if self._short_code is not None:
            await self._release_code(self._short_code.code)
