"""HTTP surface for the rendezvous registry, room directory and signaling relay.

Single aiohttp server handling all routes:
- /health - Health check (reports degraded store mode)
- /api/register-code, /api/resolve-code, /api/release-code - Short codes
- /api/create-room, /api/room/{room_id}[/...] - Session directory
- /api/signal[/{peer_id}] - Signaling relay mailboxes

Every HuddleError raised by a service becomes `{"error", "code"}` with a
fixed HTTP status; anything else becomes a generic 500.
"""

import json
import logging
import time
from collections import defaultdict
from typing import Any, Callable, Dict

from aiohttp import web

from huddle.codes import KIND_MEETING, KIND_TRANSFER, ShortCodeRegistry
from huddle.config import Config
from huddle.directory import RoomDirectory
from huddle.errors import (
    CapacityError,
    ConflictError,
    HuddleError,
    NotFoundError,
    RoomInactiveError,
    StoreUnavailableError,
    UnauthorizedError,
    ValidationError,
)
from huddle.relay import SignalMessage, SignalRelay
from huddle.store import KeyValueStore, create_store

logger = logging.getLogger(__name__)

# Most specific first: RoomInactiveError is a NotFoundError.
ERROR_STATUS: list[tuple[type[HuddleError], int]] = [
    (ValidationError, 400),
    (UnauthorizedError, 401),
    (RoomInactiveError, 410),
    (NotFoundError, 404),
    (CapacityError, 409),
    (ConflictError, 503),
    (StoreUnavailableError, 503),
]


def status_for(error: HuddleError) -> int:
    """HTTP status for a service error."""
    for cls, status in ERROR_STATUS:
        if isinstance(error, cls):
            return status
    return 500


class RateLimiter:
    """Simple sliding window rate limiter."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize rate limiter.

        Args:
            max_requests: Maximum requests allowed in window.
            window_seconds: Window size in seconds.
            clock: Time source (injectable for testing).
        """
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.requests: Dict[str, list] = defaultdict(list)
        self._clock = clock
        self._last_prune = clock()

    def is_allowed(self, key: str) -> bool:
        """Check if request is allowed.

        Args:
            key: Rate limit key (client IP).

        Returns:
            True if request is allowed, False if rate limited.
        """
        now = self._clock()
        cutoff = now - self.window_seconds

        # Once per window, forget clients that went quiet
        if now - self._last_prune >= self.window_seconds:
            self.prune()

        # Clean old requests
        self.requests[key] = [t for t in self.requests[key] if t > cutoff]

        if len(self.requests[key]) >= self.max_requests:
            return False

        self.requests[key].append(now)
        return True

    def prune(self) -> None:
        """Forget every client whose window has emptied."""
        now = self._clock()
        self._last_prune = now
        cutoff = now - self.window_seconds
        for key in list(self.requests):
            recent = [t for t in self.requests[key] if t > cutoff]
            if recent:
                self.requests[key] = recent
            else:
                del self.requests[key]


class HuddleServer:
    """aiohttp application exposing the rendezvous services."""

    def __init__(
        self,
        registry: ShortCodeRegistry,
        directory: RoomDirectory,
        store: KeyValueStore,
        relay: SignalRelay | None = None,
        rate_limit: int = 120,
    ):
        """Initialize server.

        Args:
            registry: Short-code registry.
            directory: Room directory.
            store: Backing store (closed on shutdown, reported by /health).
            relay: Signaling relay mailboxes.
            rate_limit: Requests per minute allowed per client IP.
        """
        self.registry = registry
        self.directory = directory
        self.store = store
        self.relay = relay or SignalRelay()
        self.ip_limiter = RateLimiter(max_requests=rate_limit, window_seconds=60)
        self.app = web.Application(middlewares=[self._error_middleware])
        self.app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()

    @classmethod
    def from_config(cls, config: Config) -> "HuddleServer":
        """Build the server and its services from configuration."""
        store = create_store(config.store.redis_url, config.store.lock_timeout)
        registry = ShortCodeRegistry(
            store,
            max_attempts=config.registry.max_attempts,
            transfer_ttl=config.registry.transfer_ttl,
            meeting_ttl=config.registry.meeting_ttl,
        )
        directory = RoomDirectory(
            store,
            room_ttl=config.directory.room_ttl,
            max_participants=config.directory.max_participants,
            waiting_ttl=config.directory.waiting_ttl,
            max_attempts=config.registry.max_attempts,
        )
        return cls(registry, directory, store, rate_limit=config.rate_limit)

    def _setup_routes(self) -> None:
        """Set up HTTP routes."""
        router = self.app.router
        router.add_get("/health", self._handle_health)

        # Short codes
        router.add_post("/api/register-code", self._handle_register_code)
        router.add_get("/api/resolve-code", self._handle_resolve_code)
        router.add_post("/api/release-code", self._handle_release_code)

        # Rooms
        router.add_post("/api/create-room", self._handle_create_room)
        router.add_get("/api/room/{room_id}", self._handle_get_room)
        router.add_post("/api/room/{room_id}", self._handle_set_host)
        router.add_post("/api/room/{room_id}/join", self._handle_join)
        router.add_post("/api/room/{room_id}/approve", self._handle_approve)
        router.add_post("/api/room/{room_id}/remove", self._handle_remove)
        router.add_post("/api/room/{room_id}/reconnect", self._handle_reconnect)
        router.add_post("/api/room/{room_id}/end", self._handle_end)

        # Signaling relay
        router.add_post("/api/signal", self._handle_post_signal)
        router.add_get("/api/signal/{peer_id}", self._handle_fetch_signals)

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if request.path.startswith("/api/"):
            client_ip = request.remote or "unknown"
            if not self.ip_limiter.is_allowed(client_ip):
                return web.json_response(
                    {"error": "Too many requests", "code": "rate_limited"}, status=429
                )
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except HuddleError as e:
            return self._error_response(e)
        except Exception as e:
            logger.exception(f"Unhandled error on {request.method} {request.path}: {e}")
            return web.json_response(
                {"error": "Internal server error", "code": "internal"}, status=500
            )

    def _error_response(self, error: HuddleError) -> web.Response:
        """Create error response for a service error.

        Args:
            error: Raised service error.

        Returns:
            JSON response with message and error kind.
        """
        status = status_for(error)
        if status >= 500:
            logger.warning(f"Service unavailable: {error}")
        return web.json_response({"error": str(error), "code": error.code}, status=status)

    async def _read_json(self, request: web.Request) -> dict[str, Any]:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError("Invalid JSON body") from None
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        return body

    # =========================================================================
    # Health
    # =========================================================================

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        degraded = getattr(self.store, "degraded", False)
        return web.json_response(
            {
                "status": "degraded" if degraded else "ok",
                "store": getattr(self.store, "name", "unknown"),
            }
        )

    # =========================================================================
    # Short codes
    # =========================================================================

    async def _handle_register_code(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        kind = body.get("kind", KIND_TRANSFER)
        short_code = await self.registry.register(body.get("target"), kind)
        return web.json_response(
            {
                "code": short_code.code,
                "expiresIn": short_code.ttl,
                "expiresAt": short_code.expires_at,
            }
        )

    async def _handle_resolve_code(self, request: web.Request) -> web.Response:
        target = await self.registry.resolve(request.query.get("code"))
        return web.json_response({"target": target})

    async def _handle_release_code(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        await self.registry.release(body.get("code"))
        return web.json_response({"ok": True})

    # =========================================================================
    # Rooms
    # =========================================================================

    async def _handle_create_room(self, request: web.Request) -> web.Response:
        """Create a room and a meeting code that resolves to it."""
        body = await self._read_json(request)
        room = await self.directory.create_room(
            body.get("title"),
            body.get("authSecret"),
            body.get("maxParticipants"),
        )
        short_code = await self.registry.register(room.id, KIND_MEETING)
        return web.json_response(
            {"roomId": room.id, "code": short_code.code, "room": room.sanitized()}
        )

    async def _handle_get_room(self, request: web.Request) -> web.Response:
        view = await self.directory.get_room(
            request.match_info["room_id"], request.query.get("authSecret")
        )
        return web.json_response(view.to_dict())

    async def _handle_set_host(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        await self.directory.set_host_peer_id(
            request.match_info["room_id"], body.get("authSecret"), body.get("hostPeerId")
        )
        return web.json_response({"ok": True})

    async def _handle_join(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        participant_id = await self.directory.join_room(
            request.match_info["room_id"], body.get("name"), body.get("transportPeerId")
        )
        return web.json_response({"participantId": participant_id})

    async def _handle_approve(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        await self.directory.approve_participant(
            request.match_info["room_id"], body.get("participantId"), body.get("authSecret")
        )
        return web.json_response({"ok": True})

    async def _handle_remove(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        removed = await self.directory.remove_participant(
            request.match_info["room_id"], body.get("participantId"), body.get("authSecret")
        )
        return web.json_response({"ok": True, "removed": removed})

    async def _handle_reconnect(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        summary = await self.directory.host_reconnect(
            request.match_info["room_id"], body.get("authSecret"), body.get("hostPeerId")
        )
        return web.json_response({"room": summary})

    async def _handle_end(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        await self.directory.end_room(request.match_info["room_id"], body.get("authSecret"))
        return web.json_response({"ok": True})

    # =========================================================================
    # Signaling relay
    # =========================================================================

    async def _handle_post_signal(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        message = SignalMessage.from_dict(body)
        self.relay.post(message)
        return web.json_response({"ok": True})

    async def _handle_fetch_signals(self, request: web.Request) -> web.Response:
        messages = self.relay.drain(request.match_info["peer_id"])
        return web.json_response({"messages": [m.to_dict() for m in messages]})

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.store.close()

    async def start(self, host: str, port: int) -> web.AppRunner:
        """Start the server.

        Args:
            host: Host to bind to.
            port: Port to bind to.

        Returns:
            App runner (for cleanup).
        """
        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()
        logger.info(f"Huddle server started on {host}:{port}")
        return runner
