"""HTTP client for the rendezvous server."""

import asyncio
import logging
from typing import Any, Optional

import aiohttp

from huddle.codes import KIND_TRANSFER, ShortCode
from huddle.errors import ERRORS_BY_CODE, HuddleError, StoreUnavailableError
from huddle.relay import SignalMessage

logger = logging.getLogger(__name__)


class DirectoryClient:
    """Client for the short-code, room and signaling endpoints.

    Error bodies are mapped back to the typed HuddleError subclasses; network
    failures surface as StoreUnavailableError.
    """

    REQUEST_TIMEOUT = 10.0  # seconds

    def __init__(
        self,
        base_url: str,
        http_session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize client.

        Args:
            base_url: Server URL (e.g., http://localhost:8787).
            http_session: Optional aiohttp session (for testing).
        """
        self._base_url = base_url.rstrip("/")
        self._session = http_session
        self._owns_session = http_session is None

    async def __aenter__(self):
        """Enter async context, creating session if needed."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, *args):
        """Exit async context, closing owned session."""
        await self.close()

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        url = f"{self._base_url}{path}"
        try:
            async with self._session.request(
                method,
                url,
                json=body,
                params=params,
                timeout=aiohttp.ClientTimeout(total=self.REQUEST_TIMEOUT),
            ) as resp:
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = None
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise StoreUnavailableError(f"Server unreachable: {e}") from e

        if status >= 400:
            raise self._error_from(status, data)
        if not isinstance(data, dict):
            raise StoreUnavailableError(f"Unexpected response from {path}")
        return data

    @staticmethod
    def _error_from(status: int, data: Any) -> HuddleError:
        message = f"HTTP {status}"
        code = None
        if isinstance(data, dict):
            message = data.get("error", message)
            code = data.get("code")
        error_cls = ERRORS_BY_CODE.get(code, HuddleError)
        return error_cls(message)

    async def health(self) -> dict[str, Any]:
        return await self._request("GET", "/health")

    # Short codes

    async def register_code(self, target: str, kind: str = KIND_TRANSFER) -> ShortCode:
        data = await self._request(
            "POST", "/api/register-code", {"target": target, "kind": kind}
        )
        return ShortCode(
            code=data["code"],
            target=target,
            expires_at=data.get("expiresAt", 0.0),
            ttl=data["expiresIn"],
        )

    async def resolve_code(self, code: str) -> str:
        data = await self._request("GET", "/api/resolve-code", params={"code": code})
        return data["target"]

    async def release_code(self, code: str) -> None:
        await self._request("POST", "/api/release-code", {"code": code})

    # Rooms

    async def create_room(
        self,
        title: str,
        auth_secret: str,
        max_participants: int | None = None,
    ) -> dict[str, Any]:
        """Create a room.

        Returns:
            Response with roomId, the meeting code and the sanitized room.
        """
        body: dict[str, Any] = {"title": title, "authSecret": auth_secret}
        if max_participants is not None:
            body["maxParticipants"] = max_participants
        return await self._request("POST", "/api/create-room", body)

    async def get_room(self, room_id: str, auth_secret: str | None = None) -> dict[str, Any]:
        params = {"authSecret": auth_secret} if auth_secret else None
        return await self._request("GET", f"/api/room/{room_id}", params=params)

    async def set_host_peer_id(self, room_id: str, auth_secret: str, peer_id: str) -> None:
        await self._request(
            "POST", f"/api/room/{room_id}", {"authSecret": auth_secret, "hostPeerId": peer_id}
        )

    async def join_room(self, room_id: str, name: str, transport_peer_id: str) -> str:
        data = await self._request(
            "POST",
            f"/api/room/{room_id}/join",
            {"name": name, "transportPeerId": transport_peer_id},
        )
        return data["participantId"]

    async def approve_participant(
        self, room_id: str, participant_id: str, auth_secret: str
    ) -> None:
        await self._request(
            "POST",
            f"/api/room/{room_id}/approve",
            {"participantId": participant_id, "authSecret": auth_secret},
        )

    async def remove_participant(
        self, room_id: str, participant_id: str, auth_secret: str
    ) -> bool:
        data = await self._request(
            "POST",
            f"/api/room/{room_id}/remove",
            {"participantId": participant_id, "authSecret": auth_secret},
        )
        return bool(data.get("removed"))

    async def host_reconnect(self, room_id: str, auth_secret: str, peer_id: str) -> dict:
        data = await self._request(
            "POST",
            f"/api/room/{room_id}/reconnect",
            {"authSecret": auth_secret, "hostPeerId": peer_id},
        )
        return data["room"]

    async def end_room(self, room_id: str, auth_secret: str) -> None:
        await self._request("POST", f"/api/room/{room_id}/end", {"authSecret": auth_secret})

    # Signaling relay

    async def post_signal(self, message: SignalMessage) -> None:
        await self._request("POST", "/api/signal", message.to_dict())

    async def fetch_signals(self, peer_id: str) -> list[SignalMessage]:
        data = await self._request("GET", f"/api/signal/{peer_id}")
        return [SignalMessage.from_dict(m) for m in data.get("messages", [])]

    async def close(self) -> None:
        """Close the HTTP session if owned."""
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None
