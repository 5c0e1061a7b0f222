"""TTL key-value storage for the rendezvous registry and room directory.

This module provides:
- KeyValueStore: the backend contract (get/put/add/delete/lock)
- MemoryStore: in-process map with lazy TTL expiry
- RedisStore: redis.asyncio backend
- FallbackStore: primary backend with an explicit in-memory degraded mode

Entries past their TTL are treated as absent, never returned stale.
"""

import asyncio
import logging
import time
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Callable, Protocol

import redis.asyncio as aioredis
from redis.exceptions import LockError, RedisError

from huddle.errors import StoreUnavailableError

__all__ = [
    "FallbackStore",
    "KeyValueStore",
    "MemoryStore",
    "RedisStore",
    "create_store",
]

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Protocol for TTL-bound key-value backends."""

    async def get(self, key: str) -> str | None:
        """Return the live value for key, or None."""
        ...

    async def put(self, key: str, value: str, ttl: int) -> None:
        """Store value under key for ttl seconds."""
        ...

    async def add(self, key: str, value: str, ttl: int) -> bool:
        """Store value only if key is absent. Returns True if stored."""
        ...

    async def delete(self, key: str) -> None:
        """Remove key if present."""
        ...

    def lock(self, key: str) -> AsyncContextManager[None]:
        """Per-key critical section for read-modify-write sequences."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...


class _KeyLock:
    """Lock plus the number of tasks holding or waiting on it."""

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class MemoryStore:
    """In-process key-value map with TTL semantics.

    Values are kept with an absolute expiry time measured on the injected
    clock; expired entries are dropped on access.
    """

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        """Initialize memory store.

        Args:
            clock: Monotonic clock in seconds (injectable for testing).
        """
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}
        self._locks: dict[str, _KeyLock] = {}

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def put(self, key: str, value: str, ttl: int) -> None:
        self._data[key] = (value, self._clock() + ttl)

    async def add(self, key: str, value: str, ttl: int) -> bool:
        if self._live(key) is not None:
            return False
        self._data[key] = (value, self._clock() + ttl)
        return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    def purge_expired(self) -> int:
        """Drop every expired entry.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        expired = [k for k, (_, exp) in self._data.items() if now >= exp]
        for key in expired:
            del self._data[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._data)

    async def close(self) -> None:
        self._data.clear()


class RedisStore:
    """Redis-backed store using redis.asyncio.

    Every Redis failure is re-raised as StoreUnavailableError so callers
    never see driver exceptions.
    """

    name = "redis"
    LOCK_PREFIX = "lock:"

    def __init__(
        self,
        url: str | None = None,
        client: aioredis.Redis | None = None,
        lock_timeout: float = 5.0,
    ):
        """Initialize Redis store.

        Args:
            url: Redis URL (e.g., redis://localhost:6379/0).
            client: Pre-built client (for testing).
            lock_timeout: Seconds after which a held lock auto-expires.
        """
        if client is None:
            if url is None:
                raise ValueError("Either url or client is required")
            client = aioredis.Redis.from_url(url, decode_responses=True)
        self._client = client
        self._lock_timeout = lock_timeout

    async def get(self, key: str) -> str | None:
        try:
            return await self._client.get(key)
        except RedisError as e:
            raise StoreUnavailableError(f"Redis GET failed: {e}") from e

    async def put(self, key: str, value: str, ttl: int) -> None:
        try:
            await self._client.set(key, value, ex=ttl)
        except RedisError as e:
            raise StoreUnavailableError(f"Redis SET failed: {e}") from e

    async def add(self, key: str, value: str, ttl: int) -> bool:
        try:
            return bool(await self._client.set(key, value, ex=ttl, nx=True))
        except RedisError as e:
            raise StoreUnavailableError(f"Redis SET NX failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as e:
            raise StoreUnavailableError(f"Redis DEL failed: {e}") from e

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        redis_lock = self._client.lock(
            f"{self.LOCK_PREFIX}{key}",
            timeout=self._lock_timeout,
            blocking_timeout=self._lock_timeout,
        )
        try:
            acquired = await redis_lock.acquire()
        except RedisError as e:
            raise StoreUnavailableError(f"Redis lock failed: {e}") from e
        if not acquired:
            raise StoreUnavailableError(f"Timed out waiting for lock on {key}")
        try:
            yield
        finally:
            try:
                await redis_lock.release()
            except (LockError, RedisError) as e:
                logger.warning(f"Failed to release lock on {key}: {e}")

    async def close(self) -> None:
        await self._client.aclose()


class FallbackStore:
    """Primary store with an explicit in-memory degraded mode.

    The first StoreUnavailableError from the primary switches the store to
    the memory fallback for the rest of the process lifetime. The switch is
    logged and visible through `degraded`. Errors are only surfaced when the
    fallback itself fails.
    """

    def __init__(self, primary: KeyValueStore, fallback: MemoryStore | None = None):
        """Initialize fallback store.

        Args:
            primary: Preferred backend (usually RedisStore).
            fallback: Memory store used once the primary is unreachable.
        """
        self._primary = primary
        self._fallback = fallback or MemoryStore()
        self._degraded = False

    @property
    def degraded(self) -> bool:
        """True once the store has switched to the memory fallback."""
        return self._degraded

    @property
    def name(self) -> str:
        if self._degraded:
            return self._fallback.name
        return getattr(self._primary, "name", "primary")

    def _degrade(self, error: Exception) -> None:
        if not self._degraded:
            logger.warning(
                f"Store backend unavailable, switching to in-memory fallback: {error}"
            )
            self._degraded = True

    async def _call_fallback(self, method: str, *args):
        try:
            return await getattr(self._fallback, method)(*args)
        except Exception as e:
            raise StoreUnavailableError(f"Fallback store failed: {e}") from e

    async def _call(self, method: str, *args):
        if not self._degraded:
            try:
                return await getattr(self._primary, method)(*args)
            except StoreUnavailableError as e:
                self._degrade(e)
        return await self._call_fallback(method, *args)

    async def get(self, key: str) -> str | None:
        return await self._call("get", key)

    async def put(self, key: str, value: str, ttl: int) -> None:
        await self._call("put", key, value, ttl)

    async def add(self, key: str, value: str, ttl: int) -> bool:
        return await self._call("add", key, value, ttl)

    async def delete(self, key: str) -> None:
        await self._call("delete", key)

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        async with AsyncExitStack() as stack:
            acquired = False
            if not self._degraded:
                try:
                    await stack.enter_async_context(self._primary.lock(key))
                    acquired = True
                except StoreUnavailableError as e:
                    self._degrade(e)
            if not acquired:
                await stack.enter_async_context(self._fallback.lock(key))
            yield

    async def close(self) -> None:
        try:
            await self._primary.close()
        except StoreUnavailableError as e:
            logger.debug(f"Ignoring error closing primary store: {e}")
        await self._fallback.close()


def create_store(redis_url: str | None, lock_timeout: float = 5.0) -> KeyValueStore:
    """Build the store described by configuration.

    Args:
        redis_url: Redis URL, or None for the in-process store.
        lock_timeout: Redis lock expiry in seconds.

    Returns:
        FallbackStore over Redis when a URL is configured, else MemoryStore.
    """
    if not redis_url:
        logger.info("No Redis URL configured, using in-memory store")
        return MemoryStore()
    logger.info("Using Redis store with in-memory fallback")
    return FallbackStore(RedisStore(url=redis_url, lock_timeout=lock_timeout))
