"""Pytest configuration and shared fixtures."""

import asyncio

import pytest
import pytest_asyncio


class FakeClock:
    """Manually advanced clock for TTL and expiry tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    from huddle.logging import reset_logging

    reset_logging()
    yield
    reset_logging()


@pytest_asyncio.fixture(autouse=True, loop_scope="function")
async def cleanup_aiohttp_sessions():
    """Give aiohttp sessions time to clean up their connectors."""
    yield
    await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def fast_ice_connectivity():
    """Shorten ICE retry timers so unreachable candidates fail fast."""
    import aioice.stun

    old_retry_max = aioice.stun.RETRY_MAX
    old_retry_rto = aioice.stun.RETRY_RTO
    aioice.stun.RETRY_MAX = 1
    aioice.stun.RETRY_RTO = 0.1
    yield
    aioice.stun.RETRY_MAX = old_retry_max
    aioice.stun.RETRY_RTO = old_retry_rto


@pytest.fixture
def clock():
    """A FakeClock starting at a fixed epoch."""
    return FakeClock()


async def settle(rounds: int = 20) -> None:
    """Let queued callbacks and pump tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def eventually(predicate, timeout: float = 2.0) -> None:
    """Wait until predicate() is true, failing the test after timeout."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)
