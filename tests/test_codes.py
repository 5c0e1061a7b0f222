"""Tests for the short-code registry."""

import re

import pytest

from huddle.codes import (
    CODE_ALPHABET,
    KIND_MEETING,
    KIND_TRANSFER,
    ShortCodeRegistry,
    generate_code,
    normalize_code,
)
from huddle.errors import (
    ConflictError,
    NotFoundError,
    RegistrationExhaustedError,
    ValidationError,
)
from huddle.store import MemoryStore


def scripted(*codes):
    """Generator returning codes in order."""
    it = iter(codes)
    return lambda: next(it)


class TestGenerateCode:
    """Tests for code generation."""

    def test_length_and_alphabet(self):
        """Codes are 6 characters from A-Z0-9."""
        for _ in range(50):
            code = generate_code()
            assert re.fullmatch(r"[A-Z0-9]{6}", code)

    def test_alphabet(self):
        assert len(CODE_ALPHABET) == 36


class TestNormalizeCode:
    """Tests for normalize_code."""

    def test_uppercases_and_strips(self):
        """Typed codes are case-insensitive."""
        assert normalize_code("  ab12cd ") == "AB12CD"

    @pytest.mark.parametrize("bad", ["", "ABC", "ABCDEFG", "AB-12C", "ÄB12CD", None, 123456])
    def test_rejects_malformed(self, bad):
        """Malformed codes are a validation error."""
        with pytest.raises(ValidationError):
            normalize_code(bad)


class TestRegister:
    """Tests for ShortCodeRegistry.register."""

    @pytest.fixture
    def store(self, clock):
        return MemoryStore(clock=clock)

    async def test_register_and_resolve(self, store, clock):
        """A registered code resolves to its target."""
        registry = ShortCodeRegistry(store, clock=clock)

        short_code = await registry.register("peer-abc123")

        assert re.fullmatch(r"[A-Z0-9]{6}", short_code.code)
        assert short_code.target == "peer-abc123"
        assert short_code.ttl == 15 * 60
        assert short_code.expires_at == clock() + 15 * 60
        assert await registry.resolve(short_code.code) == "peer-abc123"

    async def test_resolve_is_case_insensitive(self, store):
        registry = ShortCodeRegistry(store, generator=scripted("AB12CD"))
        await registry.register("peer-1")

        assert await registry.resolve("ab12cd") == "peer-1"

    async def test_meeting_kind_uses_meeting_ttl(self, store):
        """Meeting codes live for the meeting TTL."""
        registry = ShortCodeRegistry(store, meeting_ttl=7200)
        short_code = await registry.register("ROOM1234", KIND_MEETING)
        assert short_code.ttl == 7200

    async def test_unknown_kind(self, store):
        registry = ShortCodeRegistry(store)
        with pytest.raises(ValidationError):
            await registry.register("peer-1", "party")

    @pytest.mark.parametrize("kind", [["meeting"], {"kind": "meeting"}, 3, None])
    async def test_non_string_kind(self, store, kind):
        registry = ShortCodeRegistry(store)
        with pytest.raises(ValidationError):
            await registry.register("peer-1", kind)

    @pytest.mark.parametrize("target", ["", "   ", None, "x" * 257])
    async def test_invalid_target(self, store, target):
        """Empty or oversized targets are rejected."""
        registry = ShortCodeRegistry(store)
        with pytest.raises(ValidationError):
            await registry.register(target)

    async def test_collision_retries(self, store):
        """A collision is retried with a fresh code."""
        registry = ShortCodeRegistry(store, generator=scripted("AAAAAA", "AAAAAA", "BBBBBB"))
        first = await registry.register("peer-1")

        second = await registry.register("peer-2")

        assert first.code == "AAAAAA"
        assert second.code == "BBBBBB"
        assert await registry.resolve("AAAAAA") == "peer-1"

    async def test_live_code_never_reassigned(self, store):
        """Forced collisions never overwrite a live code."""
        registry = ShortCodeRegistry(
            store, max_attempts=3, generator=lambda: "AAAAAA"
        )
        await registry.register("peer-1")

        with pytest.raises(RegistrationExhaustedError):
            await registry.register("peer-2")

        assert await registry.resolve("AAAAAA") == "peer-1"

    async def test_exhaustion_is_conflict(self, store):
        """Exhaustion is reported as a conflict."""
        registry = ShortCodeRegistry(store, max_attempts=1, generator=lambda: "AAAAAA")
        await registry.register("peer-1")

        with pytest.raises(ConflictError):
            await registry.register("peer-2")

    async def test_expired_code_can_be_reused(self, store, clock):
        """Once expired, the same code may be issued again."""
        registry = ShortCodeRegistry(store, transfer_ttl=60, generator=lambda: "AAAAAA")
        await registry.register("peer-1", KIND_TRANSFER)
        clock.advance(61)

        short_code = await registry.register("peer-2")

        assert await registry.resolve(short_code.code) == "peer-2"


class TestResolveAndRelease:
    """Tests for resolve and release."""

    async def test_unknown_code(self):
        registry = ShortCodeRegistry(MemoryStore())
        with pytest.raises(NotFoundError):
            await registry.resolve("ZZZZZZ")

    async def test_expired_code(self, clock):
        """Codes past their TTL do not resolve."""
        registry = ShortCodeRegistry(MemoryStore(clock=clock), transfer_ttl=60)
        short_code = await registry.register("peer-1")
        clock.advance(60)

        with pytest.raises(NotFoundError):
            await registry.resolve(short_code.code)

    async def test_release(self):
        """Released codes no longer resolve."""
        registry = ShortCodeRegistry(MemoryStore())
        short_code = await registry.register("peer-1")

        await registry.release(short_code.code.lower())

        with pytest.raises(NotFoundError):
            await registry.resolve(short_code.code)

    async def test_release_unknown_is_noop(self):
        registry = ShortCodeRegistry(MemoryStore())
        await registry.release("ZZZZZZ")
