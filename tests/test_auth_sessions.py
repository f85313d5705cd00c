"""
Tests for session storage and the LUD-22 session state machine.
"""

import asyncio
import json
from urllib.parse import parse_qs, urlparse

import pytest

from conftest import FakeClock

from goldenpie.auth import (
    AuthSessionManager,
    InMemorySessionStore,
    InvalidAddress,
    InvalidNonce,
    InvalidRequest,
    RedisSessionStore,
    SessionExpired,
    SessionNotFound,
    create_store,
    is_lightning_address,
)

CALLBACK = "https://auth.example.com/auth/callback"


class YieldingStore(InMemorySessionStore):
    """Yields to the event loop on every read so concurrent redeems interleave."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)


class FakeRedis:
    """Just enough of redis.asyncio.Redis for RedisSessionStore."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, px=None):
        self.data[key] = value
        self.ttls[key] = px

    async def delete(self, key):
        self.data.pop(key, None)

    async def getdel(self, key):
        return self.data.pop(key, None)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def manager():
    return AuthSessionManager(InMemorySessionStore(), ttl=3600, app_name="GoldenPie")


# =============================================================================
# Storage
# =============================================================================

class TestInMemorySessionStore:

    @pytest.mark.asyncio
    async def test_set_get_delete(self):
        store = InMemorySessionStore()
        await store.set("k", {"a": 1}, ttl=10)
        assert await store.get("k") == {"a": 1}
        await store.delete("k")
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_take_is_single_use(self):
        store = InMemorySessionStore()
        await store.set("k", {"a": 1}, ttl=10)
        assert await store.take("k") == {"a": 1}
        assert await store.take("k") is None

    @pytest.mark.asyncio
    async def test_expiry_and_purge(self):
        clock = FakeClock()
        store = InMemorySessionStore(clock=clock)
        await store.set("short", {}, ttl=10)
        await store.set("long", {}, ttl=100)

        clock.advance(11)
        assert await store.get("short") is None
        assert await store.purge_expired() == 0

        clock.advance(100)
        assert await store.purge_expired() == 1
        assert len(store) == 0

    def test_kind(self):
        assert InMemorySessionStore().kind == "in-memory"
        assert create_store(None).kind == "in-memory"


class TestRedisSessionStore:

    @pytest.mark.asyncio
    async def test_round_trip_with_ttl(self):
        client = FakeRedis()
        store = RedisSessionStore("redis://localhost:6379", client=client)

        await store.set("session:1", {"slot_number": 1}, ttl=3600)
        assert client.ttls["session:1"] == 3600000
        assert json.loads(client.data["session:1"]) == {"slot_number": 1}
        assert await store.get("session:1") == {"slot_number": 1}

        assert await store.take("session:1") == {"slot_number": 1}
        assert await store.take("session:1") is None

        await store.close()
        assert client.closed
        assert store.kind == "redis"


# =============================================================================
# Session manager
# =============================================================================

class TestCreateSession:

    @pytest.mark.asyncio
    async def test_challenge_url(self, manager):
        created = await manager.create_session(2, CALLBACK)

        assert len(created.nonce) == 64
        url = urlparse(created.lnurl_address)
        assert f"{url.scheme}://{url.netloc}{url.path}" == CALLBACK
        query = parse_qs(url.query)
        assert query["tag"] == ["addressRequest"]
        assert query["k1"] == [created.nonce]
        assert query["metadata"] == ["Login as Player 2 - GoldenPie"]

    @pytest.mark.asyncio
    async def test_nonces_are_unique(self, manager):
        a = await manager.create_session(1, CALLBACK)
        b = await manager.create_session(1, CALLBACK)
        assert a.nonce != b.nonce
        assert a.session_id != b.session_id

    @pytest.mark.asyncio
    async def test_slot_range(self, manager):
        with pytest.raises(InvalidRequest):
            await manager.create_session(0, CALLBACK)
        with pytest.raises(InvalidRequest):
            await manager.create_session(5, CALLBACK)


class TestRedeem:

    @pytest.mark.asyncio
    async def test_status_before_and_after(self, manager):
        created = await manager.create_session(1, CALLBACK)

        status = await manager.status(created.session_id)
        assert status.authenticated is False
        assert status.address is None

        await manager.redeem(created.nonce, "alice@example.com")

        for _ in range(3):
            status = await manager.status(created.session_id)
            assert status.authenticated is True
            assert status.address == "alice@example.com"
            assert status.slot_number == 1

    @pytest.mark.asyncio
    async def test_resolve_challenge_is_repeatable(self, manager):
        created = await manager.create_session(3, CALLBACK)

        first = await manager.resolve_challenge(created.nonce, CALLBACK)
        second = await manager.resolve_challenge(created.nonce, CALLBACK)

        assert first == second
        assert first.to_dict() == {
            "tag": "addressRequest",
            "callback": CALLBACK,
            "k1": created.nonce,
            "metadata": "Login as Player 3 - GoldenPie",
        }

    @pytest.mark.asyncio
    async def test_nonce_is_single_use(self, manager):
        created = await manager.create_session(1, CALLBACK)
        await manager.redeem(created.nonce, "alice@example.com")

        with pytest.raises(InvalidNonce):
            await manager.redeem(created.nonce, "mallory@example.com")
        with pytest.raises(InvalidNonce):
            await manager.resolve_challenge(created.nonce, CALLBACK)

        status = await manager.status(created.session_id)
        assert status.address == "alice@example.com"

    @pytest.mark.asyncio
    async def test_unknown_nonce(self, manager):
        with pytest.raises(InvalidNonce):
            await manager.redeem("00" * 32, "alice@example.com")
        with pytest.raises(InvalidNonce):
            await manager.redeem("", "alice@example.com")

    @pytest.mark.asyncio
    async def test_invalid_address_keeps_nonce_usable(self, manager):
        created = await manager.create_session(1, CALLBACK)

        with pytest.raises(InvalidAddress):
            await manager.redeem(created.nonce, "not-an-address")

        await manager.redeem(created.nonce, "alice@example.com")
        assert (await manager.status(created.session_id)).authenticated

    @pytest.mark.asyncio
    async def test_concurrent_redeem_single_winner(self):
        manager = AuthSessionManager(YieldingStore())
        created = await manager.create_session(1, CALLBACK)

        results = await asyncio.gather(
            manager.redeem(created.nonce, "alice@example.com"),
            manager.redeem(created.nonce, "bob@example.com"),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], InvalidNonce)

        status = await manager.status(created.session_id)
        assert status.address == winners[0].bound_address

        with pytest.raises(InvalidNonce):
            await manager.redeem(created.nonce, "carol@example.com")
        assert (await manager.status(created.session_id)).address == winners[0].bound_address


class TestExpiry:

    @pytest.mark.asyncio
    async def test_expired_session(self):
        clock = FakeClock()
        manager = AuthSessionManager(InMemorySessionStore(), ttl=60, clock=clock)
        created = await manager.create_session(1, CALLBACK)

        clock.advance(61)

        with pytest.raises(SessionExpired):
            await manager.status(created.session_id)
        with pytest.raises(InvalidNonce):
            await manager.redeem(created.nonce, "alice@example.com")

    @pytest.mark.asyncio
    async def test_expired_is_not_found(self, manager):
        assert issubclass(SessionExpired, SessionNotFound)
        with pytest.raises(SessionNotFound):
            await manager.status("no-such-session")


class TestAddressFormat:

    def test_lightning_addresses(self):
        assert is_lightning_address("alice@example.com")
        assert not is_lightning_address("alice")
        assert not is_lightning_address("@example.com")
        assert not is_lightning_address("alice@")
        assert not is_lightning_address("a@b@c")
