"""Tests for the expired refresh token sweeper."""

import asyncio
from datetime import timedelta

import pytest

from staffauth.config import Settings
from staffauth.service.sweeper import TokenSweeper
from staffauth.service.tokens import AccessTokenDenylist, TokenService
from staffauth.storage.memory import MemoryStore


class CountingTokens:
    def __init__(self, fail_times=0):
        self.calls = 0
        self.fail_times = fail_times

    def sweep_expired(self):
        self.calls += 1
        if self.calls <= self.fail_times:
            raise RuntimeError("db unavailable")
        return 0


async def _until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def identity(store):
    tenant = store.create_tenant("Acme")
    return store.create_identity("ana@acme.test", "hash", tenant_id=tenant.id)


@pytest.fixture
def tokens(store, clock):
    return TokenService(
        store, Settings(jwt_secret="sweeper-secret-0123456789abcdefghijklmn"), clock=clock
    )


class TestTokenSweeper:
    async def test_run_once_removes_expired_tokens_and_denylist_entries(self, tokens, identity, clock):
        denylist = AccessTokenDenylist(clock=clock)
        await denylist.add("old-jti", clock.now + timedelta(minutes=15))
        expired = tokens.issue_refresh_token(identity.id)
        clock.advance(days=8)
        fresh = tokens.issue_refresh_token(identity.id)

        removed = TokenSweeper(tokens, denylist).run_once()

        assert removed == 1
        assert tokens.find_refresh_token(expired) is None
        assert tokens.find_refresh_token(fresh) is not None
        assert len(denylist) == 0

    async def test_start_sweeps_immediately_and_stop_cancels(self):
        fake = CountingTokens()
        sweeper = TokenSweeper(fake, interval=3600)

        await sweeper.start()
        await _until(lambda: fake.calls == 1)
        assert sweeper.running

        await sweeper.stop()

        assert not sweeper.running
        assert fake.calls == 1

    async def test_start_twice_keeps_one_loop(self):
        fake = CountingTokens()
        sweeper = TokenSweeper(fake, interval=3600)

        await sweeper.start()
        first = sweeper._task
        await sweeper.start()

        assert sweeper._task is first
        await sweeper.stop()

    async def test_failure_does_not_kill_the_loop(self):
        fake = CountingTokens(fail_times=1)
        sweeper = TokenSweeper(fake, interval=0)

        await sweeper.start()
        await _until(lambda: fake.calls >= 2)
        assert sweeper.running

        await sweeper.stop()
