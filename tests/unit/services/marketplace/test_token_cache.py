import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from app.core.exceptions import AuthenticationFailedError, InvalidCredentialsError
from app.services.marketplace.token_cache import TokenCache

EMAIL = "owner@fordhamcars.test"


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 16, 9, 0, 0))


"""
1. Caching Tests
"""

@pytest.mark.asyncio
async def test_token_is_reused_while_fresh(fake_client, token_cache):
    first = await token_cache.get_token(EMAIL)
    second = await token_cache.get_token(EMAIL)

    assert first is second
    assert fake_client.auth_calls == 1


@pytest.mark.asyncio
async def test_identity_key_is_case_insensitive(fake_client, token_cache):
    await token_cache.get_token(EMAIL)
    await token_cache.get_token("  Owner@FordhamCars.test ")

    assert fake_client.auth_calls == 1


@pytest.mark.asyncio
async def test_identities_get_separate_tokens(fake_client, token_cache):
    owner = await token_cache.get_token(EMAIL)
    other = await token_cache.get_token("other@dealer.test")

    assert owner.access_token != other.access_token
    assert fake_client.auth_calls == 2
    assert other.store_info["email"] == "other@dealer.test"


@pytest.mark.asyncio
async def test_token_refreshes_inside_margin(fake_client, credentials_loader, clock):
    """expires_in=900 with a 60s margin: reused until 840s, refreshed after"""
    cache = TokenCache(fake_client, credentials_loader, refresh_margin_seconds=60, clock=clock)

    first = await cache.get_token(EMAIL)
    assert first.expires_at == clock.now + timedelta(seconds=900)

    clock.advance(800)
    assert (await cache.get_token(EMAIL)) is first

    clock.advance(50)
    refreshed = await cache.get_token(EMAIL)
    assert refreshed is not first
    assert fake_client.auth_calls == 2


@pytest.mark.asyncio
async def test_expiry_from_expires_at(fake_client, credentials_loader, clock):
    cache = TokenCache(fake_client, credentials_loader, clock=clock)
    fake_client.authenticate = AsyncMock(
        return_value={"access_token": "tok", "expires_at": "2026-10-16T09:30:00Z"}
    )

    token = await cache.get_token(EMAIL)

    assert token.expires_at == datetime(2026, 10, 16, 9, 30, 0)


@pytest.mark.asyncio
async def test_expiry_falls_back_to_default(fake_client, credentials_loader, clock):
    cache = TokenCache(fake_client, credentials_loader, default_expires_in=300, clock=clock)
    fake_client.authenticate = AsyncMock(return_value={"access_token": "tok"})

    token = await cache.get_token(EMAIL)

    assert token.expires_at == clock.now + timedelta(seconds=300)


@pytest.mark.asyncio
async def test_invalidate_forces_reauthentication(fake_client, token_cache):
    await token_cache.get_token(EMAIL)

    assert token_cache.invalidate(EMAIL) is True
    assert token_cache.peek(EMAIL) is None
    assert token_cache.invalidate(EMAIL) is False

    await token_cache.get_token(EMAIL)
    assert fake_client.auth_calls == 2


def test_token_repr_hides_secret():
    from app.services.marketplace.token_cache import CachedToken

    token = CachedToken(identity_key=EMAIL, access_token="super-secret", expires_at=datetime(2026, 1, 1))
    assert "super-secret" not in repr(token)


"""
2. Single-flight Refresh Tests
"""

@pytest.mark.asyncio
async def test_concurrent_callers_share_one_authentication(fake_client, token_cache):
    fake_client.auth_delay = 0.05

    tokens = await asyncio.gather(*[token_cache.get_token(EMAIL) for _ in range(10)])

    assert fake_client.auth_calls == 1
    assert len({t.access_token for t in tokens}) == 1
    assert token_cache.stats()["refreshes_in_flight"] == 0


@pytest.mark.asyncio
async def test_concurrent_failure_reaches_every_caller(fake_client, token_cache):
    fake_client.auth_delay = 0.05
    fake_client.errors["authenticate"] = InvalidCredentialsError("AutoTrader rejected the API credentials")

    results = await asyncio.gather(
        *[token_cache.get_token(EMAIL) for _ in range(5)],
        return_exceptions=True,
    )

    assert fake_client.auth_calls == 1
    assert all(isinstance(r, InvalidCredentialsError) for r in results)
    assert token_cache.peek(EMAIL) is None

    # The failed refresh is not remembered
    del fake_client.errors["authenticate"]
    token = await token_cache.get_token(EMAIL)
    assert token.access_token == "token-2"


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_refresh(fake_client, token_cache):
    fake_client.auth_delay = 0.05

    first = asyncio.create_task(token_cache.get_token(EMAIL))
    second = asyncio.create_task(token_cache.get_token(EMAIL))
    await asyncio.sleep(0.01)
    first.cancel()

    token = await second
    assert token.access_token == "token-1"
    assert fake_client.auth_calls == 1
    with pytest.raises(asyncio.CancelledError):
        await first


@pytest.mark.asyncio
async def test_missing_credentials_propagate(fake_client):
    async def no_credentials(email):
        raise AuthenticationFailedError("Missing AutoTrader API credentials")

    cache = TokenCache(fake_client, no_credentials)

    with pytest.raises(AuthenticationFailedError):
        await cache.get_token(EMAIL)
    assert fake_client.auth_calls == 0


@pytest.mark.asyncio
async def test_stats(token_cache):
    await token_cache.get_token(EMAIL)

    assert token_cache.stats() == {
        "cached_identities": 1,
        "fresh_tokens": 1,
        "refreshes_in_flight": 0,
    }

    token_cache.clear()
    assert token_cache.stats()["cached_identities"] == 0
