from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from pesapal_service.errors import AuthError
from pesapal_service.services.token_cache import GatewayAuthCache, TokenCache

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def make_cache(expiries, clock):
    client = AsyncMock()
    client.request_token.side_effect = [(f"tok-{i}", exp) for i, exp in enumerate(expiries)]
    return GatewayAuthCache(client, TokenCache(), clock=clock, refresh_margin=60), client


@pytest.mark.asyncio
async def test_reuses_token_while_more_than_margin_left():
    clock = FakeClock(NOW)
    auth, client = make_cache([NOW + timedelta(minutes=5)], clock)

    assert await auth.get_valid_token() == "tok-0"
    clock.now = NOW + timedelta(minutes=3)
    assert await auth.get_valid_token() == "tok-0"
    assert client.request_token.await_count == 1


@pytest.mark.asyncio
async def test_refreshes_inside_safety_margin():
    clock = FakeClock(NOW)
    auth, client = make_cache([NOW + timedelta(minutes=5), NOW + timedelta(minutes=10)], clock)

    await auth.get_valid_token()
    clock.now = NOW + timedelta(minutes=4, seconds=30)  # 30s left
    assert await auth.get_valid_token() == "tok-1"
    assert client.request_token.await_count == 2


@pytest.mark.asyncio
async def test_failed_refresh_is_not_cached():
    clock = FakeClock(NOW)
    client = AsyncMock()
    client.request_token.side_effect = [AuthError("down"), ("tok-ok", NOW + timedelta(minutes=5))]
    auth = GatewayAuthCache(client, clock=clock)

    with pytest.raises(AuthError):
        await auth.get_valid_token()
    assert auth.cache.get() is None
    assert await auth.get_valid_token() == "tok-ok"


@pytest.mark.asyncio
async def test_invalidate_forces_refetch():
    clock = FakeClock(NOW)
    auth, client = make_cache([NOW + timedelta(hours=1), NOW + timedelta(hours=2)], clock)

    await auth.get_valid_token()
    auth.invalidate()
    assert await auth.get_valid_token() == "tok-1"
