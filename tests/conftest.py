"""
Pytest configuration and shared fixtures.
"""
import itertools
from decimal import Decimal

import pytest
from httpx import AsyncClient, ASGITransport

from builderledger.api.main import app, get_cache, get_datasource, get_locks, get_repo
from builderledger.core.entities.trade import Fill
from builderledger.core.services import UserLocks
from builderledger.infrastructure.cache.redis_service import RedisService
from builderledger.infrastructure.gateways.local_mock import LocalMockDataSource
from builderledger.infrastructure.persistence.memory_repo import InMemoryRepo

TEST_USER = "0x31ca8395cf837de08b24da3f660e77761dfb974b"
BUILDER_FEE = "0.05"

_tids = itertools.count(1000)


def _dec(value):
    return None if value is None else Decimal(str(value))


@pytest.fixture
def make_fill():
    """Factory for fills. ``builder=True`` attaches a positive builder fee."""
    def _make(
        time_ms,
        side,
        sz,
        px,
        builder=True,
        coin="BTC",
        user=TEST_USER,
        closed_pnl=None,
        fee="0",
        tid=None,
    ):
        return Fill(
            user=user,
            time_ms=time_ms,
            coin=coin,
            side=side,
            px=_dec(px),
            sz=_dec(sz),
            fee=_dec(fee),
            closed_pnl=_dec(closed_pnl),
            builder_fee=Decimal(BUILDER_FEE) if builder else None,
            tid=tid if tid is not None else str(next(_tids)),
        )
    return _make


@pytest.fixture
def repo():
    return InMemoryRepo()


@pytest.fixture
def datasource():
    return LocalMockDataSource()


@pytest.fixture
async def client(repo, datasource):
    """Async HTTP client for testing FastAPI endpoints against in-memory backends."""
    app.dependency_overrides[get_repo] = lambda: repo
    app.dependency_overrides[get_datasource] = lambda: datasource
    app.dependency_overrides[get_cache] = lambda: RedisService(None)
    app.dependency_overrides[get_locks] = UserLocks

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
