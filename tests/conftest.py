from decimal import Decimal

import fakeredis.aioredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from adapters.signatures import MockSignatureVerifier
from api.deps import get_cache_store, get_signature_verifier
from api.main import app
from domain.aggregation import AggregationService
from domain.cache import CachedReadService, ReadThroughCache
from domain.services import BetLifecycleService
from infra.db import Base, get_async_db
from infra.redis import RedisCacheStore

from helpers import ALICE, make_hash


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"timeout": 5},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest_asyncio.fixture
async def async_db(session_factory):
    """Create an async test database session"""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def cache_store(redis_client):
    return RedisCacheStore(redis_client)


@pytest.fixture
def cache(cache_store):
    return ReadThroughCache(cache_store)


@pytest.fixture
def lifecycle(async_db, cache):
    return BetLifecycleService(async_db, cache, daily_limit=100)


@pytest.fixture
def aggregation(async_db):
    return AggregationService(async_db, min_bets=5)


@pytest.fixture
def reads(async_db, cache):
    return CachedReadService(async_db, cache)


@pytest.fixture
def place(lifecycle):
    """Place a bet with sensible defaults"""
    async def _place(user=ALICE, amount="10", token="ETH", direction="up", duration=300, **kwargs):
        return await lifecycle.place_bet(
            user_address=user,
            token=token,
            amount=amount,
            direction=direction,
            duration=duration,
            tx_hash=kwargs.pop("tx_hash", None) or make_hash(),
            start_price=kwargs.pop("start_price", "2000.50"),
            commit_hash=kwargs.pop("commit_hash", None) or make_hash(),
            **kwargs,
        )
    return _place


@pytest.fixture
def settle(lifecycle):
    """Settle a bet; payout defaults to 1.96x the stake for winners"""
    async def _settle(bet, is_winner=True, payout=None, end_price="2100"):
        if payout is None:
            payout = str(Decimal(bet.amount) * Decimal("1.96")) if is_winner else "0"
        return await lifecycle.settle_bet(
            bet_id=bet.id,
            end_price=end_price,
            is_winner=is_winner,
            payout=payout,
            settle_tx_hash=make_hash(),
        )
    return _settle


@pytest.fixture
def signature_verifier():
    return MockSignatureVerifier()


@pytest_asyncio.fixture
async def client(session_factory, cache_store, signature_verifier):
    """API client wired to the test database, fakeredis and a mock verifier"""
    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_db] = override_db
    app.dependency_overrides[get_cache_store] = lambda: cache_store
    app.dependency_overrides[get_signature_verifier] = lambda: signature_verifier

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
