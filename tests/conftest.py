import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

# Ensure the repo root (containing the `playguard` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
REPO_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from playguard.anomaly import AnomalyLogger
from playguard.gateway import IntegrityGateway
from playguard.limits import default_registry
from playguard.models import Base
from playguard.ratelimit import RateLimitRules
from playguard.sessions import SessionTokenManager
from playguard.store import MemoryStore, SqlStore

WALLET = "0x" + "a" * 64
OTHER_WALLET = "0x" + "b" * 64
T0 = datetime(2025, 3, 1, 12, 0, 0)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs):
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def memory_store():
    return MemoryStore()


@asynccontextmanager
async def sqlite_store(path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        yield SqlStore(factory)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture()
async def sql_store(tmp_path):
    async with sqlite_store(tmp_path / "playguard-test.db") as s:
        yield s


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    """Runs a test against both store implementations."""
    if request.param == "memory":
        yield MemoryStore()
        return
    async with sqlite_store(tmp_path / "playguard-param.db") as s:
        yield s


@pytest.fixture()
def sessions(store, clock):
    return SessionTokenManager(
        store, default_registry,
        expiry=timedelta(seconds=180), retention=timedelta(hours=1),
        enforce_allowlist=True, clock=clock,
    )


@pytest.fixture()
def anomalies(store):
    return AnomalyLogger(store, max_queue=100)


@pytest.fixture()
def gateway(store, sessions, anomalies, clock):
    return IntegrityGateway(
        store, sessions, anomalies,
        registry=default_registry,
        rules=RateLimitRules(max_per_hour=20, max_per_day=100, min_interval_ms=5000),
        duration_tolerance_ms=10_000,
        clock=clock,
    )
