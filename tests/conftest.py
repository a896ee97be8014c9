"""
Shared fixtures: a file-backed SQLite store per test, fake clocks, fake Redis.
"""

import os

os.environ.setdefault("ENVIRONMENT", "testing")

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from fixbot.database import Base
import fixbot.models  # noqa: F401  (registers tables on Base.metadata)
from fixbot.models.webhook_schemas import InboundMessage


class WallClock:
    """Controllable tz-aware UTC clock."""

    def __init__(self, start: datetime = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class MonotonicClock:
    """Controllable monotonic clock in seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def set(self, key, value, ex=None, nx=False):
        self.ops.append(("set", key, value, ex, nx))
        return self

    def incr(self, key):
        self.ops.append(("incr", key))
        return self

    async def execute(self):
        results = []
        for op in self.ops:
            if op[0] == "set":
                _, key, value, ex, nx = op
                if nx and key in self.redis.values:
                    results.append(None)
                    continue
                self.redis.values[key] = str(value)
                if ex:
                    self.redis.ttls[key] = ex
                results.append(True)
            else:
                key = op[1]
                self.redis.values[key] = str(int(self.redis.values.get(key, 0)) + 1)
                results.append(int(self.redis.values[key]))
        self.ops = []
        return results


class FakeRedis:
    """Just enough of redis.asyncio for the distributed rate limiter."""

    def __init__(self):
        self.values = {}
        self.ttls = {}
        self.closed = False

    async def mget(self, keys):
        return [self.values.get(key) for key in keys]

    async def ttl(self, key):
        if key not in self.values:
            return -2
        return self.ttls.get(key, -1)

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def aclose(self):
        self.closed = True


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """
    async_sessionmaker on a throwaway SQLite file.

    A file (not :memory:) so every session gets its own connection and
    SQLite's locking serializes concurrent writers like a real store.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fixbot.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest.fixture
def wall_clock():
    return WallClock()


@pytest.fixture
def mono_clock():
    return MonotonicClock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


def make_message(message_id="wamid.m1", subject="4915112345678", message_type="text", **fields):
    """Build an InboundMessage the way the webhook would."""
    if message_type == "text":
        fields.setdefault("text", "My washing machine is leaking")
    if message_type == "interactive":
        fields.setdefault("reply_id", "btn_menu_new_ticket")
    if message_type in ("image", "audio", "video", "document", "sticker"):
        fields.setdefault("media_id", "media-123")
    return InboundMessage(message_id=message_id, subject=subject, message_type=message_type, **fields)
