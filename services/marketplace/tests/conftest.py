import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import create_async_engine

from app.catalog import ProductCatalog
from app.commands import OrderCoordinator
from app.queries import OrderLedger
from app.store import Store


class RecordingRedis:
    """publish / get / setex / delete だけを持つ Redis の代役"""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.published: list[tuple[str, dict]] = []
        self.deleted: list[str] = []

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("redis is down")

    async def publish(self, channel: str, message: str) -> int:
        self._check()
        self.published.append((channel, json.loads(message)))
        return 0

    async def get(self, key: str) -> str | None:
        self._check()
        return self.values.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self._check()
        self.values[key] = value
        self.ttls[key] = ttl

    async def delete(self, *keys: str) -> int:
        self._check()
        self.deleted.extend(keys)
        return sum(1 for key in keys if self.values.pop(key, None) is not None)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'marketplace.db'}"


@pytest.fixture
async def store(anyio_backend, database_url):
    engine = create_async_engine(database_url)
    store = Store(engine)
    await store.create_schema()
    yield store
    await engine.dispose()


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
def catalog(store):
    return ProductCatalog(store)


@pytest.fixture
def coordinator(store):
    return OrderCoordinator(store)


@pytest.fixture
def ledger(store):
    return OrderLedger(store)


@pytest.fixture
def broken_redis():
    return RecordingRedis(fail=True)
