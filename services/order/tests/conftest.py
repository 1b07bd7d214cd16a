# tests/conftest.py
import fnmatch
import json
from decimal import Decimal

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from order_service.cache import Cache
from order_service.catalog import Catalog
from order_service.emitter import EventEmitter
from order_service.lifecycle import OrderLifecycle
from order_service.schema import metadata, products


# ==========================
# Redis のインメモリ代替
# ==========================

class FakeRedis:
    """Cache / EventEmitter が使うコマンドだけを実装したテスト用 Redis"""

    def __init__(self):
        self.values: dict[str, str] = {}
        self.expiry: dict[str, int | None] = {}
        self.streams: dict[str, list[tuple[str, dict]]] = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self.values[key] = value
        self.expiry[key] = ex
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match=None):
        for key in list(self.values):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def xadd(self, name, fields, maxlen=None, approximate=True):
        entries = self.streams.setdefault(name, [])
        entry_id = f"{len(entries) + 1}-0"
        entries.append((entry_id, dict(fields)))
        return entry_id

    async def xread(self, streams, count=None, block=None):
        # "$" (新着のみ) はこのテスト用実装では何も返さない
        response = []
        for name, last_id in streams.items():
            if last_id == "$":
                continue
            after = int(last_id.split("-")[0])
            entries = [
                (entry_id, fields)
                for entry_id, fields in self.streams.get(name, [])
                if int(entry_id.split("-")[0]) > after
            ]
            if count:
                entries = entries[:count]
            if entries:
                response.append((name, entries))
        return response

    def events(self, stream: str) -> list[dict]:
        return [
            {
                "key": fields["key"],
                "event_type": fields["event_type"],
                "data": json.loads(fields["data"]),
            }
            for _, fields in self.streams.get(stream, [])
        ]


class BrokenRedis(FakeRedis):
    """すべてのコマンドが接続エラーになる Redis"""

    async def get(self, key):
        raise RedisConnectionError("redis is down")

    async def set(self, key, value, ex=None):
        raise RedisConnectionError("redis is down")

    async def delete(self, *keys):
        raise RedisConnectionError("redis is down")

    async def scan_iter(self, match=None):
        raise RedisConnectionError("redis is down")
        yield  # pragma: no cover

    async def xadd(self, name, fields, maxlen=None, approximate=True):
        raise RedisConnectionError("redis is down")


# =========================================
# テストごとに独立した SQLite ファイル DB
# =========================================

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")

    # SQLite は FOR UPDATE を持たないので、トランザクション開始時に
    # 書き込みロックを取る (BEGIN IMMEDIATE)。並行テストで書き込みが直列化される。
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def broken_redis():
    return BrokenRedis()


@pytest.fixture
def cache(redis):
    return Cache(redis)


@pytest_asyncio.fixture
async def emitter(redis):
    emitter = EventEmitter(redis, prefix="")
    emitter.start()
    yield emitter
    await emitter.stop()


@pytest.fixture
def lifecycle(session_factory, cache, emitter):
    return OrderLifecycle(session_factory, cache, emitter)


@pytest.fixture
def catalog(session_factory, cache):
    return Catalog(session_factory, cache)


@pytest_asyncio.fixture
async def user(catalog):
    return await catalog.create_user("alice", "alice@example.com")


@pytest_asyncio.fixture
async def product(catalog):
    return await catalog.create_product(
        name="Widget", price=Decimal("9.99"), stock=10, sku="WID-001"
    )


@pytest_asyncio.fixture
async def gadget(catalog):
    return await catalog.create_product(
        name="Gadget", price=Decimal("24.50"), stock=5, sku="GAD-001"
    )


async def stock_of(session_factory, product_id: int) -> int:
    async with session_factory() as session:
        result = await session.execute(
            select(products.c.stock).where(products.c.id == product_id)
        )
        return result.scalar_one()


@pytest.fixture
def read_stock(session_factory):
    async def _read(product_id: int) -> int:
        return await stock_of(session_factory, product_id)

    return _read
