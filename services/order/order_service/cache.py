"""
Order Service — キャッシュ層 (Redis)

読み取り結果を JSON で Redis に置く read-through キャッシュ。
キーは "<namespace>::<key>" 形式で、namespace 単位の一括削除ができる。

  order     注文 1 件            (TTL 5 分)
  orders    ユーザー別・全件一覧  (TTL 10 分)
  product   商品 1 件            (TTL 15 分)
  products  商品一覧              (TTL 30 分)

キャッシュはトランザクションの外側にある。削除は必ず commit の後に行う。
Redis の障害は操作の失敗にはせず、キャッシュミスとして扱う。
"""

import logging
from typing import Awaitable, Callable, TypeVar

import redis.asyncio as aioredis
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError
from redis.exceptions import RedisError

from . import config

logger = logging.getLogger(__name__)

ORDER = "order"
ORDERS = "orders"
PRODUCT = "product"
PRODUCTS = "products"

DEFAULT_TTLS = {
    ORDER: config.CACHE_TTL_ORDER,
    ORDERS: config.CACHE_TTL_ORDERS,
    PRODUCT: config.CACHE_TTL_PRODUCT,
    PRODUCTS: config.CACHE_TTL_PRODUCTS,
}

M = TypeVar("M", bound=BaseModel)


def cache_key(namespace: str, key) -> str:
    return f"{namespace}::{key}"


class Cache:
    def __init__(self, redis: aioredis.Redis, ttls: dict[str, int] | None = None) -> None:
        self.redis = redis
        self.ttls = {**DEFAULT_TTLS, **(ttls or {})}

    async def get(self, namespace: str, key) -> str | None:
        try:
            return await self.redis.get(cache_key(namespace, key))
        except RedisError:
            logger.warning("Cache get failed: %s", cache_key(namespace, key), exc_info=True)
            return None

    async def set(self, namespace: str, key, value: str) -> None:
        try:
            await self.redis.set(cache_key(namespace, key), value, ex=self.ttls[namespace])
        except RedisError:
            logger.warning("Cache set failed: %s", cache_key(namespace, key), exc_info=True)

    async def evict(self, namespace: str, key) -> None:
        try:
            await self.redis.delete(cache_key(namespace, key))
        except RedisError:
            logger.warning("Cache evict failed: %s", cache_key(namespace, key), exc_info=True)

    async def evict_all(self, namespace: str) -> None:
        """namespace 配下のキーをすべて削除する (SCAN + DEL)。"""
        try:
            keys = [k async for k in self.redis.scan_iter(match=cache_key(namespace, "*"))]
            if keys:
                await self.redis.delete(*keys)
        except RedisError:
            logger.warning("Cache evict_all failed: %s", namespace, exc_info=True)

    async def read_through(
        self,
        namespace: str,
        key,
        model: type[M],
        loader: Callable[[], Awaitable[M]],
    ) -> M:
        """
        キャッシュにあればそれを返し、なければ loader で読み込んで保存する。
        loader の例外 (NotFound など) はそのまま伝播し、何もキャッシュしない。
        """
        cached = await self.get(namespace, key)
        if cached is not None:
            try:
                return model.model_validate_json(cached)
            except SchemaError:
                logger.warning("Discarding unreadable cache entry: %s", cache_key(namespace, key))

        value = await loader()
        await self.set(namespace, key, value.model_dump_json())
        return value
