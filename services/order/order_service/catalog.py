"""
Order Service — カタログ (商品・ユーザー)

注文処理が参照する商品とユーザーの最低限の管理。
商品の在庫を注文処理の外で変えるのは create_product だけで、
以降の在庫変更は OrderLifecycle のトランザクション内でのみ行う。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import cache as cache_ns
from .cache import Cache
from .errors import ConflictError, NotFound, ValidationError
from .models import MAX_INT, Product, User, in_int_range, to_money
from .schema import products, users

logger = logging.getLogger(__name__)


async def user_exists(session: AsyncSession, user_id: int) -> bool:
    if not in_int_range(user_id):
        return False
    result = await session.execute(select(users.c.id).where(users.c.id == user_id))
    return result.first() is not None


def _to_product(row) -> Product:
    return Product(
        id=row.id,
        name=row.name,
        description=row.description,
        price=to_money(row.price),
        stock=row.stock,
        category=row.category,
        brand=row.brand,
        image_url=row.image_url,
        sku=row.sku,
        is_active=row.is_active,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class ProductList(BaseModel):
    items: list[Product]


class Catalog:
    def __init__(self, session_factory: async_sessionmaker, cache: Cache) -> None:
        self.session_factory = session_factory
        self.cache = cache

    async def create_user(self, username: str, email: str) -> User:
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    result = await session.execute(
                        insert(users).values(username=username, email=email, created_at=now)
                    )
            except IntegrityError as e:
                raise ConflictError(f"User already exists: {username}") from e
        return User(id=result.inserted_primary_key[0], username=username, email=email, created_at=now)

    async def create_product(
        self,
        name: str,
        price: Decimal,
        stock: int,
        sku: str | None = None,
        description: str | None = None,
        category: str | None = None,
        brand: str | None = None,
        image_url: str | None = None,
        is_active: bool = True,
    ) -> Product:
        if not name or not name.strip():
            raise ValidationError("Product name is required")
        price = to_money(price)
        if price <= 0:
            raise ValidationError("Product price must be greater than 0")
        if stock < 0:
            raise ValidationError("Product stock must be >= 0")
        if stock > MAX_INT:
            raise ValidationError(f"Product stock must be <= {MAX_INT}")

        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    if sku:
                        existing = await session.execute(
                            select(products.c.id).where(products.c.sku == sku)
                        )
                        if existing.first() is not None:
                            raise ConflictError(f"Product with SKU {sku} already exists")
                    result = await session.execute(
                        insert(products).values(
                            name=name,
                            description=description,
                            price=price,
                            stock=stock,
                            category=category,
                            brand=brand,
                            image_url=image_url,
                            sku=sku,
                            is_active=is_active,
                            created_at=now,
                            updated_at=now,
                        )
                    )
            except IntegrityError as e:
                raise ConflictError(f"Product with SKU {sku} already exists") from e

        await self.cache.evict_all(cache_ns.PRODUCTS)
        logger.info("Product created: id=%s, sku=%s", result.inserted_primary_key[0], sku)
        return Product(
            id=result.inserted_primary_key[0],
            name=name,
            description=description,
            price=price,
            stock=stock,
            category=category,
            brand=brand,
            image_url=image_url,
            sku=sku,
            is_active=is_active,
            created_at=now,
            updated_at=now,
        )

    async def get_product(self, product_id: int) -> Product:
        async def load() -> Product:
            if not in_int_range(product_id):
                raise NotFound(f"Product not found with id: {product_id}")
            async with self.session_factory() as session:
                result = await session.execute(select(products).where(products.c.id == product_id))
                row = result.fetchone()
            if not row:
                raise NotFound(f"Product not found with id: {product_id}")
            return _to_product(row)

        return await self.cache.read_through(cache_ns.PRODUCT, product_id, Product, load)

    async def list_products(self, active_only: bool = False) -> list[Product]:
        async def load() -> ProductList:
            stmt = select(products).order_by(products.c.name, products.c.id)
            if active_only:
                stmt = stmt.where(products.c.is_active.is_(True))
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return ProductList(items=[_to_product(row) for row in result.fetchall()])

        key = "active" if active_only else "all"
        page = await self.cache.read_through(cache_ns.PRODUCTS, key, ProductList, load)
        return page.items

    async def deactivate_product(self, product_id: int) -> Product:
        if not in_int_range(product_id):
            raise NotFound(f"Product not found with id: {product_id}")
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(products)
                    .where(products.c.id == product_id)
                    .values(is_active=False, updated_at=now)
                )
                if result.rowcount != 1:
                    raise NotFound(f"Product not found with id: {product_id}")

        await self.cache.evict(cache_ns.PRODUCT, product_id)
        await self.cache.evict_all(cache_ns.PRODUCTS)
        return await self.get_product(product_id)
