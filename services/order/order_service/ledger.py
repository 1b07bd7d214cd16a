"""
Order Service — 在庫台帳 (Inventory Ledger)

商品の在庫数 (products.stock) を読み書きする。
呼び出し側のトランザクション内で使う前提で、commit はしない。

同時実行制御:
  1. lock_products で対象商品の行を id 昇順に FOR UPDATE でロックする
     （ロック順を固定してデッドロックを防ぐ）
  2. deduct_stock は「stock >= :qty のときだけ減らす」条件付き UPDATE
     (compare-and-swap)。更新行数 0 なら在庫不足。
  どちらか一方だけでも、2 つの注文が同時に在庫チェックを通過して
  在庫をマイナスにすることはない。
"""

from datetime import datetime
from typing import Iterable, NamedTuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InsufficientStock, NotFound
from .schema import products


class StockChange(NamedTuple):
    """1 回の在庫変更の前後の値"""
    product_id: int
    product_name: str
    old_stock: int
    new_stock: int


async def lock_products(session: AsyncSession, product_ids: Iterable[int]) -> dict:
    """
    商品行を id 昇順にロックして {id: row} を返す。
    存在しない id は結果に含まれない（NotFound の判定は呼び出し側）。
    """
    ids = sorted(set(product_ids))
    if not ids:
        return {}
    result = await session.execute(
        select(products.c.id, products.c.name, products.c.price, products.c.stock)
        .where(products.c.id.in_(ids))
        .order_by(products.c.id)
        .with_for_update()
    )
    return {row.id: row for row in result.fetchall()}


async def get_stock(session: AsyncSession, product_id: int):
    result = await session.execute(
        select(products.c.name, products.c.stock).where(products.c.id == product_id)
    )
    row = result.fetchone()
    if not row:
        raise NotFound(f"Product not found with id: {product_id}")
    return row


async def deduct_stock(
    session: AsyncSession,
    product_id: int,
    product_name: str,
    quantity: int,
    now: datetime,
) -> StockChange:
    """在庫を quantity だけ減らす。足りなければ InsufficientStock。"""
    result = await session.execute(
        update(products)
        .where(products.c.id == product_id, products.c.stock >= quantity)
        .values(stock=products.c.stock - quantity, updated_at=now)
    )
    if result.rowcount != 1:
        raise InsufficientStock(product_id, product_name, quantity)

    row = await get_stock(session, product_id)
    return StockChange(product_id, row.name, row.stock + quantity, row.stock)


async def restore_stock(
    session: AsyncSession,
    product_id: int,
    quantity: int,
    now: datetime,
) -> StockChange:
    """キャンセル・明細差し替えで在庫を quantity だけ戻す。"""
    result = await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(stock=products.c.stock + quantity, updated_at=now)
    )
    if result.rowcount != 1:
        raise NotFound(f"Product not found with id: {product_id}")

    row = await get_stock(session, product_id)
    return StockChange(product_id, row.name, row.stock - quantity, row.stock)
