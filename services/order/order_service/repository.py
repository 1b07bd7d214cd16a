"""
Order Service — 注文リポジトリ

注文集約 (orders ヘッダ + order_items 明細) の永続化と検索。
書き込み系は呼び出し側のトランザクション内で使い、commit はしない。
"""

import secrets
from datetime import datetime

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ConflictError, ValidationError
from .models import MAX_INT, Order, OrderLine, OrderPage, OrderStatus, in_int_range, to_money
from .schema import order_items, orders

SORT_FIELDS = {
    "id": orders.c.id,
    "order_number": orders.c.order_number,
    "status": orders.c.status,
    "total_amount": orders.c.total_amount,
    "total_items": orders.c.total_items,
    "created_at": orders.c.created_at,
    "updated_at": orders.c.updated_at,
}
MAX_PAGE_SIZE = 100


def generate_order_number(now: datetime) -> str:
    return f"ORD-{now:%Y%m%d%H%M%S}-{secrets.token_hex(4).upper()}"


def check_paging(page: int, size: int, sort_by: str, sort_dir: str) -> None:
    if page < 0:
        raise ValidationError("page must be >= 0")
    if not 1 <= size <= MAX_PAGE_SIZE:
        raise ValidationError(f"size must be between 1 and {MAX_PAGE_SIZE}")
    if page * size > MAX_INT:
        raise ValidationError("page is out of range")
    if sort_by not in SORT_FIELDS:
        raise ValidationError(f"Unsupported sort field: {sort_by}")
    if sort_dir.upper() not in ("ASC", "DESC"):
        raise ValidationError(f"Unsupported sort direction: {sort_dir}")


# ── 書き込み ─────────────────────────────────────

async def insert_order(session: AsyncSession, values: dict) -> int:
    try:
        result = await session.execute(insert(orders).values(**values))
    except IntegrityError as e:
        raise ConflictError(
            f"Order number already exists: {values.get('order_number')}"
        ) from e
    return result.inserted_primary_key[0]


async def insert_lines(session: AsyncSession, order_id: int, lines: list[OrderLine]) -> None:
    for line in lines:
        result = await session.execute(
            insert(order_items).values(
                order_id=order_id,
                product_id=line.product_id,
                product_name=line.product_name,
                product_price=line.unit_price,
                quantity=line.quantity,
                subtotal=line.subtotal,
            )
        )
        line.id = result.inserted_primary_key[0]


async def delete_lines(session: AsyncSession, order_id: int) -> None:
    await session.execute(delete(order_items).where(order_items.c.order_id == order_id))


async def update_order(session: AsyncSession, order_id: int, values: dict) -> None:
    await session.execute(update(orders).where(orders.c.id == order_id).values(**values))


async def delete_order(session: AsyncSession, order_id: int) -> None:
    # SQLite では FK の CASCADE が既定で無効なので明細も明示的に消す
    await delete_lines(session, order_id)
    await session.execute(delete(orders).where(orders.c.id == order_id))


# ── 読み取り ─────────────────────────────────────

async def get_order(
    session: AsyncSession,
    order_id: int,
    for_update: bool = False,
) -> Order | None:
    """
    注文を明細付きで取得する。
    for_update=True のときはヘッダ行をロックし、同じ注文への
    同時更新（二重キャンセルによる在庫の二重戻しなど）を直列化する。
    """
    if not in_int_range(order_id):
        return None
    stmt = select(orders).where(orders.c.id == order_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    row = result.fetchone()
    if not row:
        return None
    lines = await _load_lines(session, [row.id])
    return _to_order(row, lines.get(row.id, []))


async def list_orders(
    session: AsyncSession,
    *,
    user_id: int | None = None,
    status: OrderStatus | None = None,
    page: int = 0,
    size: int = 10,
    sort_by: str = "id",
    sort_dir: str = "DESC",
) -> OrderPage:
    check_paging(page, size, sort_by, sort_dir)
    if user_id is not None and not in_int_range(user_id):
        return OrderPage(items=[], page=page, size=size, total=0)

    conditions = []
    if user_id is not None:
        conditions.append(orders.c.user_id == user_id)
    if status is not None:
        conditions.append(orders.c.status == OrderStatus(status).value)

    count = await session.execute(
        select(func.count()).select_from(orders).where(*conditions)
    )
    total = count.scalar_one()

    column = SORT_FIELDS[sort_by]
    order_by = column.desc() if sort_dir.upper() == "DESC" else column.asc()
    result = await session.execute(
        select(orders)
        .where(*conditions)
        .order_by(order_by, orders.c.id.asc())
        .limit(size)
        .offset(page * size)
    )
    rows = result.fetchall()
    lines = await _load_lines(session, [row.id for row in rows])
    return OrderPage(
        items=[_to_order(row, lines.get(row.id, [])) for row in rows],
        page=page,
        size=size,
        total=total,
    )


async def _load_lines(session: AsyncSession, order_ids: list[int]) -> dict[int, list[OrderLine]]:
    if not order_ids:
        return {}
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id.in_(order_ids))
        .order_by(order_items.c.id)
    )
    grouped: dict[int, list[OrderLine]] = {}
    for row in result.fetchall():
        grouped.setdefault(row.order_id, []).append(
            OrderLine(
                id=row.id,
                product_id=row.product_id,
                product_name=row.product_name,
                unit_price=to_money(row.product_price),
                quantity=row.quantity,
                subtotal=to_money(row.subtotal),
            )
        )
    return grouped


def _to_order(row, lines: list[OrderLine]) -> Order:
    return Order(
        id=row.id,
        order_number=row.order_number,
        user_id=row.user_id,
        status=OrderStatus(row.status),
        total_amount=to_money(row.total_amount),
        total_items=row.total_items,
        shipping_address=row.shipping_address,
        billing_address=row.billing_address,
        payment_method=row.payment_method,
        payment_status=row.payment_status,
        notes=row.notes,
        created_at=row.created_at,
        updated_at=row.updated_at,
        items=lines,
    )
