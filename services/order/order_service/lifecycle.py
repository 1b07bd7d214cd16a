"""
Order Service — 注文ライフサイクル

注文の作成・変更・ステータス更新・キャンセル・削除を実行する中核。

1 つの操作 = 1 トランザクション:
  在庫の増減 (ledger) と注文集約の書き込み (repository) は同じ
  session.begin() の中で行い、途中で例外が出ればすべてロールバックする。
  明細が複数あっても、在庫の引き当ては全部成功するか全部なかったことになる。

commit の後:
  1. キャッシュを削除する（どの namespace を消すかは操作ごとに明示）
  2. イベントをキューに積む（配送は待たない。失敗しても操作は成功のまま）
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable

from pydantic import ValidationError as SchemaError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import cache as cache_ns
from . import ledger, repository
from .cache import Cache
from .catalog import user_exists
from .emitter import EventEmitter
from .errors import InvalidState, NotFound, ValidationError
from .events import (
    TOPIC_INVENTORY,
    TOPIC_NOTIFICATIONS,
    TOPIC_ORDER_STATUS,
    TOPIC_ORDERS,
    InventoryReason,
    InventoryUpdated,
    Notification,
    OrderCreated,
    OrderItemEvent,
    OrderStatusChanged,
)
from .ledger import StockChange
from .models import (
    MAX_INT,
    Order,
    OrderItemRequest,
    OrderLine,
    OrderPage,
    OrderStatus,
    PaymentStatus,
    to_money,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _check_items(items: Iterable) -> list[OrderItemRequest]:
    try:
        checked = [
            item if isinstance(item, OrderItemRequest) else OrderItemRequest.model_validate(item)
            for item in items or []
        ]
    except SchemaError as e:
        raise ValidationError(f"Invalid order item: {e}") from e
    if not checked:
        raise ValidationError("Order must contain at least one item")
    for item in checked:
        if item.quantity <= 0:
            raise ValidationError(
                f"Quantity must be greater than 0 for product: {item.product_id}"
            )
    return checked


def _check_shipping_address(shipping_address: str | None) -> None:
    if not shipping_address or not shipping_address.strip():
        raise ValidationError("Shipping address is required")


def _parse_status(status) -> OrderStatus:
    try:
        return OrderStatus(status)
    except ValueError as e:
        raise ValidationError(f"Unknown order status: {status}") from e


def _totals(lines: list[OrderLine]) -> tuple[Decimal, int]:
    total_amount = sum((line.subtotal for line in lines), Decimal("0.00"))
    total_items = sum(line.quantity for line in lines)
    if total_items > MAX_INT:
        raise ValidationError(f"Order may contain at most {MAX_INT} items")
    return to_money(total_amount), total_items


# ── イベント組み立て ─────────────────────────────

def _inventory_events(
    changes: list[StockChange],
    reason: InventoryReason,
    order_id: int,
    at: datetime,
) -> list[tuple]:
    return [
        (
            TOPIC_INVENTORY,
            change.product_id,
            InventoryUpdated(
                product_id=change.product_id,
                product_name=change.product_name,
                old_stock=change.old_stock,
                new_stock=change.new_stock,
                quantity_changed=change.new_stock - change.old_stock,
                reason=reason,
                order_id=order_id,
                updated_at=at,
            ),
        )
        for change in changes
    ]


def _order_created(order: Order) -> tuple:
    return (
        TOPIC_ORDERS,
        order.id,
        OrderCreated(
            order_id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            total_amount=order.total_amount,
            items=[
                OrderItemEvent(
                    product_id=line.product_id,
                    product_name=line.product_name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    subtotal=line.subtotal,
                )
                for line in order.items
            ],
            shipping_address=order.shipping_address,
            created_at=order.created_at,
        ),
    )


def _status_changed(order: Order, old_status: OrderStatus) -> tuple:
    return (
        TOPIC_ORDER_STATUS,
        order.id,
        OrderStatusChanged(
            order_id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            old_status=old_status.value,
            new_status=order.status.value,
            updated_at=order.updated_at,
        ),
    )


def _notification(order: Order, message: str, type_: str, at: datetime) -> tuple:
    return (
        TOPIC_NOTIFICATIONS,
        order.user_id,
        Notification(user_id=order.user_id, message=message, type=type_, timestamp=at),
    )


class OrderLifecycle:
    """
    注文ライフサイクルエンジン

    依存はすべてコンストラクタで受け取る:
      session_factory  トランザクション境界 (SQLAlchemy AsyncSession)
      cache            読み取りキャッシュ (Redis)
      emitter          イベント発行キュー (Redis Streams)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        cache: Cache,
        emitter: EventEmitter,
    ) -> None:
        self.session_factory = session_factory
        self.cache = cache
        self.emitter = emitter

    # ── Command (書き込み) ───────────────────────

    async def create_order(
        self,
        user_id: int,
        shipping_address: str | None,
        billing_address: str | None,
        payment_method: str | None,
        notes: str | None,
        items: Iterable,
    ) -> Order:
        """
        注文作成

        1. 明細ごとに商品を確認し、在庫を引き当てる（条件付き UPDATE）
        2. 単価・商品名を注文時点の値で明細にコピーする
        3. 注文 + 明細 + 在庫を 1 トランザクションで commit
        4. キャッシュ削除 → OrderCreated / InventoryUpdated を発行
        """
        checked = _check_items(items)
        _check_shipping_address(shipping_address)
        now = _now()

        async with self.session_factory() as session:
            async with session.begin():
                if not await user_exists(session, user_id):
                    raise NotFound(f"User not found with id: {user_id}")

                lines, deducted = await self._deduct_lines(session, checked, now)
                total_amount, total_items = _totals(lines)

                order_id = await repository.insert_order(
                    session,
                    {
                        "order_number": repository.generate_order_number(now),
                        "user_id": user_id,
                        "status": OrderStatus.PENDING.value,
                        "total_amount": total_amount,
                        "total_items": total_items,
                        "shipping_address": shipping_address,
                        "billing_address": billing_address,
                        "payment_method": payment_method,
                        "payment_status": None,
                        "notes": notes,
                        "created_at": now,
                        "updated_at": now,
                    },
                )
                await repository.insert_lines(session, order_id, lines)
                order = await repository.get_order(session, order_id)

        logger.info(
            "Order created: id=%s, number=%s, total=%s, items=%s",
            order.id, order.order_number, order.total_amount, order.total_items,
        )
        await self._evict(products=True)
        self._emit(lambda: [
            _order_created(order),
            *_inventory_events(deducted, InventoryReason.ORDER_CREATED, order.id, now),
            _notification(order, f"Order {order.order_number} has been placed", "ORDER_CREATED", now),
        ])
        return order

    async def update_order_status(self, order_id: int, new_status) -> Order:
        """
        ステータス更新

        遷移の順序は制限しない。ただしキャンセル済みの注文を
        別のステータスに戻すことはできない（在庫はすでに戻してある）。
        CANCELLED への変更では在庫を戻し、支払いを REFUNDED にする。
        """
        new_status = _parse_status(new_status)
        now = _now()
        restored: list[StockChange] = []

        async with self.session_factory() as session:
            async with session.begin():
                order = await self._load_for_update(session, order_id)
                old_status = order.status
                if old_status == OrderStatus.CANCELLED and new_status != OrderStatus.CANCELLED:
                    raise InvalidState(f"Cannot change status of a cancelled order: {order_id}")

                values = {"status": new_status.value, "updated_at": now}
                if new_status == OrderStatus.CANCELLED and old_status != OrderStatus.CANCELLED:
                    restored = await self._restore_lines(session, order.items, now)
                    values["payment_status"] = PaymentStatus.REFUNDED.value

                await repository.update_order(session, order_id, values)
                order = await repository.get_order(session, order_id)

        logger.info("Order status changed: id=%s, %s -> %s", order_id, old_status.value, new_status.value)
        await self._evict(order_id, products=bool(restored))
        self._emit(lambda: [
            _status_changed(order, old_status),
            *_inventory_events(restored, InventoryReason.ORDER_CANCELLED, order_id, now),
            _notification(
                order,
                f"Order {order.order_number} is now {order.status.value}",
                "ORDER_STATUS_CHANGED",
                now,
            ),
        ])
        return order

    async def update_order(
        self,
        order_id: int,
        shipping_address: str | None,
        billing_address: str | None,
        payment_method: str | None,
        notes: str | None,
        items: Iterable,
    ) -> Order:
        """
        注文変更（明細は丸ごと差し替え）

        既存明細の在庫を戻してから、新しい明細で引き当て直す。
        戻しと引き当ては同じトランザクションなので、外から見えるのは
        変更前と変更後の在庫だけ。イベントの old/new はトランザクション内の
        実際の推移で、商品ごとに最初の old_stock が変更前、最後の
        new_stock が commit された値になる。
        """
        checked = _check_items(items)
        _check_shipping_address(shipping_address)
        now = _now()

        async with self.session_factory() as session:
            async with session.begin():
                order = await self._load_for_update(session, order_id)
                if order.status == OrderStatus.CANCELLED:
                    raise InvalidState(f"Cannot update a cancelled order: {order_id}")

                await ledger.lock_products(
                    session,
                    [line.product_id for line in order.items] + [item.product_id for item in checked],
                )
                restored = await self._restore_lines(session, order.items, now)
                await repository.delete_lines(session, order_id)

                lines, deducted = await self._deduct_lines(session, checked, now)
                total_amount, total_items = _totals(lines)

                await repository.update_order(
                    session,
                    order_id,
                    {
                        "shipping_address": shipping_address,
                        "billing_address": billing_address,
                        "payment_method": payment_method,
                        "notes": notes,
                        "total_amount": total_amount,
                        "total_items": total_items,
                        "updated_at": now,
                    },
                )
                await repository.insert_lines(session, order_id, lines)
                order = await repository.get_order(session, order_id)

        logger.info("Order updated: id=%s, total=%s, items=%s", order_id, order.total_amount, order.total_items)
        await self._evict(order_id, products=True)
        self._emit(lambda: [
            *_inventory_events(restored, InventoryReason.ORDER_UPDATED_ITEM_REMOVED, order_id, now),
            *_inventory_events(deducted, InventoryReason.ORDER_UPDATED, order_id, now),
        ])
        return order

    async def cancel_order(self, order_id: int) -> Order:
        """注文キャンセル。すでに CANCELLED なら何もせず現在の状態を返す。"""
        now = _now()

        async with self.session_factory() as session:
            async with session.begin():
                order = await self._load_for_update(session, order_id)
                if order.status == OrderStatus.CANCELLED:
                    logger.info("Order already cancelled: id=%s", order_id)
                    return order

                old_status = order.status
                restored = await self._restore_lines(session, order.items, now)
                await repository.update_order(
                    session,
                    order_id,
                    {
                        "status": OrderStatus.CANCELLED.value,
                        "payment_status": PaymentStatus.REFUNDED.value,
                        "updated_at": now,
                    },
                )
                order = await repository.get_order(session, order_id)

        logger.info("Order cancelled: id=%s, restored %d lines", order_id, len(restored))
        await self._evict(order_id, products=True)
        self._emit(lambda: [
            _status_changed(order, old_status),
            *_inventory_events(restored, InventoryReason.ORDER_CANCELLED, order_id, now),
            _notification(order, f"Order {order.order_number} has been cancelled", "ORDER_CANCELLED", now),
        ])
        return order

    async def delete_order(self, order_id: int) -> None:
        """
        注文の物理削除。在庫を戻してから明細ごと削除する。
        キャンセル済みの注文は在庫を戻し済みなので戻さない。
        """
        now = _now()
        restored: list[StockChange] = []

        async with self.session_factory() as session:
            async with session.begin():
                order = await self._load_for_update(session, order_id)
                if order.status != OrderStatus.CANCELLED:
                    restored = await self._restore_lines(session, order.items, now)
                await repository.delete_order(session, order_id)

        # 削除ではイベントを発行しない。下流は在庫の戻しを知ることができない。
        logger.warning(
            "Order deleted without events: id=%s, restored %d lines", order_id, len(restored)
        )
        await self._evict(order_id, products=bool(restored))

    # ── Query (読み取り) ─────────────────────────

    async def get_order(self, order_id: int) -> Order:
        async def load() -> Order:
            async with self.session_factory() as session:
                order = await repository.get_order(session, order_id)
            if order is None:
                raise NotFound(f"Order not found with id: {order_id}")
            return order

        return await self.cache.read_through(cache_ns.ORDER, order_id, Order, load)

    async def get_orders_by_user(
        self,
        user_id: int,
        page: int = 0,
        size: int = 10,
        sort_by: str = "id",
        sort_dir: str = "DESC",
    ) -> OrderPage:
        repository.check_paging(page, size, sort_by, sort_dir)

        async def load() -> OrderPage:
            async with self.session_factory() as session:
                return await repository.list_orders(
                    session, user_id=user_id, page=page, size=size, sort_by=sort_by, sort_dir=sort_dir
                )

        key = f"user:{user_id}:{page}:{size}:{sort_by}:{sort_dir.upper()}"
        return await self.cache.read_through(cache_ns.ORDERS, key, OrderPage, load)

    async def get_orders_by_status(
        self,
        status,
        page: int = 0,
        size: int = 10,
        sort_by: str = "id",
        sort_dir: str = "DESC",
    ) -> OrderPage:
        status = _parse_status(status)
        async with self.session_factory() as session:
            return await repository.list_orders(
                session, status=status, page=page, size=size, sort_by=sort_by, sort_dir=sort_dir
            )

    async def get_all_orders(
        self,
        page: int = 0,
        size: int = 10,
        sort_by: str = "id",
        sort_dir: str = "DESC",
    ) -> OrderPage:
        async with self.session_factory() as session:
            return await repository.list_orders(
                session, page=page, size=size, sort_by=sort_by, sort_dir=sort_dir
            )

    # ── 内部処理 ─────────────────────────────────

    async def _load_for_update(self, session: AsyncSession, order_id: int) -> Order:
        order = await repository.get_order(session, order_id, for_update=True)
        if order is None:
            raise NotFound(f"Order not found with id: {order_id}")
        return order

    async def _deduct_lines(
        self,
        session: AsyncSession,
        items: list[OrderItemRequest],
        now: datetime,
    ) -> tuple[list[OrderLine], list[StockChange]]:
        """明細ごとに在庫を引き当て、注文時点の単価で明細を作る。"""
        locked = await ledger.lock_products(session, [item.product_id for item in items])
        lines: list[OrderLine] = []
        changes: list[StockChange] = []
        for item in items:
            product = locked.get(item.product_id)
            if product is None:
                raise NotFound(f"Product not found with id: {item.product_id}")

            change = await ledger.deduct_stock(session, product.id, product.name, item.quantity, now)
            unit_price = to_money(product.price)
            lines.append(
                OrderLine(
                    product_id=product.id,
                    product_name=product.name,
                    unit_price=unit_price,
                    quantity=item.quantity,
                    subtotal=to_money(unit_price * item.quantity),
                )
            )
            changes.append(change)
        return lines, changes

    async def _restore_lines(
        self,
        session: AsyncSession,
        lines: list[OrderLine],
        now: datetime,
    ) -> list[StockChange]:
        await ledger.lock_products(session, [line.product_id for line in lines])
        return [
            await ledger.restore_stock(session, line.product_id, line.quantity, now)
            for line in lines
        ]

    async def _evict(self, order_id: int | None = None, products: bool = False) -> None:
        if order_id is not None:
            await self.cache.evict(cache_ns.ORDER, order_id)
        await self.cache.evict_all(cache_ns.ORDERS)
        if products:
            await self.cache.evict_all(cache_ns.PRODUCT)
            await self.cache.evict_all(cache_ns.PRODUCTS)

    def _emit(self, build: Callable[[], list[tuple]]) -> None:
        """イベントを組み立ててキューに積む。ここでの失敗は操作の結果に影響させない。"""
        try:
            messages = build()
        except Exception:
            logger.exception("Failed to build events")
            return
        for topic, key, event in messages:
            try:
                self.emitter.emit(topic, key, event)
            except Exception:
                logger.exception("Failed to enqueue %s: topic=%s, key=%s", type(event).__name__, topic, key)
