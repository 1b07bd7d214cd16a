# tests/test_cancel_order.py
import pytest

from order_service.errors import InvalidState, NotFound, ValidationError
from order_service.models import OrderStatus, PaymentStatus

pytestmark = [pytest.mark.asyncio]


@pytest.fixture
def place_order(lifecycle, user):
    async def _place(items):
        return await lifecycle.create_order(user.id, "1 Main St", None, "CARD", None, items)

    return _place


async def test_cancel_restores_stock_and_refunds(lifecycle, emitter, redis, product, place_order, read_stock):
    """
    3 個注文してキャンセル:
      - 在庫は 10 に戻る
      - CANCELLED / REFUNDED
      - 在庫イベント (delta +3, ORDER_CANCELLED)
    """
    order = await place_order([{"product_id": product.id, "quantity": 3}])
    assert await read_stock(product.id) == 7

    cancelled = await lifecycle.cancel_order(order.id)

    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.payment_status == PaymentStatus.REFUNDED.value
    assert await read_stock(product.id) == 10

    await emitter.flush()
    inventory = redis.events("inventory")
    assert [e["data"]["reason"] for e in inventory] == ["ORDER_CREATED", "ORDER_CANCELLED"]
    assert inventory[1]["data"]["quantity_changed"] == 3
    assert inventory[1]["data"]["old_stock"] == 7
    assert inventory[1]["data"]["new_stock"] == 10

    status_events = redis.events("order-status")
    assert len(status_events) == 1
    assert status_events[0]["data"]["old_status"] == "PENDING"
    assert status_events[0]["data"]["new_status"] == "CANCELLED"

    notification_types = [e["data"]["type"] for e in redis.events("notifications")]
    assert notification_types == ["ORDER_CREATED", "ORDER_CANCELLED"]


async def test_cancel_twice_restores_once(lifecycle, emitter, redis, product, gadget, place_order, read_stock):
    order = await place_order(
        [
            {"product_id": product.id, "quantity": 3},
            {"product_id": gadget.id, "quantity": 2},
        ]
    )

    await lifecycle.cancel_order(order.id)
    again = await lifecycle.cancel_order(order.id)

    assert again.status == OrderStatus.CANCELLED
    assert await read_stock(product.id) == 10
    assert await read_stock(gadget.id) == 5

    await emitter.flush()
    reasons = [e["data"]["reason"] for e in redis.events("inventory")]
    assert reasons.count("ORDER_CANCELLED") == 2
    assert len(redis.events("order-status")) == 1


async def test_status_cancelled_restores_stock(lifecycle, emitter, redis, product, place_order, read_stock):
    order = await place_order([{"product_id": product.id, "quantity": 4}])

    updated = await lifecycle.update_order_status(order.id, OrderStatus.CANCELLED)

    assert updated.status == OrderStatus.CANCELLED
    assert updated.payment_status == PaymentStatus.REFUNDED.value
    assert await read_stock(product.id) == 10

    await emitter.flush()
    inventory = redis.events("inventory")
    assert inventory[-1]["data"]["reason"] == "ORDER_CANCELLED"
    assert inventory[-1]["data"]["quantity_changed"] == 4


async def test_status_cancelled_twice_restores_once(lifecycle, emitter, redis, product, place_order, read_stock):
    order = await place_order([{"product_id": product.id, "quantity": 4}])

    await lifecycle.update_order_status(order.id, "CANCELLED")
    await lifecycle.update_order_status(order.id, "CANCELLED")

    assert await read_stock(product.id) == 10

    await emitter.flush()
    reasons = [e["data"]["reason"] for e in redis.events("inventory")]
    assert reasons == ["ORDER_CREATED", "ORDER_CANCELLED"]
    # 2 回目は在庫を戻さないが、ステータス変更イベントは出る
    transitions = [
        (e["data"]["old_status"], e["data"]["new_status"]) for e in redis.events("order-status")
    ]
    assert transitions == [("PENDING", "CANCELLED"), ("CANCELLED", "CANCELLED")]


async def test_cancelled_order_cannot_be_reopened(lifecycle, product, place_order, read_stock):
    order = await place_order([{"product_id": product.id, "quantity": 2}])
    await lifecycle.cancel_order(order.id)

    with pytest.raises(InvalidState):
        await lifecycle.update_order_status(order.id, OrderStatus.CONFIRMED)

    reloaded = await lifecycle.get_order(order.id)
    assert reloaded.status == OrderStatus.CANCELLED
    assert await read_stock(product.id) == 10


async def test_cancelled_order_cannot_be_updated(lifecycle, product, place_order, read_stock):
    order = await place_order([{"product_id": product.id, "quantity": 2}])
    await lifecycle.cancel_order(order.id)

    with pytest.raises(InvalidState):
        await lifecycle.update_order(
            order.id, "2 Side St", None, None, None, [{"product_id": product.id, "quantity": 1}]
        )
    assert await read_stock(product.id) == 10


async def test_status_change_without_stock_movement(lifecycle, emitter, redis, product, place_order, read_stock):
    order = await place_order([{"product_id": product.id, "quantity": 2}])

    for status in (OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED):
        order = await lifecycle.update_order_status(order.id, status)

    assert order.status == OrderStatus.SHIPPED
    assert order.payment_status is None
    assert await read_stock(product.id) == 8

    await emitter.flush()
    assert len(redis.events("inventory")) == 1
    transitions = [
        (e["data"]["old_status"], e["data"]["new_status"]) for e in redis.events("order-status")
    ]
    assert transitions == [
        ("PENDING", "CONFIRMED"),
        ("CONFIRMED", "PROCESSING"),
        ("PROCESSING", "SHIPPED"),
    ]


async def test_unknown_status_is_rejected(lifecycle, product, place_order):
    order = await place_order([{"product_id": product.id, "quantity": 1}])
    with pytest.raises(ValidationError):
        await lifecycle.update_order_status(order.id, "LOST")


async def test_missing_order_is_not_found(lifecycle):
    with pytest.raises(NotFound):
        await lifecycle.cancel_order(404)
    with pytest.raises(NotFound):
        await lifecycle.update_order_status(404, OrderStatus.CONFIRMED)
