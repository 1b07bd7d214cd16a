# tests/test_queries.py
import pytest
import pytest_asyncio

from order_service.errors import ValidationError
from order_service.models import OrderStatus

pytestmark = [pytest.mark.asyncio]


@pytest_asyncio.fixture
async def bob(catalog):
    return await catalog.create_user("bob", "bob@example.com")


@pytest_asyncio.fixture
async def orders(lifecycle, user, bob, product, gadget):
    """alice: Widget×1, Widget×2, Gadget×1 / bob: Widget×1"""
    placed = []
    for user_id, product_id, quantity in [
        (user.id, product.id, 1),
        (user.id, product.id, 2),
        (user.id, gadget.id, 1),
        (bob.id, product.id, 1),
    ]:
        placed.append(
            await lifecycle.create_order(
                user_id, "1 Main St", None, None, None, [{"product_id": product_id, "quantity": quantity}]
            )
        )
    return placed


async def test_orders_by_user_newest_first(lifecycle, user, orders):
    page = await lifecycle.get_orders_by_user(user.id)

    assert page.total == 3
    assert [o.id for o in page.items] == [orders[2].id, orders[1].id, orders[0].id]
    assert all(o.user_id == user.id for o in page.items)
    assert all(o.items for o in page.items)


async def test_pagination(lifecycle, orders):
    first = await lifecycle.get_all_orders(page=0, size=3, sort_by="id", sort_dir="ASC")
    second = await lifecycle.get_all_orders(page=1, size=3, sort_by="id", sort_dir="ASC")

    assert first.total == second.total == 4
    assert [o.id for o in first.items] == [o.id for o in orders[:3]]
    assert [o.id for o in second.items] == [orders[3].id]
    assert (await lifecycle.get_all_orders(page=5, size=3)).items == []


async def test_sort_by_total_amount(lifecycle, orders):
    page = await lifecycle.get_all_orders(sort_by="total_amount", sort_dir="desc")

    amounts = [o.total_amount for o in page.items]
    assert amounts == sorted(amounts, reverse=True)
    assert page.items[0].id == orders[2].id


async def test_orders_by_status(lifecycle, orders):
    await lifecycle.update_order_status(orders[0].id, OrderStatus.CONFIRMED)
    await lifecycle.cancel_order(orders[1].id)

    confirmed = await lifecycle.get_orders_by_status(OrderStatus.CONFIRMED)
    cancelled = await lifecycle.get_orders_by_status("CANCELLED")
    pending = await lifecycle.get_orders_by_status(OrderStatus.PENDING)

    assert [o.id for o in confirmed.items] == [orders[0].id]
    assert [o.id for o in cancelled.items] == [orders[1].id]
    assert pending.total == 2


async def test_user_without_orders_gets_empty_page(lifecycle, bob):
    page = await lifecycle.get_orders_by_user(bob.id)

    assert page.total == 0
    assert page.items == []


@pytest.mark.parametrize(
    "kwargs",
    [
        {"sort_by": "password"},
        {"sort_dir": "sideways"},
        {"page": -1},
        {"size": 0},
        {"size": 101},
    ],
)
async def test_invalid_paging_is_rejected(lifecycle, user, kwargs):
    with pytest.raises(ValidationError):
        await lifecycle.get_orders_by_user(user.id, **kwargs)
    with pytest.raises(ValidationError):
        await lifecycle.get_all_orders(**kwargs)


async def test_unknown_status_filter_is_rejected(lifecycle):
    with pytest.raises(ValidationError):
        await lifecycle.get_orders_by_status("LOST")


async def test_page_beyond_offset_range_is_rejected(lifecycle):
    with pytest.raises(ValidationError):
        await lifecycle.get_all_orders(page=10**18, size=10)
    with pytest.raises(ValidationError):
        await lifecycle.get_orders_by_status(OrderStatus.PENDING, page=2**31, size=1)
