"""
Order Service — ドメインモデル

注文集約 (Order + OrderLine) と商品・ユーザーの読み取り用モデル。
金額はすべて Decimal (小数 2 桁) で扱い、float は使わない。

状態:
    PENDING → CONFIRMED → PROCESSING → SHIPPED → DELIVERED
    任意の状態 → CANCELLED (在庫を戻し、支払いは REFUNDED)
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, Field

CENTS = Decimal("0.01")

# INTEGER カラムの上限。これを超える id・数量は DB に渡さない
MAX_INT = 2**31 - 1


def in_int_range(value: int) -> bool:
    return -MAX_INT - 1 <= value <= MAX_INT


def to_money(value) -> Decimal:
    """DB から読んだ値 (Decimal / float / str) を 2 桁の Decimal にそろえる。"""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PAID = "PAID"
    REFUNDED = "REFUNDED"


# ── 入力 ─────────────────────────────────────────

class OrderItemRequest(BaseModel):
    product_id: int = Field(strict=True, gt=0, le=MAX_INT)
    quantity: int = Field(strict=True, le=MAX_INT)


# ── 注文集約 ─────────────────────────────────────

class OrderLine(BaseModel):
    id: int | None = None
    product_id: int
    product_name: str
    unit_price: Decimal
    quantity: int
    subtotal: Decimal


class Order(BaseModel):
    id: int
    order_number: str
    user_id: int
    status: OrderStatus
    total_amount: Decimal
    total_items: int
    shipping_address: str | None = None
    billing_address: str | None = None
    payment_method: str | None = None
    payment_status: str | None = None
    notes: str | None = None
    created_at: datetime
    updated_at: datetime
    items: list[OrderLine] = Field(default_factory=list)


class OrderPage(BaseModel):
    items: list[Order]
    page: int
    size: int
    total: int


# ── カタログ ─────────────────────────────────────

class Product(BaseModel):
    id: int
    name: str
    description: str | None = None
    price: Decimal
    stock: int
    category: str | None = None
    brand: str | None = None
    image_url: str | None = None
    sku: str | None = None
    is_active: bool = True
    created_at: datetime
    updated_at: datetime


class User(BaseModel):
    id: int
    username: str
    email: str
    created_at: datetime
