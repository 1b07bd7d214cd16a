"""
Order Service — イベント定義

下流のコンシューマ（通知・分析・在庫アラート）へ配送するイベント。
イベントは過去形で命名し、不変(immutable)として扱う。
このサービスはイベントを永続化しない。配送先は Redis Streams のみ。
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel

# ── トピック ─────────────────────────────────────

TOPIC_ORDERS = "orders"
TOPIC_ORDER_STATUS = "order-status"
TOPIC_INVENTORY = "inventory"
TOPIC_NOTIFICATIONS = "notifications"

ALL_TOPICS = (TOPIC_ORDERS, TOPIC_ORDER_STATUS, TOPIC_INVENTORY, TOPIC_NOTIFICATIONS)


class InventoryReason(str, Enum):
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    ORDER_UPDATED = "ORDER_UPDATED"
    ORDER_UPDATED_ITEM_REMOVED = "ORDER_UPDATED_ITEM_REMOVED"


class OrderItemEvent(BaseModel):
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal


class OrderCreated(BaseModel):
    """注文が作成された"""
    order_id: int
    order_number: str
    user_id: int
    total_amount: Decimal
    items: list[OrderItemEvent]
    shipping_address: str | None = None
    created_at: datetime


class OrderStatusChanged(BaseModel):
    """注文のステータスが変わった"""
    order_id: int
    order_number: str
    user_id: int
    old_status: str | None
    new_status: str
    updated_at: datetime


class InventoryUpdated(BaseModel):
    """注文によって商品の在庫が増減した（quantity_changed は符号付き）"""
    product_id: int
    product_name: str
    old_stock: int
    new_stock: int
    quantity_changed: int
    reason: InventoryReason
    order_id: int
    updated_at: datetime


class Notification(BaseModel):
    """ユーザー向け通知"""
    user_id: int
    message: str
    type: str
    timestamp: datetime
