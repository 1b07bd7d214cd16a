"""
Order Service — テーブル定義

注文 (orders + order_items)、商品 (products)、ユーザー (users) の 4 テーブル。
商品の在庫は CHECK 制約でも 0 未満にならないよう守る。
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(200), nullable=False),
    Column("description", Text),
    Column("price", Numeric(10, 2), nullable=False),
    Column("stock", Integer, nullable=False, default=0),
    Column("category", String(100)),
    Column("brand", String(100)),
    Column("image_url", String(500)),
    Column("sku", String(100), unique=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
    CheckConstraint("price > 0", name="ck_products_price_positive"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_number", String(50), nullable=False, unique=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("status", String(20), nullable=False, index=True),
    Column("total_amount", Numeric(12, 2), nullable=False),
    Column("total_items", Integer, nullable=False),
    Column("shipping_address", String(500)),
    Column("billing_address", String(500)),
    Column("payment_method", String(100)),
    Column("payment_status", String(20)),
    Column("notes", String(1000)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("total_amount >= 0", name="ck_orders_total_non_negative"),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "order_id",
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False),
    # 注文時点のスナップショット（商品マスタの変更に影響されない）
    Column("product_name", String(200), nullable=False),
    Column("product_price", Numeric(10, 2), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("subtotal", Numeric(12, 2), nullable=False),
    CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
)
