"""
Order Service — FastAPI エントリーポイント

HTTP はリクエストとレスポンスの変換だけを行う薄いアダプタ。
注文の整合性（在庫・キャッシュ・イベント）はすべて OrderLifecycle が担う。
ドメイン例外は status_code に従って HTTP エラーに変換する。
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from . import config
from .cache import Cache
from .catalog import Catalog
from .emitter import EventEmitter
from .errors import OrderServiceError
from .lifecycle import OrderLifecycle
from .models import Order, OrderItemRequest, OrderPage, OrderStatus, Product, User
from .schema import metadata

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

engine = create_async_engine(config.DATABASE_URL, echo=False)
async_session = async_sessionmaker(engine, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None
lifecycle: OrderLifecycle | None = None
catalog: Catalog | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, lifecycle, catalog
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    cache = Cache(redis_pool)
    emitter = EventEmitter(redis_pool)
    emitter.start()
    lifecycle = OrderLifecycle(async_session, cache, emitter)
    catalog = Catalog(async_session, cache)
    yield
    await emitter.stop()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


def get_lifecycle() -> OrderLifecycle:
    return lifecycle


def get_catalog() -> Catalog:
    return catalog


@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# ── Request Models ───────────────────────────────

class OrderRequest(BaseModel):
    user_id: int
    shipping_address: str = Field(max_length=500)
    billing_address: str | None = Field(default=None, max_length=500)
    payment_method: str | None = Field(default=None, max_length=100)
    notes: str | None = Field(default=None, max_length=1000)
    items: list[OrderItemRequest]


class OrderUpdateRequest(BaseModel):
    shipping_address: str = Field(max_length=500)
    billing_address: str | None = Field(default=None, max_length=500)
    payment_method: str | None = Field(default=None, max_length=100)
    notes: str | None = Field(default=None, max_length=1000)
    items: list[OrderItemRequest]


class OrderStatusUpdateRequest(BaseModel):
    status: OrderStatus


class ProductRequest(BaseModel):
    name: str
    price: Decimal
    stock: int
    sku: str | None = None
    description: str | None = None
    category: str | None = None
    brand: str | None = None
    image_url: str | None = None
    is_active: bool = True


class UserRequest(BaseModel):
    username: str
    email: str


# ── Orders ───────────────────────────────────────

@app.post("/orders", status_code=201, response_model=Order)
async def create_order(req: OrderRequest, svc: OrderLifecycle = Depends(get_lifecycle)):
    """注文作成"""
    return await svc.create_order(
        req.user_id,
        req.shipping_address,
        req.billing_address,
        req.payment_method,
        req.notes,
        req.items,
    )


@app.get("/orders", response_model=OrderPage)
async def list_orders(
    user_id: int | None = None,
    status: OrderStatus | None = None,
    page: int = 0,
    size: int = 10,
    sort_by: str = "id",
    sort_dir: str = "DESC",
    svc: OrderLifecycle = Depends(get_lifecycle),
):
    """注文一覧（user_id → status → 全件 の優先順で絞り込み）"""
    if user_id is not None:
        return await svc.get_orders_by_user(user_id, page, size, sort_by, sort_dir)
    if status is not None:
        return await svc.get_orders_by_status(status, page, size, sort_by, sort_dir)
    return await svc.get_all_orders(page, size, sort_by, sort_dir)


@app.get("/orders/{order_id}", response_model=Order)
async def get_order(order_id: int, svc: OrderLifecycle = Depends(get_lifecycle)):
    return await svc.get_order(order_id)


@app.put("/orders/{order_id}", response_model=Order)
async def update_order(
    order_id: int,
    req: OrderUpdateRequest,
    svc: OrderLifecycle = Depends(get_lifecycle),
):
    """注文変更（明細は丸ごと差し替え）"""
    return await svc.update_order(
        order_id,
        req.shipping_address,
        req.billing_address,
        req.payment_method,
        req.notes,
        req.items,
    )


@app.patch("/orders/{order_id}/status", response_model=Order)
async def update_order_status(
    order_id: int,
    req: OrderStatusUpdateRequest,
    svc: OrderLifecycle = Depends(get_lifecycle),
):
    return await svc.update_order_status(order_id, req.status)


@app.post("/orders/{order_id}/cancel")
async def cancel_order(order_id: int, svc: OrderLifecycle = Depends(get_lifecycle)):
    order = await svc.cancel_order(order_id)
    return {
        "message": "Order cancelled successfully",
        "order_number": order.order_number,
        "status": order.status.value,
    }


@app.delete("/orders/{order_id}", status_code=204)
async def delete_order(order_id: int, svc: OrderLifecycle = Depends(get_lifecycle)):
    await svc.delete_order(order_id)


# ── Catalog ──────────────────────────────────────

@app.post("/products", status_code=201, response_model=Product)
async def create_product(req: ProductRequest, cat: Catalog = Depends(get_catalog)):
    return await cat.create_product(**req.model_dump())


@app.get("/products", response_model=list[Product])
async def list_products(active_only: bool = False, cat: Catalog = Depends(get_catalog)):
    return await cat.list_products(active_only)


@app.get("/products/{product_id}", response_model=Product)
async def get_product(product_id: int, cat: Catalog = Depends(get_catalog)):
    return await cat.get_product(product_id)


@app.post("/products/{product_id}/deactivate", response_model=Product)
async def deactivate_product(product_id: int, cat: Catalog = Depends(get_catalog)):
    """販売停止（在庫・既存注文には影響しない）"""
    return await cat.deactivate_product(product_id)


@app.post("/users", status_code=201, response_model=User)
async def create_user(req: UserRequest, cat: Catalog = Depends(get_catalog)):
    return await cat.create_user(req.username, req.email)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
