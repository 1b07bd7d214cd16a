"""
Order Service — イベントコンシューマ (Redis Streams)

orders / order-status / inventory / notifications の 4 ストリームを購読し、
受信したイベントを種類ごとのハンドラに渡す。

Streams はログとして残るので、コンシューマが止まっていた間のイベントも
再開後に読める。読み始める位置は last_ids で渡す（既定は "$" = 新着のみ）。

在庫イベントは新しい在庫数がしきい値を下回ったときにアラートを出す。
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis

from . import config
from .events import (
    ALL_TOPICS,
    TOPIC_INVENTORY,
    TOPIC_NOTIFICATIONS,
    TOPIC_ORDER_STATUS,
    TOPIC_ORDERS,
)

logger = logging.getLogger(__name__)


def _handle_order_created(data: dict) -> None:
    logger.info(
        "Processing order: orderId=%s, userId=%s, totalAmount=%s",
        data.get("order_id"), data.get("user_id"), data.get("total_amount"),
    )


def _handle_status_changed(data: dict) -> None:
    logger.info(
        "Processing status change: orderId=%s, status: %s -> %s",
        data.get("order_id"), data.get("old_status"), data.get("new_status"),
    )


def _handle_inventory_updated(data: dict, threshold: int = config.LOW_STOCK_THRESHOLD) -> bool:
    """在庫イベントを処理する。低在庫アラートを出したら True。"""
    logger.info(
        "Processing inventory update: productId=%s, stock: %s -> %s (reason: %s)",
        data.get("product_id"), data.get("old_stock"), data.get("new_stock"), data.get("reason"),
    )
    new_stock = data.get("new_stock")
    if new_stock is not None and new_stock < threshold:
        logger.warning("Low stock alert: productId=%s, stock=%s", data.get("product_id"), new_stock)
        return True
    return False


def _handle_notification(data: dict) -> None:
    logger.info("Processing notification: userId=%s, type=%s", data.get("user_id"), data.get("type"))


HANDLERS = {
    TOPIC_ORDERS: _handle_order_created,
    TOPIC_ORDER_STATUS: _handle_status_changed,
    TOPIC_INVENTORY: _handle_inventory_updated,
    TOPIC_NOTIFICATIONS: _handle_notification,
}


def handle_event(topic: str, fields: dict):
    """ストリームのエントリ (key / event_type / data) をハンドラに渡す。"""
    handler = HANDLERS.get(topic)
    if handler is None:
        logger.debug("No handler for topic: %s", topic)
        return None
    data = json.loads(fields["data"]) if isinstance(fields.get("data"), str) else fields.get("data", {})
    return handler(data)


async def consume(
    redis_conn: aioredis.Redis,
    shutdown_event: asyncio.Event,
    prefix: str = config.EVENT_STREAM_PREFIX,
    last_ids: dict[str, str] | None = None,
) -> dict[str, str]:
    """
    4 つのストリームを XREAD で読み続ける。
    shutdown_event がセットされるまで無限ループで待機し、
    最後に読んだエントリ id をストリームごとに返す。
    1 件の処理に失敗してもログに残して次へ進む。
    """
    streams = {f"{prefix}{topic}": (last_ids or {}).get(topic, "$") for topic in ALL_TOPICS}
    logger.info("Subscribed to streams: %s", ", ".join(streams))

    while not shutdown_event.is_set():
        response = await redis_conn.xread(streams, count=100, block=1000)
        for stream, entries in response or []:
            topic = stream[len(prefix):]
            for entry_id, fields in entries:
                streams[stream] = entry_id
                try:
                    handle_event(topic, fields)
                except Exception:
                    logger.exception("Failed to process event: stream=%s, id=%s", stream, entry_id)
    return streams


async def run_subscriber(
    redis_url: str,
    shutdown_event: asyncio.Event,
    prefix: str = config.EVENT_STREAM_PREFIX,
    last_ids: dict[str, str] | None = None,
) -> None:
    redis_conn = aioredis.from_url(redis_url, decode_responses=True)
    try:
        await consume(redis_conn, shutdown_event, prefix, last_ids)
    finally:
        await redis_conn.aclose()


async def main() -> None:
    logging.basicConfig(level=config.LOG_LEVEL)
    shutdown_event = asyncio.Event()
    try:
        await run_subscriber(config.REDIS_URL, shutdown_event)
    except asyncio.CancelledError:
        shutdown_event.set()


if __name__ == "__main__":
    asyncio.run(main())
