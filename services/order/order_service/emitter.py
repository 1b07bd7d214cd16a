"""
Order Service — イベント発行 (Redis Streams)

注文処理はイベントをキューに積むだけで、配送は待たない。
バックグラウンドのワーカータスクがキューから取り出して XADD で配送する。

  ┌────────────────┐  emit()   ┌───────┐  XADD   ┌───────────────┐
  │ OrderLifecycle │ ────────▶ │ Queue │ ──────▶ │ Redis Streams │
  └────────────────┘ (非同期)   └───────┘ worker  └───────────────┘

Redis Pub/Sub と違い Streams はログとして残るため、
コンシューマが停止していてもイベントは失われない (at-least-once)。
ワーカーは 1 つなので、同じキーのイベントは積んだ順に配送される。
配送の失敗はログに残して捨てる。注文処理の結果には影響しない。
"""

import asyncio
import logging

import redis.asyncio as aioredis
from pydantic import BaseModel

from . import config

logger = logging.getLogger(__name__)


class EventEmitter:
    def __init__(
        self,
        redis: aioredis.Redis,
        prefix: str = config.EVENT_STREAM_PREFIX,
        maxlen: int = config.EVENT_STREAM_MAXLEN,
        queue_size: int = config.EVENT_QUEUE_SIZE,
    ) -> None:
        self.redis = redis
        self.prefix = prefix
        self.maxlen = maxlen
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._worker: asyncio.Task | None = None

    def stream_name(self, topic: str) -> str:
        return f"{self.prefix}{topic}"

    def emit(self, topic: str, key, event: BaseModel) -> None:
        """イベントをキューに積む。キューが一杯なら捨ててログに残す。"""
        message = {
            "key": str(key),
            "event_type": type(event).__name__,
            "data": event.model_dump_json(),
        }
        try:
            self.queue.put_nowait((topic, message))
        except asyncio.QueueFull:
            logger.error(
                "Event queue full, dropping %s: topic=%s, key=%s",
                message["event_type"], topic, key,
            )

    # ── ワーカー ─────────────────────────────────

    def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._run())

    async def flush(self) -> None:
        """キューに積まれたイベントがすべて処理されるまで待つ。"""
        await self.queue.join()

    async def stop(self, timeout: float = 5.0) -> None:
        if self._worker is None:
            return
        try:
            await asyncio.wait_for(self.queue.join(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Stopping emitter with %d undelivered events", self.queue.qsize())
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def _run(self) -> None:
        while True:
            topic, message = await self.queue.get()
            try:
                await self._publish(topic, message)
            except Exception:
                logger.exception(
                    "Failed to send %s: topic=%s, key=%s",
                    message["event_type"], topic, message["key"],
                )
            finally:
                self.queue.task_done()

    async def _publish(self, topic: str, message: dict) -> None:
        entry_id = await self.redis.xadd(
            self.stream_name(topic),
            message,
            maxlen=self.maxlen,
            approximate=True,
        )
        logger.info(
            "%s sent: topic=%s, key=%s, id=%s",
            message["event_type"], topic, message["key"], entry_id,
        )
