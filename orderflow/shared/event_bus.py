"""
共通 — イベント発行 (Redis Streams)

Pub/Sub は fire-and-forget で購読者が落ちている間のイベントが失われるため、
Redis Streams を使う。1 回の発行で次の 2 つに XADD する:

  1. イベントバス (EVENT_BUS_NAME): 全イベントの記録
  2. detail-type ごとに決まった 1 つのキュー: 次のステージが消費する

2 つの XADD は MULTI/EXEC で囲み、片方だけ書かれることはない。
"""

import logging
from typing import Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import PublishError
from .events import DetailType, EventEnvelope
from .models import Order

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    async def publish(self, detail_type: DetailType, order: Order) -> None: ...


class RedisEventBus:
    def __init__(
        self,
        redis: aioredis.Redis,
        bus_stream: str,
        routes: dict[str, str],
        maxlen: int | None = None,
    ) -> None:
        self.redis = redis
        self.bus_stream = bus_stream
        self.routes = routes
        self.maxlen = maxlen

    async def publish(self, detail_type: DetailType, order: Order) -> None:
        fields = EventEnvelope.for_order(detail_type, order).to_fields()

        pipe = self.redis.pipeline(transaction=True)
        pipe.xadd(self.bus_stream, fields, maxlen=self.maxlen, approximate=True)
        queue = self.routes.get(detail_type.value)
        if queue:
            pipe.xadd(queue, fields)
        try:
            await pipe.execute()
        except RedisError as exc:
            raise PublishError(detail_type.value, order.id) from exc

        logger.info("Published %s for order %s", detail_type.value, order.id)
