"""
Worker — Redis Streams キューコンシューマ

コンシューマグループで 1 つのキュー (ストリーム) を購読し、
メッセージごとにステージのハンドラを呼び出す。

  - ハンドラが正常終了したメッセージだけ XACK し、XDEL でキューから消す
  - 例外が出たメッセージは ACK せずペンディングに残す
  - ペンディングのまま可視性タイムアウトを過ぎたメッセージは XAUTOCLAIM で再取得する
  - 配信回数が MAX_RECEIVE_COUNT を超えたメッセージはデッドレターキューへ移す

at-least-once のため、同じメッセージが複数回ハンドラに渡ることがある。
ハンドラ側は冪等でなければならない。
"""

import asyncio
import logging
from typing import Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from ..shared.errors import TransientChannelError
from ..shared.events import EventEnvelope

logger = logging.getLogger(__name__)

Handler = Callable[[EventEnvelope], Awaitable[object]]
Message = tuple[str, dict[str, str]]


class QueueConsumer:
    def __init__(
        self,
        redis: aioredis.Redis,
        queue: str,
        group: str,
        consumer: str,
        handler: Handler,
        *,
        dead_letter_queue: str,
        concurrency: int = 10,
        visibility_timeout_ms: int = 30_000,
        max_receive_count: int = 5,
        block_ms: int = 1000,
    ) -> None:
        self.redis = redis
        self.queue = queue
        self.group = group
        self.consumer = consumer
        self.handler = handler
        self.dead_letter_queue = dead_letter_queue
        self.concurrency = concurrency
        self.visibility_timeout_ms = visibility_timeout_ms
        self.max_receive_count = max_receive_count
        self.block_ms = block_ms

    async def ensure_group(self) -> None:
        try:
            await self.redis.xgroup_create(self.queue, self.group, id="0", mkstream=True)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """shutdown_event がセットされるまでキューを処理し続ける。"""
        await self.ensure_group()
        logger.info("Consuming %s as %s/%s", self.queue, self.group, self.consumer)
        while not shutdown_event.is_set():
            try:
                handled = await self.poll_once()
            except RedisError:
                logger.exception("Failed to read from %s", self.queue)
                handled = 0
            if not handled:
                await asyncio.sleep(0.1)

    async def poll_once(self) -> int:
        """再取得分と新着分を 1 バッチ処理し、ハンドラに渡した件数を返す。"""
        messages = await self._reclaim_expired()
        if len(messages) < self.concurrency:
            messages += await self._read_new(self.concurrency - len(messages))
        if not messages:
            return 0
        results = await asyncio.gather(
            *(self._dispatch(mid, fields) for mid, fields in messages),
            return_exceptions=True,
        )
        for (message_id, _fields), result in zip(messages, results):
            if isinstance(result, Exception):
                logger.error(
                    "Failed to settle message %s on %s", message_id, self.queue, exc_info=result
                )
        return len(messages)

    async def _read_new(self, count: int) -> list[Message]:
        response = await self.redis.xreadgroup(
            self.group, self.consumer, {self.queue: ">"}, count=count, block=self.block_ms
        )
        messages: list[Message] = []
        for _stream, entries in response or []:
            messages.extend(entries)
        return messages

    async def _reclaim_expired(self) -> list[Message]:
        response = await self.redis.xautoclaim(
            self.queue,
            self.group,
            self.consumer,
            min_idle_time=self.visibility_timeout_ms,
            start_id="0-0",
            count=self.concurrency,
        )
        claimed = [entry for entry in response[1] if entry and entry[1]] if response else []

        messages: list[Message] = []
        for message_id, fields in claimed:
            if await self._receive_count(message_id) > self.max_receive_count:
                await self._dead_letter(message_id, fields)
            else:
                messages.append((message_id, fields))
        return messages

    async def _receive_count(self, message_id: str) -> int:
        pending = await self.redis.xpending_range(
            self.queue, self.group, min=message_id, max=message_id, count=1
        )
        return pending[0]["times_delivered"] if pending else 0

    async def _dead_letter(self, message_id: str, fields: dict[str, str]) -> None:
        logger.error(
            "Message %s on %s exceeded %d deliveries, moving to %s",
            message_id, self.queue, self.max_receive_count, self.dead_letter_queue,
        )
        pipe = self.redis.pipeline(transaction=True)
        pipe.xadd(self.dead_letter_queue, {**fields, "original-id": message_id})
        pipe.xack(self.queue, self.group, message_id)
        pipe.xdel(self.queue, message_id)
        await pipe.execute()

    async def _dispatch(self, message_id: str, fields: dict[str, str]) -> None:
        if not fields.get("detail"):
            logger.warning("Message %s on %s has no detail, dropping", message_id, self.queue)
            await self._settle(message_id)
            return
        try:
            await self._process(message_id, fields)
        except TransientChannelError as exc:
            logger.error("%s; leaving for redelivery", exc, exc_info=exc.__cause__)
            return
        await self._settle(message_id)

    async def _settle(self, message_id: str) -> None:
        """処理済みのメッセージを ACK し、キューからも削除する。"""
        pipe = self.redis.pipeline(transaction=True)
        pipe.xack(self.queue, self.group, message_id)
        pipe.xdel(self.queue, message_id)
        await pipe.execute()

    async def _process(self, message_id: str, fields: dict[str, str]) -> None:
        try:
            envelope = EventEnvelope.from_fields(fields)
            await self.handler(envelope)
        except Exception as exc:
            raise TransientChannelError(self.queue, message_id) from exc
