"""
Worker — FastAPI エントリーポイント

HTTP はヘルスチェックだけを公開する。起動時に有効なステージの
キューコンシューマ (とリコンサイラ) をバックグラウンドタスクとして開始する。

┌──────────────┐  OrderCreated   ┌────────────────────┐  StockValidated  ┌────────────────────┐
│ Write API    │ ──── queue ───▶ │ stock-validation   │ ───── queue ───▶ │ inventory-update   │
└──────────────┘                 └────────────────────┘                  └────────────────────┘

WORKER_STAGES で起動するステージを選べるので、ステージごとに別プロセスとして
デプロイ・スケールできる。
"""

import asyncio
import logging
import socket
import uuid
from contextlib import asynccontextmanager
from typing import Callable

import uvicorn
from fastapi import FastAPI

from ..shared.config import STAGE_INVENTORY_UPDATE, STAGE_STOCK_VALIDATION, get_settings
from ..shared.context import ServiceContext
from ..shared.events import EventEnvelope
from ..shared.health import build_health_router, reader_handle
from ..shared.log_config import configure_logging
from .inventory_update import handle_stock_validated
from .reconciler import run_reconciler
from .stock_validation import handle_order_created
from .subscriber import QueueConsumer

logger = logging.getLogger(__name__)


def build_consumers(ctx: ServiceContext) -> list[QueueConsumer]:
    settings = ctx.settings
    consumer_name = settings.consumer_name or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"

    async def on_order_created(envelope: EventEnvelope):
        return await handle_order_created(ctx, envelope.detail)

    async def on_stock_validated(envelope: EventEnvelope):
        return await handle_stock_validated(ctx, envelope.detail)

    stages = {
        STAGE_STOCK_VALIDATION: (settings.stock_validation_queue, on_order_created),
        STAGE_INVENTORY_UPDATE: (settings.inventory_update_queue, on_stock_validated),
    }
    consumers = []
    for stage in settings.worker_stages:
        if stage not in stages:
            raise ValueError(f"Unknown worker stage: {stage}")
        queue, handler = stages[stage]
        consumers.append(
            QueueConsumer(
                ctx.redis,
                queue,
                settings.consumer_group,
                consumer_name,
                handler,
                dead_letter_queue=settings.dead_letter_queue(queue),
                concurrency=settings.consumer_concurrency,
                visibility_timeout_ms=int(settings.visibility_timeout_seconds * 1000),
                max_receive_count=settings.max_receive_count,
                block_ms=settings.poll_block_ms,
            )
        )
    return consumers


def create_app(
    build_context: Callable[[], ServiceContext] = ServiceContext.from_settings,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """起動時にコンシューマをバックグラウンドタスクとして開始する。"""
        ctx = build_context()
        configure_logging(ctx.settings.log_level)
        app.state.ctx = ctx

        shutdown_event = asyncio.Event()
        tasks = [
            asyncio.create_task(consumer.run(shutdown_event))
            for consumer in build_consumers(ctx)
        ]
        if ctx.settings.reconcile_interval_seconds > 0:
            tasks.append(asyncio.create_task(run_reconciler(ctx, shutdown_event)))
        logger.info("Worker started with stages: %s", ", ".join(ctx.settings.worker_stages))

        yield

        shutdown_event.set()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await ctx.aclose()

    app = FastAPI(title="Order Worker", lifespan=lifespan)
    app.include_router(build_health_router("order-worker", reader_handle))
    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
