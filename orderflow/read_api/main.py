"""
Read API — FastAPI エントリーポイント

reader (リードレプリカ) から注文と明細を返すだけのステートレスなサービス。
"""

from contextlib import asynccontextmanager
from typing import Callable

import uvicorn
from fastapi import Depends, FastAPI, HTTPException

from ..shared.config import get_settings
from ..shared.context import ServiceContext, get_context
from ..shared.health import build_health_router, reader_handle
from ..shared.log_config import configure_logging
from . import queries


def create_app(
    build_context: Callable[[], ServiceContext] = ServiceContext.from_settings,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = build_context()
        configure_logging(ctx.settings.log_level)
        app.state.ctx = ctx
        yield
        await ctx.aclose()

    app = FastAPI(title="Order Read API", lifespan=lifespan)

    @app.get("/orders/{order_id}")
    async def get_order(order_id: str, ctx: ServiceContext = Depends(get_context)):
        sessions = await ctx.db.get_read_handle()
        async with sessions() as session:
            order = await queries.get_order(session, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order

    app.include_router(build_health_router("order-read-api", reader_handle))
    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
