"""
Write API — FastAPI エントリーポイント

POST /orders で注文を受け付け、201 と注文 ID だけを返す。
注文の詳細は返さない (書き込み側は読み取り状態を往復させない)。
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Callable

import uvicorn
from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..shared.config import get_settings
from ..shared.context import ServiceContext, get_context
from ..shared.errors import PersistenceError, ValidationError
from ..shared.health import build_health_router, writer_handle
from ..shared.log_config import configure_logging
from . import commands

logger = logging.getLogger(__name__)


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

    app = FastAPI(title="Order Write API", lifespan=lifespan)

    # ── Error Handlers ───────────────────────────────

    @app.exception_handler(ValidationError)
    async def on_validation_error(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=400, content={"message": exc.message, "errors": exc.errors}
        )

    @app.exception_handler(RequestValidationError)
    async def on_request_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"message": "Malformed request body"})

    @app.exception_handler(PersistenceError)
    async def on_persistence_error(request: Request, exc: PersistenceError):
        logger.error("Order persistence failed: %s", exc, exc_info=exc)
        return JSONResponse(status_code=500, content={"message": "Internal Server Error"})

    @app.exception_handler(Exception)
    async def on_unexpected_error(request: Request, exc: Exception):
        logger.error("Unhandled error", exc_info=exc)
        return JSONResponse(status_code=500, content={"message": "Internal Server Error"})

    # ── Command Endpoints ────────────────────────────

    @app.post("/orders", status_code=201)
    async def create_order(
        body: dict[str, Any] = Body(...),
        ctx: ServiceContext = Depends(get_context),
    ):
        """注文受付コマンド"""
        result = await commands.submit_order(ctx, body.get("customerId"), body.get("items"))
        return {"orderId": result.order_id, "status": result.status}

    app.include_router(build_health_router("order-write-api", writer_handle))
    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
