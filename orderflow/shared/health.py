"""
共通 — ヘルスチェック

/health       プロセスが応答できるか
/health/deep  DB (writer または reader) に SELECT 1 が通るか
"""

import logging
from typing import Awaitable, Callable

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .context import ServiceContext, get_context

logger = logging.getLogger(__name__)

HandleGetter = Callable[[ServiceContext], Awaitable[async_sessionmaker[AsyncSession]]]


def build_health_router(service: str, get_handle: HandleGetter) -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    async def health():
        return {"status": "ok", "service": service}

    @router.get("/health/deep")
    async def deep_health(ctx: ServiceContext = Depends(get_context)):
        try:
            sessions = await get_handle(ctx)
            async with sessions() as session:
                await session.execute(text("SELECT 1"))
        except Exception:
            logger.exception("Deep health check failed")
            return JSONResponse(
                status_code=500,
                content={"status": "UNHEALTHY", "database": "DISCONNECTED"},
            )
        return {"status": "HEALTHY", "database": "CONNECTED"}

    return router


async def writer_handle(ctx: ServiceContext) -> async_sessionmaker[AsyncSession]:
    return await ctx.db.get_write_handle()


async def reader_handle(ctx: ServiceContext) -> async_sessionmaker[AsyncSession]:
    return await ctx.db.get_read_handle()
