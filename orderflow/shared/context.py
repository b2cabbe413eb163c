"""
共通 — サービスコンテキスト

DB ゲートウェイとイベント発行先をまとめ、各アプリの lifespan で 1 つだけ作る。
ステージやコマンドはモジュールのグローバル変数ではなく、
このコンテキストを引数で受け取る。
"""

from dataclasses import dataclass, field

import redis.asyncio as aioredis
from fastapi import Request

from .config import Settings, get_settings
from .db import DatabaseGateway
from .event_bus import EventPublisher, RedisEventBus


@dataclass
class ServiceContext:
    settings: Settings
    db: DatabaseGateway
    events: EventPublisher
    redis: aioredis.Redis | None = field(default=None)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ServiceContext":
        settings = settings or get_settings()
        redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        events = RedisEventBus(
            redis,
            settings.event_bus_name,
            settings.event_routes,
            maxlen=settings.event_bus_maxlen,
        )
        return cls(settings=settings, db=DatabaseGateway(settings), events=events, redis=redis)

    async def aclose(self) -> None:
        await self.db.dispose()
        if self.redis is not None:
            await self.redis.aclose()


def get_context(request: Request) -> ServiceContext:
    """FastAPI の依存関数。lifespan で作成したコンテキストを返す"""
    return request.app.state.ctx
