"""
共通 — Persistence Gateway

書き込み用 (writer) と読み取り用 (reader) の 2 種類のコネクションプールを
初回アクセス時に一度だけ作成し、プロセスの生存期間中キャッシュする。

同時に最初の呼び出しが来てもプールを二重に作らないよう、
初期化チェックは asyncio.Lock で排他する。
"""

import asyncio
import logging
from typing import Callable

from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import Settings
from .credentials import CredentialSource, SecretRefCredentialSource

logger = logging.getLogger(__name__)

EngineFactory = Callable[..., AsyncEngine]

WRITER = "writer"
READER = "reader"


class DatabaseGateway:
    def __init__(
        self,
        settings: Settings,
        credentials: CredentialSource | None = None,
        engine_factory: EngineFactory = create_async_engine,
    ) -> None:
        self._settings = settings
        self._credentials = credentials
        self._engine_factory = engine_factory
        self._lock = asyncio.Lock()
        self._engines: dict[str, AsyncEngine] = {}
        self._sessions: dict[str, async_sessionmaker[AsyncSession]] = {}

    async def get_write_handle(self) -> async_sessionmaker[AsyncSession]:
        return await self._get_handle(WRITER)

    async def get_read_handle(self) -> async_sessionmaker[AsyncSession]:
        return await self._get_handle(READER)

    async def _get_handle(self, kind: str) -> async_sessionmaker[AsyncSession]:
        handle = self._sessions.get(kind)
        if handle is not None:
            return handle
        async with self._lock:
            # ロック待ちの間に他の呼び出しが作成済みかもしれない
            handle = self._sessions.get(kind)
            if handle is None:
                engine = self._engine_factory(
                    await self._build_url(kind), **self._engine_options()
                )
                handle = async_sessionmaker(
                    engine, class_=AsyncSession, expire_on_commit=False
                )
                self._engines[kind] = engine
                self._sessions[kind] = handle
                logger.info("Created %s connection pool", kind)
        return handle

    async def _build_url(self, kind: str) -> str | URL:
        if self._settings.database_url:
            return self._settings.database_url

        if self._credentials is None:
            self._credentials = SecretRefCredentialSource(self._settings.db_secret_ref)
        creds = await self._credentials.fetch()

        host = self._settings.db_writer_endpoint
        if kind == READER and self._settings.db_reader_endpoint:
            host = self._settings.db_reader_endpoint
        return URL.create(
            self._settings.db_driver,
            username=creds.username,
            password=creds.password,
            host=host,
            port=creds.port,
            database=creds.dbname,
        )

    def _engine_options(self) -> dict:
        if self._settings.database_url and self._settings.database_url.startswith("sqlite"):
            return {}
        return {"pool_size": self._settings.db_pool_size, "pool_pre_ping": True}

    async def dispose(self) -> None:
        """プロセス終了時にプールを解放する。"""
        async with self._lock:
            for engine in self._engines.values():
                await engine.dispose()
            self._engines.clear()
            self._sessions.clear()
