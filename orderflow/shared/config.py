"""
共通 — 設定

環境変数 (または .env) から pydantic-settings で読み込む。
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

STAGE_STOCK_VALIDATION = "stock-validation"
STAGE_INVENTORY_UPDATE = "inventory-update"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Database ────────────────────────────────────
    # DATABASE_URL を指定した場合はシークレットを取得せずそのまま使う (開発用)
    database_url: str | None = None
    db_secret_ref: str = "env:DB_SECRET"
    db_writer_endpoint: str = "localhost"
    db_reader_endpoint: str | None = None
    db_driver: str = "postgresql+asyncpg"
    db_pool_size: int = 10

    # ── Event channel (Redis Streams) ───────────────
    redis_url: str = "redis://localhost:6379"
    event_bus_name: str = "OrderEventBus"
    event_bus_maxlen: int = 100_000
    stock_validation_queue: str = "stock-validation-queue"
    inventory_update_queue: str = "inventory-update-queue"
    dead_letter_suffix: str = "-dlq"
    consumer_group: str = "order-workers"
    consumer_name: str | None = None
    consumer_concurrency: int = 10
    visibility_timeout_seconds: float = 30
    max_receive_count: int = 5
    poll_block_ms: int = 1000

    # ── Worker ──────────────────────────────────────
    worker_stages: list[str] = [STAGE_STOCK_VALIDATION, STAGE_INVENTORY_UPDATE]
    # True: 在庫減算を stock >= quantity の条件付きにする (在庫のマイナスを防ぐ)
    strict_inventory_check: bool = False
    reconcile_interval_seconds: float = 0
    reconcile_after_seconds: float = 300
    # 1 注文あたりの再発行回数の上限。超えた注文は以後スキップする
    reconcile_max_attempts: int = 3

    # ── Application ─────────────────────────────────
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    @property
    def event_routes(self) -> dict[str, str]:
        """detail-type → 配送先キュー。ここに無いタイプはバスのみに流れる。"""
        return {
            "OrderCreated": self.stock_validation_queue,
            "StockValidated": self.inventory_update_queue,
        }

    def dead_letter_queue(self, queue: str) -> str:
        return f"{queue}{self.dead_letter_suffix}"


@lru_cache
def get_settings() -> Settings:
    return Settings()
