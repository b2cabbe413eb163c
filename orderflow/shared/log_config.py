"""
共通 — ログ設定

各サービスは logging.getLogger(__name__) でロガーを取り、
起動時 (lifespan) にここでルートロガーの書式とレベルを決める。
"""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # uvicorn のアクセスログは多すぎるので抑える
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
