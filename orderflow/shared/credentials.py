"""
共通 — DB 認証情報の取得

DB_SECRET_REF の形式:
    env:NAME      環境変数 NAME に JSON で格納されたシークレット
    file:/path    JSON ファイル (コンテナにマウントされたシークレット)

JSON には username / password / dbname / port を含める。
取得に失敗した場合は CredentialError を送出し、リトライはしない。
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .errors import CredentialError


class DatabaseCredentials(BaseModel):
    username: str
    password: str
    dbname: str
    port: int = 5432


class CredentialSource(Protocol):
    async def fetch(self) -> DatabaseCredentials: ...


class StaticCredentialSource:
    def __init__(self, credentials: DatabaseCredentials) -> None:
        self._credentials = credentials

    async def fetch(self) -> DatabaseCredentials:
        return self._credentials


class SecretRefCredentialSource:
    def __init__(self, secret_ref: str) -> None:
        scheme, sep, target = secret_ref.partition(":")
        if not sep or not target or scheme not in ("env", "file"):
            raise CredentialError(f"Unsupported secret reference: {secret_ref!r}")
        self._scheme = scheme
        self._target = target

    async def fetch(self) -> DatabaseCredentials:
        if self._scheme == "env":
            raw = os.environ.get(self._target)
        else:
            raw = await asyncio.to_thread(self._read_file)
        if not raw:
            raise CredentialError("Database secret not found")
        try:
            return DatabaseCredentials.model_validate(json.loads(raw))
        except (json.JSONDecodeError, PydanticValidationError) as exc:
            raise CredentialError("Database secret is malformed") from exc

    def _read_file(self) -> str | None:
        path = Path(self._target)
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")
