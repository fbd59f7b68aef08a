"""
Marketplace Service: 設定

環境変数は起動時に一度だけ読み込み、Settings に変換して検証する。
各コンポーネントは os.environ を直接参照せず、Settings を受け取る。
"""

import logging
import os
import re
from collections.abc import Mapping

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")

# 環境変数名 → Settings のフィールド名
_ENV_FIELDS = {
    "DATABASE_URL": "database_url",
    "REDIS_URL": "redis_url",
    "PRODUCTS_TABLE": "products_table",
    "ORDERS_TABLE": "orders_table",
    "STORE_TIMEOUT_SECONDS": "store_timeout_seconds",
    "CACHE_TTL_SECONDS": "cache_ttl_seconds",
    "AUTO_CREATE_SCHEMA": "auto_create_schema",
    "LOG_LEVEL": "log_level",
}


class Settings(BaseModel):
    database_url: str = Field(min_length=1)
    redis_url: str | None = None
    products_table: str = "products"
    orders_table: str = "orders"
    store_timeout_seconds: float = Field(default=5.0, gt=0)
    cache_ttl_seconds: int = Field(default=60, gt=0)
    auto_create_schema: bool = True
    log_level: str = "INFO"

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("products_table", "orders_table")
    @classmethod
    def _table_name(cls, value: str) -> str:
        if not _IDENTIFIER.match(value):
            raise ValueError(f"invalid table name: {value!r}")
        return value

    @field_validator("log_level")
    @classmethod
    def _log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"unknown log level: {value!r}")
        return level

    @model_validator(mode="after")
    def _distinct_tables(self) -> "Settings":
        if self.products_table == self.orders_table:
            raise ValueError("products_table and orders_table must differ")
        return self

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """
        環境変数から Settings を組み立てる。

        未設定の変数はデフォルト値を使う。DATABASE_URL だけは必須。
        不正な値は ConfigurationError として起動時に失敗させる。
        """
        environ = os.environ if environ is None else environ
        values = {
            field: environ[name] for name, field in _ENV_FIELDS.items() if name in environ
        }
        try:
            return cls.model_validate(values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
