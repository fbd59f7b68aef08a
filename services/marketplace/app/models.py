"""
Marketplace Service: ドメインモデル

Product と Order はストアの 1 行に対応する。
stock_quantity と version は必ず同じ行から一緒に読み出す。
"""

from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel

from .errors import ValidationError

# 列幅と価格の上限。ストアのスキーマと入力検証の両方がこの値を使う
ID_LENGTH = 64
NAME_LENGTH = 255
CATEGORY_LENGTH = 128
USER_ID_LENGTH = 128
PRICE_LIMIT = 10**10  # Numeric(12, 2) の整数部は 10 桁
PRICE_SCALE = 2
MAX_QUANTITY = 2**31 - 1  # Integer 列の上限


def require_text(field: str, value, max_length: int) -> str:
    """前後の空白を除いた文字列を返す。空白だけ・長すぎる値は拒否する。"""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters")
    return value


def require_price(price) -> float:
    # NaN はどちらの比較も偽になるので not (...) で弾ける
    if isinstance(price, bool) or not isinstance(price, (int, float)) or not (0 < price):
        raise ValidationError("price must be a positive number")
    if not (price < PRICE_LIMIT):
        raise ValidationError(f"price must be less than {PRICE_LIMIT}")
    if Decimal(str(price)).as_tuple().exponent < -PRICE_SCALE:
        raise ValidationError(f"price must have at most {PRICE_SCALE} decimal places")
    return float(price)


def _as_utc(value: datetime) -> datetime:
    # SQLite はタイムゾーンを保持しないので UTC として扱う
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Product(BaseModel):
    id: str
    name: str
    category: str
    price: float
    stock_quantity: int
    version: int
    supplier_email: str | None = None

    @classmethod
    def from_record(cls, record: dict) -> "Product":
        return cls(
            id=record["id"],
            name=record["name"],
            category=record["category"],
            price=float(record["price"]),
            stock_quantity=record["stock_quantity"],
            version=record["version"],
            supplier_email=record.get("supplier_email"),
        )

    def to_record(self) -> dict:
        return self.model_dump()


class Order(BaseModel):
    """完了した注文。作成後は更新も削除もしない。"""
    order_id: str
    product_id: str
    user_id: str
    quantity: int
    timestamp: datetime

    @classmethod
    def from_record(cls, record: dict) -> "Order":
        return cls(
            order_id=record["order_id"],
            product_id=record["product_id"],
            user_id=record["user_id"],
            quantity=record["quantity"],
            timestamp=_as_utc(record["timestamp"]),
        )

    def to_record(self) -> dict:
        return self.model_dump()
