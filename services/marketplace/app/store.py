"""
Marketplace Service: トランザクショナルストア

商品と注文を保存するキー・バリュー型のストア抽象。
SQLAlchemy (async) の上に次の操作だけを公開する:

  get(table, key)                          1 行のポイント読み取り
  scan(table)                              全件読み取り
  query_by_index(index, value, descending) インデックス経由の読み取り
  conditional_transaction(operations)      条件付きの複数行トランザクション

conditional_transaction は渡された操作をすべて 1 つの DB トランザクションで
実行する。どれか 1 つでも条件を満たさなければ全体をロールバックし、
例外ではなく Aborted を返す（競合は想定内の結果として扱う）。

UPDATE の WHERE 句は書き込み時点の行に対して評価されるため、
読み取り後に他のトランザクションが version を進めていれば
更新対象が 0 行となり、ロストアップデートを防げる。
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker

from .errors import StoreUnavailableError
from .models import CATEGORY_LENGTH, ID_LENGTH, NAME_LENGTH, PRICE_SCALE, USER_ID_LENGTH

logger = logging.getLogger(__name__)

PRODUCTS = "products"
ORDERS = "orders"


# ── 操作と結果 ───────────────────────────────────


@dataclass(frozen=True)
class UpdateIf:
    """
    条件付き更新。

    increments の各列に差分を加算する。expected の列は値が一致すること、
    at_least の列は値がそれ以上であることが条件。
    """
    table: str
    key: str
    increments: Mapping[str, int]
    expected: Mapping[str, Any] = field(default_factory=dict)
    at_least: Mapping[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class InsertIfAbsent:
    """同じキーの行が存在しない場合だけ挿入する。"""
    table: str
    record: Mapping[str, Any]


@dataclass(frozen=True)
class Committed:
    pass


@dataclass(frozen=True)
class Aborted:
    """どの操作の条件が満たされなかったか"""
    failed_index: int
    reason: str


Operation = UpdateIf | InsertIfAbsent
TransactionResult = Committed | Aborted


# ── ストア ───────────────────────────────────────


class Store:
    def __init__(
        self,
        engine: AsyncEngine,
        products_table: str = "products",
        orders_table: str = "orders",
    ) -> None:
        self._engine = engine
        self._session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        self.metadata = MetaData()

        products = Table(
            products_table,
            self.metadata,
            Column("id", String(ID_LENGTH), primary_key=True),
            Column("name", String(NAME_LENGTH), nullable=False),
            Column("category", String(CATEGORY_LENGTH), nullable=False, index=True),
            Column("price", Numeric(12, PRICE_SCALE, asdecimal=False), nullable=False),
            Column("stock_quantity", Integer, nullable=False),
            Column("version", Integer, nullable=False),
            Column("supplier_email", Text, nullable=True),
            CheckConstraint("stock_quantity >= 0", name=f"{products_table}_stock_non_negative"),
        )
        orders = Table(
            orders_table,
            self.metadata,
            Column("order_id", String(ID_LENGTH), primary_key=True),
            Column("product_id", String(ID_LENGTH), nullable=False, index=True),
            Column("user_id", String(USER_ID_LENGTH), nullable=False, index=True),
            Column("quantity", Integer, nullable=False),
            Column("timestamp", DateTime(timezone=True), nullable=False),
            CheckConstraint("quantity > 0", name=f"{orders_table}_quantity_positive"),
        )
        self._tables = {PRODUCTS: products, ORDERS: orders}

        # インデックス名 → (テーブル, 検索列, ソート列)
        self._indexes = {
            "products_by_category": (products, products.c.category, products.c.name),
            "orders_by_user": (orders, orders.c.user_id, orders.c.timestamp),
            "orders_by_product": (orders, orders.c.product_id, orders.c.timestamp),
        }

    def _table(self, name: str) -> Table:
        try:
            return self._tables[name]
        except KeyError:
            raise ValueError(f"Unknown table: {name}") from None

    @staticmethod
    def _primary_key(table: Table) -> Column:
        return list(table.primary_key.columns)[0]

    async def create_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(self.metadata.create_all)

    async def ping(self) -> bool:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (DBAPIError, OSError):
            logger.warning("Store ping failed", exc_info=True)
            return False
        return True

    # ── 読み取り ─────────────────────────────────

    async def get(self, table: str, key: str) -> dict | None:
        t = self._table(table)
        stmt = select(t).where(self._primary_key(t) == key)
        try:
            async with self._session() as session:
                result = await session.execute(stmt)
                row = result.first()
        except (DBAPIError, OSError) as e:
            raise StoreUnavailableError(f"Could not read {table}/{key}") from e
        return dict(row._mapping) if row else None

    async def scan(self, table: str) -> list[dict]:
        t = self._table(table)
        order_by = t.c.name if "name" in t.c else self._primary_key(t)
        stmt = select(t).order_by(order_by, self._primary_key(t))
        return await self._fetch_all(stmt, table)

    async def query_by_index(
        self,
        index_name: str,
        value: str,
        descending: bool = True,
    ) -> list[dict]:
        try:
            t, key_column, sort_column = self._indexes[index_name]
        except KeyError:
            raise ValueError(f"Unknown index: {index_name}") from None
        pk = self._primary_key(t)
        # ソート列が同値の行は主キー順。order_id は uuid4 なので、同じマイクロ秒の
        # 注文同士は挿入順ではなく order_id 順になる（読むたびに同じ順序は保たれる）
        if descending:
            order_by = (sort_column.desc(), pk.desc())
        else:
            order_by = (sort_column.asc(), pk.asc())
        stmt = select(t).where(key_column == value).order_by(*order_by)
        return await self._fetch_all(stmt, index_name)

    async def _fetch_all(self, stmt, source: str) -> list[dict]:
        try:
            async with self._session() as session:
                result = await session.execute(stmt)
                rows = result.fetchall()
        except (DBAPIError, OSError) as e:
            raise StoreUnavailableError(f"Could not query {source}") from e
        return [dict(row._mapping) for row in rows]

    # ── 書き込み ─────────────────────────────────

    async def conditional_transaction(
        self, operations: Sequence[Operation]
    ) -> TransactionResult:
        """
        すべての操作を 1 トランザクションで適用する。

        条件不成立 (UPDATE が 0 行、または一意制約違反) の場合は
        ロールバックして Aborted を返す。接続障害などは
        StoreUnavailableError を送出する。
        """
        if not operations:
            raise ValueError("conditional_transaction requires at least one operation")

        try:
            async with self._session() as session:
                for index, op in enumerate(operations):
                    try:
                        applied = await self._apply(session, op)
                    except IntegrityError as e:
                        await session.rollback()
                        logger.debug("Operation %d violated a constraint: %s", index, e.orig)
                        return Aborted(index, "constraint violated")
                    if not applied:
                        await session.rollback()
                        return Aborted(index, "precondition failed")
                await session.commit()
        except (DBAPIError, OSError) as e:
            raise StoreUnavailableError("Transaction could not be completed") from e
        return Committed()

    async def _apply(self, session: AsyncSession, op: Operation) -> bool:
        if isinstance(op, InsertIfAbsent):
            t = self._table(op.table)
            await session.execute(insert(t).values(**op.record))
            return True

        if isinstance(op, UpdateIf):
            t = self._table(op.table)
            conditions = [self._primary_key(t) == op.key]
            conditions += [t.c[name] == value for name, value in op.expected.items()]
            conditions += [t.c[name] >= value for name, value in op.at_least.items()]
            values = {name: t.c[name] + delta for name, delta in op.increments.items()}
            result = await session.execute(update(t).where(*conditions).values(**values))
            return result.rowcount == 1

        raise TypeError(f"Unsupported operation: {op!r}")
