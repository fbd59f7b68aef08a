"""Tests for the conditional transaction store over SQLite."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from app.errors import StoreUnavailableError
from app.store import (
    ORDERS,
    PRODUCTS,
    Aborted,
    Committed,
    InsertIfAbsent,
    Store,
    UpdateIf,
)

pytestmark = pytest.mark.anyio


def _product(**overrides):
    record = {
        "id": "prod-001",
        "name": "Kettle",
        "category": "kitchen",
        "price": 25.0,
        "stock_quantity": 10,
        "version": 1,
        "supplier_email": None,
    }
    record.update(overrides)
    return record


def _order(order_id="ord-001", user_id="user-1", minutes=0, **overrides):
    record = {
        "order_id": order_id,
        "product_id": "prod-001",
        "user_id": user_id,
        "quantity": 1,
        "timestamp": datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes),
    }
    record.update(overrides)
    return record


def _purchase(quantity, observed_version):
    return UpdateIf(
        PRODUCTS,
        "prod-001",
        increments={"stock_quantity": -quantity, "version": 1},
        expected={"version": observed_version},
        at_least={"stock_quantity": quantity},
    )


async def _seed(store, **overrides):
    outcome = await store.conditional_transaction([InsertIfAbsent(PRODUCTS, _product(**overrides))])
    assert outcome == Committed()


class TestPointRead:
    async def test_missing_key_returns_none(self, store):
        assert await store.get(PRODUCTS, "nope") is None

    async def test_reads_stock_and_version_together(self, store):
        await _seed(store)
        record = await store.get(PRODUCTS, "prod-001")
        assert record["stock_quantity"] == 10
        assert record["version"] == 1
        assert record["price"] == 25.0

    async def test_unknown_table(self, store):
        with pytest.raises(ValueError):
            await store.get("customers", "c-1")


class TestConditionalTransaction:
    async def test_commits_update_and_insert_together(self, store):
        await _seed(store)
        outcome = await store.conditional_transaction(
            [_purchase(3, observed_version=1), InsertIfAbsent(ORDERS, _order())]
        )

        assert isinstance(outcome, Committed)
        product = await store.get(PRODUCTS, "prod-001")
        assert product["stock_quantity"] == 7
        assert product["version"] == 2
        assert await store.get(ORDERS, "ord-001") is not None

    async def test_stale_version_aborts_everything(self, store):
        await _seed(store, version=2)
        outcome = await store.conditional_transaction(
            [_purchase(3, observed_version=1), InsertIfAbsent(ORDERS, _order())]
        )

        assert outcome == Aborted(0, "precondition failed")
        product = await store.get(PRODUCTS, "prod-001")
        assert product["stock_quantity"] == 10
        assert product["version"] == 2
        assert await store.get(ORDERS, "ord-001") is None

    async def test_insufficient_stock_at_commit_aborts(self, store):
        await _seed(store, stock_quantity=2)
        outcome = await store.conditional_transaction(
            [_purchase(3, observed_version=1), InsertIfAbsent(ORDERS, _order())]
        )

        assert isinstance(outcome, Aborted)
        assert (await store.get(PRODUCTS, "prod-001"))["stock_quantity"] == 2

    async def test_duplicate_insert_rolls_back_earlier_update(self, store):
        await _seed(store)
        await store.conditional_transaction([InsertIfAbsent(ORDERS, _order())])

        outcome = await store.conditional_transaction(
            [_purchase(3, observed_version=1), InsertIfAbsent(ORDERS, _order())]
        )

        assert outcome == Aborted(1, "constraint violated")
        product = await store.get(PRODUCTS, "prod-001")
        assert product["stock_quantity"] == 10
        assert product["version"] == 1

    async def test_empty_transaction_is_rejected(self, store):
        with pytest.raises(ValueError):
            await store.conditional_transaction([])


class TestIndexQueries:
    async def test_orders_by_user_newest_first(self, store):
        await _seed(store)
        await store.conditional_transaction(
            [
                InsertIfAbsent(ORDERS, _order("ord-a", minutes=1)),
                InsertIfAbsent(ORDERS, _order("ord-b", minutes=3)),
                InsertIfAbsent(ORDERS, _order("ord-c", minutes=2)),
                InsertIfAbsent(ORDERS, _order("ord-x", user_id="user-2", minutes=4)),
            ]
        )

        records = await store.query_by_index("orders_by_user", "user-1")
        assert [r["order_id"] for r in records] == ["ord-b", "ord-c", "ord-a"]

    async def test_ascending_order(self, store):
        await _seed(store)
        await store.conditional_transaction(
            [
                InsertIfAbsent(ORDERS, _order("ord-a", minutes=2)),
                InsertIfAbsent(ORDERS, _order("ord-b", minutes=1)),
            ]
        )

        records = await store.query_by_index("orders_by_product", "prod-001", descending=False)
        assert [r["order_id"] for r in records] == ["ord-b", "ord-a"]

    async def test_equal_timestamps_fall_back_to_order_id(self, store):
        await _seed(store)
        await store.conditional_transaction(
            [
                InsertIfAbsent(ORDERS, _order("ord-m")),
                InsertIfAbsent(ORDERS, _order("ord-z")),
                InsertIfAbsent(ORDERS, _order("ord-a")),
            ]
        )

        newest_first = await store.query_by_index("orders_by_user", "user-1")
        oldest_first = await store.query_by_index("orders_by_user", "user-1", descending=False)

        assert [r["order_id"] for r in newest_first] == ["ord-z", "ord-m", "ord-a"]
        assert [r["order_id"] for r in oldest_first] == ["ord-a", "ord-m", "ord-z"]
        assert await store.query_by_index("orders_by_user", "user-1") == newest_first

    async def test_no_match_is_empty(self, store):
        assert await store.query_by_index("orders_by_user", "ghost") == []

    async def test_products_by_category(self, store):
        await _seed(store, id="p-1", name="Teapot", category="kitchen")
        await _seed(store, id="p-2", name="Blender", category="kitchen")
        await _seed(store, id="p-3", name="Lamp", category="living")

        records = await store.query_by_index("products_by_category", "kitchen", descending=False)
        assert [r["name"] for r in records] == ["Blender", "Teapot"]

    async def test_scan_orders_by_name(self, store):
        await _seed(store, id="p-1", name="Teapot")
        await _seed(store, id="p-2", name="Blender")

        assert [r["name"] for r in await store.scan(PRODUCTS)] == ["Blender", "Teapot"]

    async def test_unknown_index(self, store):
        with pytest.raises(ValueError):
            await store.query_by_index("orders_by_colour", "red")


class TestUnavailableStore:
    @pytest.fixture
    async def broken_store(self, anyio_backend, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'x.db'}")
        yield Store(engine)
        await engine.dispose()

    async def test_ping_reports_failure(self, broken_store):
        assert await broken_store.ping() is False

    async def test_read_raises_store_unavailable(self, broken_store):
        with pytest.raises(StoreUnavailableError):
            await broken_store.get(PRODUCTS, "prod-001")

    async def test_transaction_raises_store_unavailable(self, broken_store):
        with pytest.raises(StoreUnavailableError):
            await broken_store.conditional_transaction([InsertIfAbsent(PRODUCTS, _product())])

    async def test_ping_succeeds_on_healthy_store(self, store):
        assert await store.ping() is True
