"""
Marketplace Service: 注文履歴 (CQRS Read 側)

注文は追記のみで、更新も削除もされない。
同じ注文レコードを購入者別・商品別の 2 つのインデックスから読める。
どちらも新しい順に返す。
"""

from .models import ID_LENGTH, USER_ID_LENGTH, Order, require_text
from .store import Store


class OrderLedger:
    def __init__(self, store: Store) -> None:
        self.store = store

    async def list_orders_for_user(self, user_id: str) -> list[Order]:
        """購入者の注文を新しい順に返す。注文が無ければ空リスト。"""
        user_id = require_text("user_id", user_id, USER_ID_LENGTH)
        records = await self.store.query_by_index("orders_by_user", user_id)
        return [Order.from_record(r) for r in records]

    async def list_orders_for_product(self, product_id: str) -> list[Order]:
        product_id = require_text("product_id", product_id, ID_LENGTH)
        records = await self.store.query_by_index("orders_by_product", product_id)
        return [Order.from_record(r) for r in records]
