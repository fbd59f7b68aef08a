"""
Marketplace Service: 注文コマンド (CQRS Write 側)

在庫を変更できるのはこのモジュールの OrderCoordinator だけ。
ロックは使わず、version による楽観的ロックで売り越しを防ぐ。

  1. 商品の (stock_quantity, version) を読み取る
  2. 在庫が足りなければ即座に失敗（最適化であり、正しさの保証ではない）
  3. 次の 2 操作を 1 つの条件付きトランザクションで送信する
     - 商品: stock_quantity -= q, version += 1
             条件 version == 読み取った値 AND stock_quantity >= q
     - 注文: 新しい order_id で挿入
  4. コミット → Order を返す / 中断 → ConflictError

自動リトライはしない。競合時に再読み込みするかどうかは呼び出し側が決める。
"""

import asyncio
import logging
from datetime import datetime, timezone
from uuid import uuid4

from . import store as st
from .cache import ProductListCache
from .errors import ConflictError, NotFoundError, StoreUnavailableError, ValidationError
from .events import ORDER_EVENTS, EventPublisher, OrderPlaced
from .models import ID_LENGTH, USER_ID_LENGTH, Order, require_text

logger = logging.getLogger(__name__)


class OrderCoordinator:
    def __init__(
        self,
        store: st.Store,
        publisher: EventPublisher | None = None,
        cache: ProductListCache | None = None,
        timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.cache = cache
        self.timeout = timeout

    async def place_order(self, product_id: str, quantity: int, user_id: str) -> Order:
        """
        注文確定コマンド

        成功時は在庫の減算と注文の挿入が同時にコミットされる。
        失敗時はどちらも行われない。
        """
        product_id = require_text("product_id", product_id, ID_LENGTH)
        user_id = require_text("user_id", user_id, USER_ID_LENGTH)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("quantity must be a positive integer")

        context = {"product_id": product_id, "user_id": user_id, "quantity": quantity}

        # 1. 現在の在庫とバージョンを同じ行から読み取る
        #    まだ何も送信していないので、タイムアウトは単なる障害として扱う
        try:
            snapshot = await asyncio.wait_for(
                self.store.get(st.PRODUCTS, product_id), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.error("Product read timed out %s", context)
            raise StoreUnavailableError("Product read timed out") from None
        except StoreUnavailableError:
            logger.exception("Could not read product for order %s", context)
            raise
        if snapshot is None:
            raise NotFoundError("Product not found")

        observed_version = snapshot["version"]
        if quantity > snapshot["stock_quantity"]:
            raise ValidationError("insufficient stock")

        # 2. トランザクションを組み立てる
        order = Order(
            order_id=str(uuid4()),
            product_id=product_id,
            user_id=user_id,
            quantity=quantity,
            timestamp=datetime.now(timezone.utc),
        )
        operations = [
            st.UpdateIf(
                st.PRODUCTS,
                product_id,
                increments={"stock_quantity": -quantity, "version": 1},
                expected={"version": observed_version},
                at_least={"stock_quantity": quantity},
            ),
            st.InsertIfAbsent(st.ORDERS, order.to_record()),
        ]

        # 3. 送信（タイムアウト時はコミット済みかどうか分からない）
        try:
            outcome = await asyncio.wait_for(
                self.store.conditional_transaction(operations), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Order transaction timed out, outcome unknown %s", context)
            raise ConflictError(
                "Order outcome unknown; check your orders before retrying",
                ambiguous=True,
            ) from None
        except StoreUnavailableError:
            logger.exception("Order transaction failed %s", context)
            raise

        if isinstance(outcome, st.Aborted):
            logger.info(
                "Order conflict on product %s at version %d: %s",
                product_id,
                observed_version,
                outcome.reason,
            )
            raise ConflictError("Concurrent update or insufficient stock")

        logger.info(
            "Placed order %s for product %s (version %d -> %d)",
            order.order_id,
            product_id,
            observed_version,
            observed_version + 1,
        )

        # 4. コミット後の通知
        if self.cache is not None:
            await self.cache.invalidate(snapshot["category"])
        if self.publisher is not None:
            await self.publisher.publish(
                ORDER_EVENTS,
                OrderPlaced(
                    order_id=order.order_id,
                    product_id=order.product_id,
                    user_id=order.user_id,
                    quantity=order.quantity,
                    product_version=observed_version + 1,
                    timestamp=order.timestamp,
                ),
            )
        return order
