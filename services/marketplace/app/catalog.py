"""
Marketplace Service: 商品カタログ

商品の登録と参照を行う薄いコンポーネント。
在庫の減算は行わない（OrderCoordinator だけが在庫を変更する）。
"""

import logging
from uuid import uuid4

from . import store as st
from .cache import ProductListCache
from .errors import ConflictError, NotFoundError, ValidationError
from .events import PRODUCT_EVENTS, EventPublisher, ProductCreated
from .models import (
    CATEGORY_LENGTH,
    ID_LENGTH,
    MAX_QUANTITY,
    NAME_LENGTH,
    Product,
    require_price,
    require_text,
)

logger = logging.getLogger(__name__)


class ProductCatalog:
    def __init__(
        self,
        store: st.Store,
        cache: ProductListCache | None = None,
        publisher: EventPublisher | None = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.publisher = publisher

    async def create(
        self,
        name: str,
        category: str,
        price: float,
        stock_quantity: int = 0,
        supplier_email: str | None = None,
        product_id: str | None = None,
    ) -> Product:
        """
        商品登録

        1. 入力を検証し、ID が無ければ採番する
        2. version=1 で「存在しなければ挿入」
        3. 一覧キャッシュを破棄し ProductCreated を発行
        """
        name = require_text("name", name, NAME_LENGTH)
        category = require_text("category", category, CATEGORY_LENGTH)
        price = require_price(price)
        if (
            isinstance(stock_quantity, bool)
            or not isinstance(stock_quantity, int)
            or not 0 <= stock_quantity <= MAX_QUANTITY
        ):
            raise ValidationError("stock_quantity must be a non-negative integer")
        if product_id is not None:
            product_id = require_text("id", product_id, ID_LENGTH)

        product = Product(
            id=product_id or str(uuid4()),
            name=name,
            category=category,
            price=price,
            stock_quantity=stock_quantity,
            version=1,
            supplier_email=supplier_email,
        )

        outcome = await self.store.conditional_transaction(
            [st.InsertIfAbsent(st.PRODUCTS, product.to_record())]
        )
        if isinstance(outcome, st.Aborted):
            raise ConflictError(f"Product {product.id} already exists")

        logger.info("Created product %s in category %s", product.id, product.category)

        if self.cache is not None:
            await self.cache.invalidate(product.category)
        if self.publisher is not None:
            await self.publisher.publish(
                PRODUCT_EVENTS,
                ProductCreated(
                    product_id=product.id,
                    name=product.name,
                    category=product.category,
                    price=product.price,
                    stock_quantity=product.stock_quantity,
                    version=product.version,
                ),
            )
        return product

    async def get(self, product_id: str) -> Product:
        record = await self.store.get(st.PRODUCTS, product_id)
        if record is None:
            raise NotFoundError("Product not found")
        return Product.from_record(record)

    async def list(self, category: str | None = None) -> list[Product]:
        """カテゴリ指定があればインデックス、無ければ全件から取得する。"""
        category = category or None
        if self.cache is not None:
            cached = await self.cache.get(category)
            if cached is not None:
                return [Product.model_validate(p) for p in cached]

        if category:
            records = await self.store.query_by_index(
                "products_by_category", category, descending=False
            )
        else:
            records = await self.store.scan(st.PRODUCTS)
        products = [Product.from_record(r) for r in records]

        if self.cache is not None:
            await self.cache.set(category, [p.model_dump(mode="json") for p in products])
        return products
