"""
Marketplace Service: FastAPI エントリーポイント

商品カタログと注文を提供するサービス。
Command (POST) と Query (GET) のエンドポイントを分離する。

起動:
    uvicorn app.main:create_app --factory

エンジン・Redis クライアント・各コンポーネントは lifespan で生成し、
app.state 経由で各エンドポイントに渡す（モジュール変数の共有はしない）。
呼び出し元ユーザーはゲートウェイが付与する X-User-Id ヘッダーで受け取る。
"""

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import APIRouter, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import create_async_engine

from .cache import ProductListCache
from .catalog import ProductCatalog
from .commands import OrderCoordinator
from .config import Settings, configure_logging
from .errors import MarketplaceError
from .events import EventPublisher
from .models import Order, Product
from .queries import OrderLedger
from .store import Store

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Request Models ───────────────────────────────


class CreateProductRequest(BaseModel):
    id: str | None = None
    name: str
    category: str
    price: float
    stock_quantity: int = 0
    supplier_email: str | None = None


class PlaceOrderRequest(BaseModel):
    product_id: str
    quantity: int


# ── Command Endpoints (Write 側) ─────────────────


@router.post("/products", status_code=201, response_model=Product)
async def cmd_create_product(req: CreateProductRequest, request: Request):
    """商品登録コマンド"""
    catalog: ProductCatalog = request.app.state.catalog
    return await catalog.create(
        name=req.name,
        category=req.category,
        price=req.price,
        stock_quantity=req.stock_quantity,
        supplier_email=req.supplier_email,
        product_id=req.id,
    )


@router.post("/orders", status_code=201, response_model=Order)
async def cmd_place_order(
    req: PlaceOrderRequest,
    request: Request,
    user_id: str = Header(..., alias="X-User-Id"),
):
    """
    注文コマンド

    409 が返った場合は在庫が他の注文と競合した。
    再送する前に GET /orders/me で注文済みかどうかを確認すること。
    """
    coordinator: OrderCoordinator = request.app.state.coordinator
    return await coordinator.place_order(req.product_id, req.quantity, user_id)


# ── Query Endpoints (Read 側) ────────────────────


@router.get("/products", response_model=list[Product])
async def query_list_products(request: Request, category: str | None = None):
    """商品一覧（category 指定でカテゴリ絞り込み）"""
    return await request.app.state.catalog.list(category)


@router.get("/products/{product_id}", response_model=Product)
async def query_get_product(product_id: str, request: Request):
    return await request.app.state.catalog.get(product_id)


@router.get("/products/{product_id}/orders", response_model=list[Order])
async def query_product_orders(product_id: str, request: Request):
    """指定商品の注文を新しい順に取得"""
    await request.app.state.catalog.get(product_id)
    return await request.app.state.ledger.list_orders_for_product(product_id)


@router.get("/orders/me", response_model=list[Order])
async def query_my_orders(request: Request, user_id: str = Header(..., alias="X-User-Id")):
    """呼び出し元ユーザーの注文を新しい順に取得"""
    return await request.app.state.ledger.list_orders_for_user(user_id)


@router.get("/health")
async def health(request: Request):
    if not await request.app.state.store.ping():
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "service": "marketplace-service"},
        )
    return {"status": "ok", "service": "marketplace-service"}


# ── エラーハンドラ ───────────────────────────────


async def _marketplace_error(request: Request, exc: MarketplaceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    # 入力不正はすべて 400 として返す
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


# ── アプリケーション生成 ─────────────────────────


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)

        engine = create_async_engine(settings.database_url, echo=False)
        store = Store(engine, settings.products_table, settings.orders_table)
        if settings.auto_create_schema:
            await store.create_schema()

        redis_client: aioredis.Redis | None = None
        cache = publisher = None
        if settings.redis_url:
            redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
            cache = ProductListCache(redis_client, settings.cache_ttl_seconds)
            publisher = EventPublisher(redis_client)
        else:
            logger.info("REDIS_URL not set; product cache and events are disabled")

        app.state.store = store
        app.state.catalog = ProductCatalog(store, cache, publisher)
        app.state.coordinator = OrderCoordinator(
            store, publisher, cache, timeout=settings.store_timeout_seconds
        )
        app.state.ledger = OrderLedger(store)
        try:
            yield
        finally:
            if redis_client is not None:
                await redis_client.aclose()
            await engine.dispose()

    app = FastAPI(title="Marketplace Service", lifespan=lifespan)
    app.include_router(router)
    app.add_exception_handler(MarketplaceError, _marketplace_error)
    app.add_exception_handler(RequestValidationError, _request_validation_error)
    return app
