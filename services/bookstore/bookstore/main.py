"""
Bookstore Service - FastAPI エントリーポイント

CQRS パターンに従い、Command (POST) と Query (GET) のエンドポイントを分離。
注文系のエンドポイントはすべて認証済みの購入者 (X-User-Id) を必要とする。
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Literal

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, queries
from .errors import OrderError, OrderErrorKind
from .identity import get_buyer_id
from .schema import create_schema

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
CHECKOUT_MAX_ATTEMPTS = max(1, int(os.environ.get("CHECKOUT_MAX_ATTEMPTS", "3")))
CHECKOUT_TIMEOUT_SECONDS = float(os.environ.get("CHECKOUT_TIMEOUT_SECONDS", "10"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logging.getLogger("bookstore").setLevel(LOG_LEVEL)
logger = logging.getLogger(__name__)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None

ERROR_STATUS = {
    OrderErrorKind.INVALID_INPUT: 400,
    OrderErrorKind.UNAUTHENTICATED: 401,
    OrderErrorKind.BOOK_NOT_FOUND: 404,
    OrderErrorKind.ORDER_NOT_FOUND: 404,
    OrderErrorKind.INSUFFICIENT_STOCK: 409,
    OrderErrorKind.TRANSIENT_FAILURE: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    await create_schema(engine)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    logger.info("Bookstore service started")
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Bookstore Service", lifespan=lifespan)

# CORS 設定（フロントエンドの dev server からのアクセスを許可）
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """リクエスト形式の誤りも InvalidInput として返す。"""
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    error = OrderError.invalid_input(f"{location}: {message}" if location else message)
    return JSONResponse(status_code=400, content={"detail": error.model_dump(mode="json")})


def _raise_for(error: OrderError) -> None:
    raise HTTPException(
        status_code=ERROR_STATUS[error.kind],
        detail=error.model_dump(mode="json"),
    )


# ── Request Models ───────────────────────────────

class OrderItemRequest(BaseModel):
    book_id: str
    quantity: int


class PlaceOrderRequest(BaseModel):
    items: list[OrderItemRequest]


# ── Command Endpoints (Write 側) ─────────────────

@app.post("/commands/orders", status_code=201)
async def cmd_place_order(
    req: PlaceOrderRequest, buyer_id: str = Depends(get_buyer_id)
):
    """注文作成コマンド（チェックアウト）"""
    result = await commands.place_order(
        async_session,
        redis_pool,
        buyer_id,
        [(item.book_id, item.quantity) for item in req.items],
        max_attempts=CHECKOUT_MAX_ATTEMPTS,
        timeout=CHECKOUT_TIMEOUT_SECONDS,
    )
    if isinstance(result, OrderError):
        _raise_for(result)
    return result.to_dict()


# ── Query Endpoints (Read 側) ────────────────────

@app.get("/queries/orders")
async def query_list_orders(
    buyer_id: str = Depends(get_buyer_id),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: str | None = None,
    sort: Literal["created_at", "id", "total_quantity", "total_price"] = "created_at",
    order: Literal["asc", "desc"] = "desc",
):
    """購入者本人の注文一覧"""
    async with async_session() as session:
        return await queries.list_orders(
            session,
            buyer_id,
            page=page,
            limit=limit,
            search=search,
            sort=sort,
            order=order,
        )


@app.get("/queries/orders/{order_id}")
async def query_get_order(order_id: str, buyer_id: str = Depends(get_buyer_id)):
    """購入者本人の注文詳細"""
    async with async_session() as session:
        result = await queries.get_order(session, buyer_id, order_id)
        if not result:
            _raise_for(OrderError.order_not_found())
        return result


@app.get("/queries/books")
async def query_list_books():
    async with async_session() as session:
        return await queries.list_books(session)


@app.get("/queries/books/{book_id}")
async def query_get_book(book_id: str):
    async with async_session() as session:
        book = await queries.get_book(session, book_id)
        if not book:
            _raise_for(OrderError.book_not_found(book_id))
        return book


@app.get("/health")
async def health():
    return {"status": "ok", "service": "bookstore-service"}
