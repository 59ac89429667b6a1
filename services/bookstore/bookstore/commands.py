"""
Bookstore Service - コマンドハンドラ (CQRS の Write 側)

チェックアウト（注文作成）を 1 つのトランザクションで行う。

  1. 入力を検証する（ここではまだ何も書き込まない）
  2. トランザクション内で本の在庫・価格を読み直す
  3. 在庫不足・存在しない本があればロールバックしてエラーを返す
  4. 注文ヘッダと明細を作成（価格は 2 で読んだものを凍結）
  5. 在庫を条件付きで減算（楽観的ロック）
  6. コミット
  7. Redis Pub/Sub で OrderPlaced を発行

同じ本を同時に注文された場合、後から書き込む側の条件付き UPDATE が
0 行になる。その試行はロールバックし、最初からやり直す。
書き込みは常に book_id の昇順で行い、ロック順序によるデッドロックを避ける。
"""

import asyncio
import json
import logging
from collections.abc import Sequence

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import catalog
from .aggregate import OrderAggregate
from .errors import OrderError, StockConflict

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_BACKOFF_SECONDS = 0.05

# serialization_failure, deadlock_detected
TRANSIENT_SQLSTATES = {"40001", "40P01"}


def validate_items(buyer_id: str | None, items: Sequence) -> OrderError | None:
    """トランザクションを開く前の入力チェック。問題なければ None。"""
    if not buyer_id or not buyer_id.strip():
        return OrderError.unauthenticated()
    if not items:
        return OrderError.invalid_input("Items array is required")

    for i, item in enumerate(items):
        try:
            book_id, quantity = item
        except (TypeError, ValueError):
            return OrderError.invalid_input(
                f"items[{i}] must be a (book_id, quantity) pair"
            )
        if not isinstance(book_id, str) or not book_id.strip():
            return OrderError.invalid_input(f"items[{i}].book_id is required")
        # bool は int のサブクラスなので明示的に弾く
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            return OrderError.invalid_input(
                f"items[{i}].quantity must be an integer"
            )
        if quantity < 1:
            return OrderError.invalid_input(f"items[{i}].quantity must be >= 1")

    return None


def is_transient_store_error(error: DBAPIError) -> bool:
    """
    同じ内容で再試行すれば通りうるストアのエラーか。

    OperationalError（ロック待ちのタイムアウト、"database is locked" など）と
    PostgreSQL の直列化失敗 (40001)・デッドロック検出 (40P01) だけを対象にする。
    DataError や IntegrityError は何度やり直しても同じ結果になる。
    """
    if isinstance(error, OperationalError):
        return True
    orig = error.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return sqlstate in TRANSIENT_SQLSTATES


def combine_demand(items: Sequence[tuple[str, int]]) -> dict[str, int]:
    """
    本ごとの要求数量を合算する。

    同じ本が複数行にあっても、在庫とは合計で比較する。
    キーの順序は最初に現れた順。
    """
    demand: dict[str, int] = {}
    for book_id, quantity in items:
        demand[book_id] = demand.get(book_id, 0) + quantity
    return demand


async def place_order(
    session_factory: sessionmaker,
    redis: aioredis.Redis | None,
    buyer_id: str | None,
    items: Sequence[tuple[str, int]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    backoff: float = DEFAULT_BACKOFF_SECONDS,
) -> OrderAggregate | OrderError:
    """
    注文作成コマンド

    成功すればコミット済みの OrderAggregate、失敗すれば OrderError を返す。
    どの失敗経路でもカタログと注文テーブルは呼び出し前のまま。
    """
    error = validate_items(buyer_id, items)
    if error:
        return error
    lines = [(book_id, quantity) for book_id, quantity in items]

    try:
        result = await asyncio.wait_for(
            _place_with_retry(session_factory, buyer_id, lines, max_attempts, backoff),
            timeout,
        )
    except asyncio.TimeoutError:
        # wait_for が試行中のタスクをキャンセルし、セッションがロールバックされる
        logger.warning(
            "Checkout for buyer %s timed out after %.1fs", buyer_id, timeout
        )
        return OrderError.transient_failure("Checkout timed out, please retry")

    if isinstance(result, OrderAggregate):
        logger.info(
            "Order %s placed: buyer=%s lines=%d total_price=%d",
            result.id,
            result.buyer_id,
            len(result.lines),
            result.total_price,
        )
        await _publish_order_placed(redis, result)
    else:
        logger.info("Order rejected for buyer %s: %s", buyer_id, result.kind.value)
    return result


async def _place_with_retry(
    session_factory: sessionmaker,
    buyer_id: str,
    lines: list[tuple[str, int]],
    max_attempts: int,
    backoff: float,
) -> OrderAggregate | OrderError:
    max_attempts = max(1, max_attempts)
    for attempt in range(1, max_attempts + 1):
        try:
            return await _attempt(session_factory, buyer_id, lines)
        except StockConflict as e:
            logger.warning(
                "Stock conflict on book %s (attempt %d/%d)",
                e.book_id,
                attempt,
                max_attempts,
            )
        except DBAPIError as e:
            if not is_transient_store_error(e):
                logger.exception("Non-retryable store error during checkout")
                raise
            logger.warning(
                "Store error during checkout (attempt %d/%d): %s",
                attempt,
                max_attempts,
                type(e.orig).__name__ if e.orig else type(e).__name__,
            )
        if attempt < max_attempts:
            await asyncio.sleep(backoff * attempt)

    logger.warning(
        "Checkout for buyer %s gave up after %d attempts", buyer_id, max_attempts
    )
    return OrderError.transient_failure(
        "Could not complete checkout because of concurrent updates, please retry"
    )


async def _attempt(
    session_factory: sessionmaker,
    buyer_id: str,
    lines: list[tuple[str, int]],
) -> OrderAggregate | OrderError:
    """
    1 回分のトランザクション。

    競合は StockConflict、ストアの障害は DBAPIError として呼び出し元へ伝わる。
    どちらの場合もセッションを抜けた時点で未コミットの変更は破棄される。
    """
    async with session_factory() as session:
        demand = combine_demand(lines)

        # トランザクション内で最新の在庫・価格を読む
        books: dict[str, catalog.BookSnapshot | None] = {}
        for book_id in sorted(demand):
            books[book_id] = await catalog.read_book_for_update(session, book_id)

        for book_id, requested in demand.items():
            book = books[book_id]
            if book is None:
                await session.rollback()
                return OrderError.book_not_found(book_id)
            if book.stock < requested:
                await session.rollback()
                return OrderError.insufficient_stock(
                    book_id, book.title, requested, book.stock
                )

        order = OrderAggregate.new(buyer_id)
        for book_id, quantity in lines:
            order.add_line(book_id, quantity, books[book_id].price)

        await _insert_order(session, order)

        for book_id in sorted(demand):
            updated = await catalog.decrement_stock(
                session, book_id, demand[book_id], books[book_id].version
            )
            if not updated:
                await session.rollback()
                raise StockConflict(book_id)

        await session.commit()
        return order


async def _insert_order(session: AsyncSession, order: OrderAggregate) -> None:
    await session.execute(
        text("""
            INSERT INTO orders
                (id, buyer_id, total_quantity, total_price, created_at)
            VALUES
                (:id, :buyer_id, :total_quantity, :total_price, :created_at)
        """).bindparams(bindparam("created_at", type_=DateTime(timezone=True))),
        {
            "id": str(order.id),
            "buyer_id": order.buyer_id,
            "total_quantity": order.total_quantity,
            "total_price": order.total_price,
            "created_at": order.created_at,
        },
    )
    await session.execute(
        text("""
            INSERT INTO order_lines
                (order_id, position, book_id, quantity, price)
            VALUES
                (:order_id, :position, :book_id, :quantity, :price)
        """),
        [
            {
                "order_id": str(order.id),
                "position": position,
                "book_id": line.book_id,
                "quantity": line.quantity,
                "price": line.price,
            }
            for position, line in enumerate(order.lines)
        ],
    )


async def _publish_order_placed(
    redis: aioredis.Redis | None, order: OrderAggregate
) -> None:
    """
    OrderPlaced を発行する。

    注文はコミット済みなので、発行に失敗してもエラーにはしない。
    """
    if redis is None:
        return
    event = order.to_event()
    try:
        await redis.publish(
            ORDER_EVENTS_CHANNEL,
            json.dumps(
                {
                    "event_type": "OrderPlaced",
                    "data": event.model_dump(mode="json"),
                },
                default=str,
            ),
        )
    except RedisError:
        logger.exception("Failed to publish OrderPlaced for order %s", order.id)
