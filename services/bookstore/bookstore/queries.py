"""
Bookstore Service - クエリハンドラ (CQRS の Read 側)

注文は購入者本人にしか見せない。すべての注文クエリは buyer_id で絞り込む。
"""

import math
from datetime import datetime

from sqlalchemy import DateTime, text
from sqlalchemy.ext.asyncio import AsyncSession

# ソートキーは SQL に埋め込むので、ここに列挙したものだけを許可する
ORDER_SORT_COLUMNS = {
    "created_at": "created_at",
    "id": "id",
    "total_quantity": "total_quantity",
    "total_price": "total_price",
}
SORT_DIRECTIONS = {"asc": "ASC", "desc": "DESC"}


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _escape_like(value: str) -> str:
    """LIKE のワイルドカードを文字どおりに扱う（エスケープ文字は '!'）。"""
    return value.replace("!", "!!").replace("%", "!%").replace("_", "!_")


async def _load_lines(session: AsyncSession, order_ids: list[str]) -> dict[str, list]:
    """注文 ID ごとの明細（本の情報つき）を position 順で返す。"""
    if not order_ids:
        return {}
    params = {f"id{i}": order_id for i, order_id in enumerate(order_ids)}
    placeholders = ", ".join(f":{name}" for name in params)
    result = await session.execute(
        text(f"""
            SELECT l.order_id, l.position, l.book_id, l.quantity, l.price,
                   b.title, b.image_url
            FROM order_lines l
            LEFT JOIN books b ON b.id = l.book_id
            WHERE l.order_id IN ({placeholders})
            ORDER BY l.order_id, l.position
        """),
        params,
    )
    lines: dict[str, list] = {order_id: [] for order_id in order_ids}
    for row in result.fetchall():
        lines[row.order_id].append(
            {
                "book_id": row.book_id,
                "quantity": row.quantity,
                "price": row.price,
                "book": {
                    "id": row.book_id,
                    "title": row.title,
                    "image_url": row.image_url,
                },
            }
        )
    return lines


def _order_to_dict(row, lines: list) -> dict:
    return {
        "order_id": row.id,
        "buyer_id": row.buyer_id,
        "total_quantity": row.total_quantity,
        "total_price": row.total_price,
        "created_at": _iso(row.created_at),
        "lines": lines,
    }


async def get_order(
    session: AsyncSession, buyer_id: str, order_id: str
) -> dict | None:
    """購入者本人の注文を 1 件取得する。他人の注文は None。"""
    result = await session.execute(
        text("""
            SELECT id, buyer_id, total_quantity, total_price, created_at
            FROM orders
            WHERE id = :id AND buyer_id = :buyer_id
        """).columns(created_at=DateTime(timezone=True)),
        {"id": order_id, "buyer_id": buyer_id},
    )
    row = result.first()
    if not row:
        return None
    lines = await _load_lines(session, [row.id])
    return _order_to_dict(row, lines[row.id])


async def list_orders(
    session: AsyncSession,
    buyer_id: str,
    page: int = 1,
    limit: int = 10,
    search: str | None = None,
    sort: str = "created_at",
    order: str = "desc",
) -> dict:
    """
    購入者の注文一覧（ページング・検索・ソート）

    search は注文 ID の部分一致（大文字小文字を区別しない）。
    """
    if sort not in ORDER_SORT_COLUMNS:
        raise ValueError(f"Unsupported sort key: {sort}")
    if order not in SORT_DIRECTIONS:
        raise ValueError(f"Unsupported sort order: {order}")

    where = "buyer_id = :buyer_id"
    params: dict = {"buyer_id": buyer_id}
    if search:
        where += " AND LOWER(id) LIKE :pattern ESCAPE '!'"
        params["pattern"] = f"%{_escape_like(search.lower())}%"

    count_result = await session.execute(
        text(f"SELECT COUNT(*) FROM orders WHERE {where}"), params
    )
    total_items = count_result.scalar_one()

    # 同じ値のときの並びを安定させるため id を第 2 キーにする
    order_by = f"{ORDER_SORT_COLUMNS[sort]} {SORT_DIRECTIONS[order]}, id ASC"
    result = await session.execute(
        text(f"""
            SELECT id, buyer_id, total_quantity, total_price, created_at
            FROM orders
            WHERE {where}
            ORDER BY {order_by}
            LIMIT :limit OFFSET :offset
        """).columns(created_at=DateTime(timezone=True)),
        {**params, "limit": limit, "offset": (page - 1) * limit},
    )
    rows = result.fetchall()
    lines = await _load_lines(session, [row.id for row in rows])

    return {
        "items": [_order_to_dict(row, lines[row.id]) for row in rows],
        "meta": {
            "page": page,
            "limit": limit,
            "total_items": total_items,
            "total_pages": math.ceil(total_items / limit) if limit else 0,
        },
    }


def _book_to_dict(row) -> dict:
    return {
        "id": row.id,
        "title": row.title,
        "writer": row.writer,
        "price": row.price,
        "stock": row.stock,
        "image_url": row.image_url,
    }


async def get_book(session: AsyncSession, book_id: str) -> dict | None:
    result = await session.execute(
        text("""
            SELECT id, title, writer, price, stock, image_url
            FROM books WHERE id = :id
        """),
        {"id": book_id},
    )
    row = result.first()
    if not row:
        return None
    return _book_to_dict(row)


async def list_books(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT id, title, writer, price, stock, image_url
            FROM books ORDER BY title
        """),
    )
    return [_book_to_dict(row) for row in result.fetchall()]
