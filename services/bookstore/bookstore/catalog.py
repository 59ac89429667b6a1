"""
Bookstore Service - カタログストア (Catalog Store)

注文エンジンから見た本のストア。ここで扱うのは
  - 在庫・価格の読み取り（楽観的ロック用の version 付き）
  - 在庫の条件付き減算
だけで、本の登録・編集はカタログ管理側の仕事。

楽観的ロック:
  読み取った version と一致する場合のみ UPDATE する。
  他のトランザクションが先に在庫を書き換えていれば 0 行更新となり、
  呼び出し側は競合 (Conflict) として扱う。
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession


@dataclass(frozen=True)
class BookSnapshot:
    """トランザクション内で読み取った本の状態"""

    id: str
    title: str
    price: int
    stock: int
    version: int


async def read_book_for_update(
    session: AsyncSession, book_id: str
) -> BookSnapshot | None:
    """
    在庫と価格を version 付きで読み取る。

    返した version は decrement_stock() の条件に使う。
    """
    result = await session.execute(
        text("SELECT id, title, price, stock, version FROM books WHERE id = :id"),
        {"id": book_id},
    )
    row = result.first()
    if not row:
        return None
    return BookSnapshot(
        id=row.id,
        title=row.title,
        price=row.price,
        stock=row.stock,
        version=row.version,
    )


async def decrement_stock(
    session: AsyncSession,
    book_id: str,
    amount: int,
    expected_version: int,
) -> bool:
    """
    在庫を amount だけ減らす。

    読み取り時から version が変わっている、または在庫が足りない場合は
    何も更新せず False を返す。
    """
    result = await session.execute(
        text("""
            UPDATE books
            SET stock = stock - :qty, version = version + 1, updated_at = :now
            WHERE id = :id AND version = :version AND stock >= :qty
        """).bindparams(bindparam("now", type_=DateTime(timezone=True))),
        {
            "qty": amount,
            "id": book_id,
            "version": expected_version,
            "now": datetime.now(timezone.utc),
        },
    )
    return result.rowcount == 1


async def add_book(
    session: AsyncSession,
    title: str,
    price: int,
    stock: int,
    writer: str = "",
    image_url: str | None = None,
    book_id: str | None = None,
) -> str:
    """本を 1 冊登録する（シードデータ・テスト用）。コミットは呼び出し側。"""
    if price < 0:
        raise ValueError("Price cannot be negative")
    if stock < 0:
        raise ValueError("Stock cannot be negative")

    book_id = book_id or str(uuid4())
    now = datetime.now(timezone.utc)
    await session.execute(
        text("""
            INSERT INTO books
                (id, title, writer, price, stock, image_url, version, created_at, updated_at)
            VALUES
                (:id, :title, :writer, :price, :stock, :image_url, 1, :now, :now)
        """).bindparams(bindparam("now", type_=DateTime(timezone=True))),
        {
            "id": book_id,
            "title": title,
            "writer": writer,
            "price": price,
            "stock": stock,
            "image_url": image_url,
            "now": now,
        },
    )
    return book_id
