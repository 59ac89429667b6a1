"""
Bookstore Service - テーブル定義

カタログ (books) と注文 (orders / order_lines) のテーブル。
クエリは text() で書くが、DDL はここのメタデータから作成する。

books.version は楽観的ロック用のカラム。在庫を書き換えるたびに +1 する。
"""

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

books = Table(
    "books",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("title", String(255), nullable=False),
    Column("writer", String(255), nullable=False, default=""),
    Column("price", BigInteger, nullable=False),
    Column("stock", BigInteger, nullable=False),
    Column("image_url", Text, nullable=True),
    Column("version", Integer, nullable=False, default=1),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("price >= 0", name="ck_books_price_non_negative"),
    CheckConstraint("stock >= 0", name="ck_books_stock_non_negative"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("buyer_id", String(255), nullable=False, index=True),
    Column("total_quantity", BigInteger, nullable=False),
    Column("total_price", BigInteger, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

order_lines = Table(
    "order_lines",
    metadata,
    Column("order_id", String(36), ForeignKey("orders.id"), primary_key=True),
    Column("position", Integer, primary_key=True),
    Column("book_id", String(36), ForeignKey("books.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("price", BigInteger, nullable=False),
    CheckConstraint("quantity >= 1", name="ck_order_lines_quantity_positive"),
    CheckConstraint("price >= 0", name="ck_order_lines_price_non_negative"),
)


async def create_schema(engine: AsyncEngine) -> None:
    """存在しないテーブルを作成する（起動時・テスト用）。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
