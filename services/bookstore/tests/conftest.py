"""Shared fixtures: a fresh on-disk SQLite catalog per test and a recording Redis."""
import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import httpx
import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from bookstore import catalog
from bookstore import main
from bookstore.schema import create_schema


class RecordingRedis:
    """Stands in for redis.asyncio.Redis; keeps what was published."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published = []

    async def publish(self, channel, message):
        if self.fail:
            raise RedisConnectionError("redis is down")
        self.published.append((channel, json.loads(message)))
        return 1


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bookstore.db'}")
    await create_schema(engine)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
def failing_redis():
    return RecordingRedis(fail=True)


@pytest_asyncio.fixture
async def books(session_factory):
    async with session_factory() as session:
        await catalog.add_book(
            session, "Filosofi Teras", price=95000, stock=45,
            writer="Henry Manampiring", book_id="book-teras",
        )
        await catalog.add_book(
            session, "Deep Work", price=130000, stock=30,
            writer="Cal Newport", book_id="book-deep-work",
        )
        await catalog.add_book(
            session, "Laskar Pelangi", price=100, stock=5,
            writer="Andrea Hirata", book_id="book-laskar",
        )
        await catalog.add_book(
            session, "Bumi Manusia", price=250, stock=4,
            writer="Pramoedya Ananta Toer", book_id="book-bumi",
        )
        await session.commit()
    return {
        "teras": "book-teras",
        "deep_work": "book-deep-work",
        "laskar": "book-laskar",
        "bumi": "book-bumi",
    }


@pytest.fixture
def stock_of(session_factory):
    async def _stock_of(book_id):
        async with session_factory() as session:
            result = await session.execute(
                text("SELECT stock FROM books WHERE id = :id"), {"id": book_id}
            )
            return result.scalar_one()
    return _stock_of


@pytest.fixture
def order_count(session_factory):
    async def _order_count():
        async with session_factory() as session:
            orders = await session.execute(text("SELECT COUNT(*) FROM orders"))
            lines = await session.execute(text("SELECT COUNT(*) FROM order_lines"))
            return orders.scalar_one(), lines.scalar_one()
    return _order_count


@pytest.fixture
def set_price(session_factory):
    """Catalog management changing a book's price behind the order engine."""
    async def _set_price(book_id, price):
        async with session_factory() as session:
            await session.execute(
                text("UPDATE books SET price = :price, version = version + 1 WHERE id = :id"),
                {"price": price, "id": book_id},
            )
            await session.commit()
    return _set_price


@pytest_asyncio.fixture
async def client(session_factory, redis, monkeypatch):
    monkeypatch.setattr(main, "async_session", session_factory)
    monkeypatch.setattr(main, "redis_pool", redis)
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
