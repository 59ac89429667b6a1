"""Order history queries: buyer scoping, search, sort and pagination."""
import pytest
import pytest_asyncio
from sqlalchemy import text

from bookstore import commands, queries


@pytest_asyncio.fixture
async def placed(session_factory, redis, books):
    """Three orders for user-1 (totals 100, 300, 250) and one for user-2."""
    orders = []
    for buyer, items in [
        ("user-1", [(books["laskar"], 1)]),
        ("user-1", [(books["laskar"], 3)]),
        ("user-1", [(books["bumi"], 1)]),
        ("user-2", [(books["bumi"], 2)]),
    ]:
        orders.append(await commands.place_order(session_factory, redis, buyer, items))
    return orders


@pytest.mark.asyncio
async def test_list_orders_only_returns_buyers_orders(session_factory, placed):
    async with session_factory() as session:
        result = await queries.list_orders(session, "user-1")

    assert {o["order_id"] for o in result["items"]} == {str(o.id) for o in placed[:3]}
    assert all(o["buyer_id"] == "user-1" for o in result["items"])
    assert result["meta"] == {"page": 1, "limit": 10, "total_items": 3, "total_pages": 1}


@pytest.mark.asyncio
async def test_list_orders_sort_and_paginate(session_factory, placed):
    async with session_factory() as session:
        first = await queries.list_orders(
            session, "user-1", page=1, limit=2, sort="total_price", order="asc"
        )
        second = await queries.list_orders(
            session, "user-1", page=2, limit=2, sort="total_price", order="asc"
        )

    assert [o["total_price"] for o in first["items"]] == [100, 250]
    assert [o["total_price"] for o in second["items"]] == [300]
    assert first["meta"]["total_pages"] == 2


@pytest.mark.asyncio
async def test_list_orders_search_by_id(session_factory, placed):
    target = str(placed[1].id)

    async with session_factory() as session:
        result = await queries.list_orders(session, "user-1", search=target[:8].upper())

    assert target in [o["order_id"] for o in result["items"]]
    assert result["meta"]["total_items"] >= 1


@pytest.mark.asyncio
async def test_list_orders_rejects_unknown_sort(session_factory):
    async with session_factory() as session:
        with pytest.raises(ValueError):
            await queries.list_orders(session, "user-1", sort="buyer_id; DROP TABLE orders")


@pytest.mark.asyncio
async def test_get_order_includes_book_details(session_factory, placed, books):
    async with session_factory() as session:
        order = await queries.get_order(session, "user-1", str(placed[1].id))

    assert order["total_quantity"] == 3
    assert order["created_at"] is not None
    assert order["lines"] == [
        {
            "book_id": books["laskar"],
            "quantity": 3,
            "price": 100,
            "book": {"id": books["laskar"], "title": "Laskar Pelangi", "image_url": None},
        }
    ]


@pytest.mark.asyncio
async def test_get_order_of_another_buyer_is_hidden(session_factory, placed):
    async with session_factory() as session:
        assert await queries.get_order(session, "user-1", str(placed[3].id)) is None
        assert await queries.get_order(session, "user-1", "missing") is None


@pytest.mark.asyncio
async def test_books_reflect_stock_after_orders(session_factory, placed, books):
    async with session_factory() as session:
        book = await queries.get_book(session, books["laskar"])
        titles = [b["title"] for b in await queries.list_books(session)]

    assert book["stock"] == 1
    assert titles == sorted(titles)


@pytest.mark.asyncio
async def test_search_treats_wildcards_literally(session_factory, placed):
    async with session_factory() as session:
        underscore = await queries.list_orders(session, "user-1", search="_")
        percent = await queries.list_orders(session, "user-1", search="%")

    assert underscore["meta"]["total_items"] == 0
    assert percent["meta"]["total_items"] == 0


@pytest.mark.asyncio
async def test_order_lines_survive_a_removed_book(session_factory, placed, books):
    async with session_factory() as session:
        await session.execute(text("DELETE FROM books WHERE id = :id"), {"id": books["bumi"]})
        await session.commit()

    async with session_factory() as session:
        order = await queries.get_order(session, "user-1", str(placed[2].id))

    assert len(order["lines"]) == 1
    assert order["lines"][0]["book_id"] == books["bumi"]
    assert order["lines"][0]["book"]["title"] is None
    assert sum(l["quantity"] for l in order["lines"]) == order["total_quantity"]
    assert sum(l["quantity"] * l["price"] for l in order["lines"]) == order["total_price"]
