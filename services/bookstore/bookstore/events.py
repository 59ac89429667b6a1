"""
Bookstore Service - イベント定義

注文がコミットされたあとに order_events チャネルへ発行するイベント。
イベントは過去形で命名し、不変として扱う。
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class OrderPlacedLine(BaseModel):
    book_id: str
    quantity: int
    price: int


class OrderPlaced(BaseModel):
    """注文が確定し、在庫が減算された"""
    order_id: UUID
    buyer_id: str
    total_quantity: int
    total_price: int
    lines: list[OrderPlacedLine]
    timestamp: datetime
