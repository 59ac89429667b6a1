"""
Bookstore Service - 注文集約 (Order Aggregate)

1 回のチェックアウトで作られる注文。作成後は変更しない。

  - 明細 (OrderLine) は送信された順に並ぶ
  - 明細の価格は購入時点の本の価格を凍結したもの
  - total_quantity / total_price は常に明細の合計から求める
"""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from .events import OrderPlaced, OrderPlacedLine


class OrderLine:
    def __init__(self, book_id: str, quantity: int, price: int) -> None:
        self.book_id = book_id
        self.quantity = quantity
        self.price = price

    @property
    def subtotal(self) -> int:
        return self.price * self.quantity

    def to_dict(self) -> dict:
        return {
            "book_id": self.book_id,
            "quantity": self.quantity,
            "price": self.price,
        }


class OrderAggregate:
    """
    注文集約

    add_line() で明細を積み、コミット後は読み取り専用として扱う。
    """

    def __init__(self) -> None:
        self.id: UUID | None = None
        self.buyer_id: str = ""
        self.created_at: datetime | None = None
        self._lines: list[OrderLine] = []

    @classmethod
    def new(cls, buyer_id: str) -> "OrderAggregate":
        agg = cls()
        agg.id = uuid4()
        agg.buyer_id = buyer_id
        agg.created_at = datetime.now(timezone.utc)
        return agg

    def add_line(self, book_id: str, quantity: int, price: int) -> OrderLine:
        line = OrderLine(book_id, quantity, price)
        self._lines.append(line)
        return line

    @property
    def lines(self) -> tuple[OrderLine, ...]:
        return tuple(self._lines)

    @property
    def total_quantity(self) -> int:
        return sum(line.quantity for line in self._lines)

    @property
    def total_price(self) -> int:
        return sum(line.subtotal for line in self._lines)

    def to_dict(self) -> dict:
        return {
            "order_id": str(self.id),
            "buyer_id": self.buyer_id,
            "total_quantity": self.total_quantity,
            "total_price": self.total_price,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "lines": [line.to_dict() for line in self._lines],
        }

    def to_event(self) -> OrderPlaced:
        return OrderPlaced(
            order_id=self.id,
            buyer_id=self.buyer_id,
            total_quantity=self.total_quantity,
            total_price=self.total_price,
            lines=[
                OrderPlacedLine(
                    book_id=line.book_id, quantity=line.quantity, price=line.price
                )
                for line in self._lines
            ],
            timestamp=self.created_at,
        )
