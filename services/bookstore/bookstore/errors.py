"""
Bookstore Service - 注文エラーの種類

注文エンジンは失敗を例外で投げず、OrderError を値として返す。
HTTP 層が kind をステータスコードに変換する。

  InvalidInput       入力の誤り（修正すれば通る）
  Unauthenticated    購入者の ID がない
  BookNotFound       存在しない本を指定した
  OrderNotFound      注文がない、または本人の注文ではない（参照系のみ）
  InsufficientStock  在庫不足（数量を見直す必要がある）
  TransientFailure   一時的な障害（同じリクエストで再試行してよい）
"""

from enum import Enum

from pydantic import BaseModel


class OrderErrorKind(str, Enum):
    INVALID_INPUT = "InvalidInput"
    UNAUTHENTICATED = "Unauthenticated"
    BOOK_NOT_FOUND = "BookNotFound"
    ORDER_NOT_FOUND = "OrderNotFound"
    INSUFFICIENT_STOCK = "InsufficientStock"
    TRANSIENT_FAILURE = "TransientFailure"

    @property
    def retryable(self) -> bool:
        return self is OrderErrorKind.TRANSIENT_FAILURE


class OrderError(BaseModel):
    kind: OrderErrorKind
    message: str
    book_id: str | None = None

    @classmethod
    def invalid_input(cls, message: str) -> "OrderError":
        return cls(kind=OrderErrorKind.INVALID_INPUT, message=message)

    @classmethod
    def unauthenticated(cls) -> "OrderError":
        return cls(kind=OrderErrorKind.UNAUTHENTICATED, message="Unauthorized")

    @classmethod
    def book_not_found(cls, book_id: str) -> "OrderError":
        return cls(
            kind=OrderErrorKind.BOOK_NOT_FOUND,
            message=f"Book with id {book_id} not found",
            book_id=book_id,
        )

    @classmethod
    def order_not_found(cls) -> "OrderError":
        return cls(kind=OrderErrorKind.ORDER_NOT_FOUND, message="Order not found")

    @classmethod
    def insufficient_stock(
        cls, book_id: str, title: str, requested: int, available: int
    ) -> "OrderError":
        return cls(
            kind=OrderErrorKind.INSUFFICIENT_STOCK,
            message=(
                f'Insufficient stock for "{title}": '
                f"requested={requested}, available={available}"
            ),
            book_id=book_id,
        )

    @classmethod
    def transient_failure(cls, message: str) -> "OrderError":
        return cls(kind=OrderErrorKind.TRANSIENT_FAILURE, message=message)


class StockConflict(Exception):
    """条件付き在庫更新が 1 行も更新しなかった（他の書き込みと競合）。"""

    def __init__(self, book_id: str) -> None:
        super().__init__(f"stock of book {book_id} changed concurrently")
        self.book_id = book_id
