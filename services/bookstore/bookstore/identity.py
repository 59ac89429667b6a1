"""
Bookstore Service - 購入者の識別 (Identity Provider の境界)

トークンの検証は前段のゲートウェイが行い、認証済みのユーザー ID を
X-User-Id ヘッダで転送してくる。このサービスはその値を信頼し、
中身を解釈しない文字列として扱う。
"""

from fastapi import Header, HTTPException

from .errors import OrderError


async def get_buyer_id(x_user_id: str | None = Header(default=None)) -> str:
    """認証済みの購入者 ID。ヘッダがなければ 401。"""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=401,
            detail=OrderError.unauthenticated().model_dump(mode="json"),
        )
    return x_user_id.strip()
