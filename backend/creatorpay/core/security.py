from datetime import datetime, timezone

from jose import jwt

from creatorpay.core.config import settings

ALGO = "HS256"

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def decode_token(token: str) -> dict:
    # Tokens are issued by the identity service; this side only verifies them.
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGO])
