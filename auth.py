"""Access tokens for the REST API and the chat websocket."""
import os
import time
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from database import get_db
from models import User

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "60"))


class InvalidToken(Exception):
    pass


def encode_access_token(user_id: int, expire_minutes: Optional[int] = None) -> str:
    now = int(time.time())
    minutes = JWT_EXPIRE_MINUTES if expire_minutes is None else expire_minutes
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + minutes * 60,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> int:
    """Return the user id carried by ``token``."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return int(payload["sub"])
    except (jwt.InvalidTokenError, KeyError, ValueError) as e:
        raise InvalidToken(f"Invalid or expired token: {e}") from e


def get_current_user(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)) -> User:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Token value not provided")
    try:
        user_id = decode_access_token(authorization[7:].strip())
    except InvalidToken as e:
        raise HTTPException(status_code=401, detail=str(e))

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found for token")
    return user
