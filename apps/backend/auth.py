"""Account JWT (bearer) helpers."""
from datetime import datetime, timedelta
from typing import Optional

from jose import JWTError, jwt
from fastapi.security import HTTPBearer

from apps.backend.config import get_settings

security = HTTPBearer(auto_error=False)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    s = get_settings()
    to_encode = data.copy()
    exp = expires_delta or timedelta(minutes=s.jwt_expire_minutes)
    to_encode.update({"exp": datetime.utcnow() + exp})
    return jwt.encode(to_encode, s.jwt_secret, algorithm=s.jwt_algorithm)


def create_user_token(user_id: int, expires_minutes: int | None = None) -> str:
    delta = timedelta(minutes=expires_minutes) if expires_minutes else None
    return create_access_token({"sub": str(user_id), "type": "user"}, delta)


def decode_token(token: str) -> Optional[dict]:
    s = get_settings()
    try:
        return jwt.decode(token, s.jwt_secret, algorithms=[s.jwt_algorithm])
    except JWTError:
        return None
