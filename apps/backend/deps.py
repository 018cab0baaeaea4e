"""FastAPI dependencies."""
from typing import Generator

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from apps.backend.auth import decode_token, security
from apps.backend.clients.razorpay_client import RazorpayClient, get_razorpay_client
from apps.backend.database import get_session_factory
from apps.backend.models.user import User
from apps.backend.utils.errors import AuthorizationError


def get_db() -> Generator[Session, None, None]:
    factory = get_session_factory()
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


def get_payment_client() -> RazorpayClient:
    return get_razorpay_client()


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    if not credentials:
        raise AuthorizationError("missing bearer token")
    payload = decode_token(credentials.credentials)
    if not payload or payload.get("type") != "user" or "sub" not in payload:
        raise AuthorizationError("invalid token")
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        raise AuthorizationError("invalid token subject")
    user = db.get(User, user_id)
    if not user:
        raise AuthorizationError("unknown user")
    return user
