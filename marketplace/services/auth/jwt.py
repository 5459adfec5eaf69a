"""
Request authentication for partner and admin endpoints.

Users: `Authorization: Bearer <jwt>` signed with jwt_secret_key; `sub` is
the user id. Partner endpoints additionally require the partner role.
Admins: `X-Admin-Key` compared in constant time with admin_api_key.
"""
import hmac
import logging
from datetime import datetime, timedelta, timezone

from fastapi import Depends, Header, HTTPException, status
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.db.session import get_db
from marketplace.models.user import User

logger = logging.getLogger(__name__)


def create_access_token(user_id: str, expires_minutes: int = 60) -> str:
    if not settings.jwt_secret_key:
        raise RuntimeError("jwt_secret_key is not configured")
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    return jwt.encode(
        {"sub": user_id, "exp": expire},
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    authorization: str | None = Header(None),
    db: Session = Depends(get_db),
) -> User:
    if not authorization or not settings.jwt_secret_key:
        raise _unauthorized("Invalid or missing token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise _unauthorized("Invalid or missing token")
    try:
        claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise _unauthorized("Invalid or missing token")

    user = db.query(User).filter(User.id == claims.get("sub")).one_or_none()
    if not user or not user.is_active:
        raise _unauthorized("Invalid or missing token")
    return user


def get_current_partner(user: User = Depends(get_current_user)) -> User:
    if not user.is_partner:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Partner access required")
    return user


def require_admin(x_admin_key: str | None = Header(None)) -> str:
    expected = settings.admin_api_key
    if not expected or not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        logger.warning("admin_auth_rejected")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin key required")
    return "admin"
