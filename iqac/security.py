import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import bcrypt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from pymongo.database import Database

from .database import get_db, oid
from .errors import AuthenticationError, AuthorizationError, InvalidTokenError, UserNotFoundError
from .settings import settings

logger = logging.getLogger("iqac.security")

# Bearer token security
security = HTTPBearer()


def verify_password(plain_password: str, hashed_password: str) -> bool:
    # Bcrypt has a 72 byte limit
    password_bytes = plain_password.encode("utf-8")[:72]
    try:
        return bcrypt.checkpw(password_bytes, hashed_password.encode("utf-8"))
    except ValueError:
        return False


def get_password_hash(password: str) -> str:
    """Hash password with configurable rounds (BCRYPT_ROUNDS)"""
    password_bytes = password.encode("utf-8")[:72]
    hashed = bcrypt.hashpw(password_bytes, bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS))
    return hashed.decode("utf-8")


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise InvalidTokenError("Token expired")
    except JWTError:
        raise InvalidTokenError()


def display_name(user: Dict[str, Any]) -> str:
    full = f"{user.get('firstName') or ''} {user.get('lastName') or ''}".strip()
    return full or user.get("username") or user.get("email") or ""


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    """User document without the password hash, with the derived name"""
    out = {k: v for k, v in user.items() if k != "password"}
    out["name"] = display_name(user)
    return out


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    payload = decode_token(credentials.credentials)

    if payload.get("type") != "access" or not payload.get("sub"):
        raise InvalidTokenError("Invalid token type")

    user = db["user"].find_one({"_id": oid(payload["sub"])})
    if not user:
        raise UserNotFoundError(payload["sub"])
    if user.get("isActive") is False:
        logger.warning(f"Rejected token for deactivated account {user.get('email')}")
        raise AuthenticationError("Account is deactivated")
    return public_user(user)


def require_admin(current_user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if current_user.get("role") != "admin":
        raise AuthorizationError("Admin access required")
    return current_user


def require_self_or_admin(current_user: Dict[str, Any], user_id: str) -> None:
    if current_user.get("role") != "admin" and str(current_user["_id"]) != str(user_id):
        raise AuthorizationError("You can only access your own records")
