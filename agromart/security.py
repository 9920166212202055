from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends, Header

from agromart import config
from agromart.database import get_db, to_object_id
from agromart.errors import AppError

ACCESS = "access"
REFRESH = "refresh"

# Capability table: which role may perform which action.
ROLE_PERMISSIONS = {
    "customer": set(),
    "admin": {
        "admin:access",
        "orders:refund",
        "reviews:moderate",
        "tickets:manage",
        "uploads:delete",
    },
}


@dataclass
class TokenPayload:
    user_id: str
    email: str
    is_admin: bool = False

    @property
    def role(self) -> str:
        return "admin" if self.is_admin else "customer"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        return False


def _create_token(user_doc: dict, token_type: str, secret: str, lifetime: timedelta) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_doc.get("_id")),
        "email": user_doc["email"],
        "is_admin": user_doc.get("is_admin", False),
        "type": token_type,
        "iat": now,
        "exp": now + lifetime,
    }
    return jwt.encode(payload, secret, algorithm=config.JWT_ALGO)


def create_access_token(user_doc: dict) -> str:
    return _create_token(user_doc, ACCESS, config.JWT_SECRET, timedelta(days=config.JWT_EXPIRES_DAYS))


def create_refresh_token(user_doc: dict) -> str:
    return _create_token(
        user_doc, REFRESH, config.JWT_REFRESH_SECRET, timedelta(days=config.JWT_REFRESH_EXPIRES_DAYS)
    )


def create_token_pair(user_doc: dict) -> dict:
    return {
        "access_token": create_access_token(user_doc),
        "refresh_token": create_refresh_token(user_doc),
    }


def _decode(token: str, secret: str, token_type: str, label: str) -> TokenPayload:
    try:
        payload = jwt.decode(token, secret, algorithms=[config.JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise AppError(f"{label} has expired", 401, "TOKEN_EXPIRED")
    except jwt.InvalidTokenError:
        raise AppError(f"Invalid {label.lower()}", 401, "INVALID_TOKEN")
    if payload.get("type") != token_type or not payload.get("sub"):
        raise AppError(f"Invalid {label.lower()}", 401, "INVALID_TOKEN")
    return TokenPayload(
        user_id=payload["sub"],
        email=payload.get("email", ""),
        is_admin=bool(payload.get("is_admin", False)),
    )


def decode_access_token(token: str) -> TokenPayload:
    return _decode(token, config.JWT_SECRET, ACCESS, "Authentication token")


def decode_refresh_token(token: str) -> TokenPayload:
    return _decode(token, config.JWT_REFRESH_SECRET, REFRESH, "Refresh token")


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def authenticate(authorization: Optional[str] = Header(None), db=Depends(get_db)) -> TokenPayload:
    """Resolve the bearer token; accounts disabled after the token was issued are refused."""
    token = _bearer_token(authorization)
    if not token:
        raise AppError("No authentication token provided", 401, "NO_TOKEN")
    user = decode_access_token(token)
    account = db["users"].find_one({"_id": to_object_id(user.user_id, "user ID")}, {"is_active": 1})
    if not account:
        raise AppError("User no longer exists", 401, "INVALID_TOKEN")
    if not account.get("is_active", True):
        raise AppError("Your account has been disabled", 401, "ACCOUNT_DISABLED")
    return user


def optional_user(authorization: Optional[str] = Header(None)) -> Optional[TokenPayload]:
    token = _bearer_token(authorization)
    if not token:
        return None
    try:
        return decode_access_token(token)
    except AppError:
        return None


def require_admin(user: TokenPayload = Depends(authenticate)) -> TokenPayload:
    if not can(user, "admin:access"):
        raise AppError("Admin access required", 403, "ADMIN_ONLY")
    return user


def can(user: TokenPayload, action: str) -> bool:
    return action in ROLE_PERMISSIONS.get(user.role, set())


def require_permission(action: str):
    def dependency(user: TokenPayload = Depends(authenticate)) -> TokenPayload:
        if not can(user, action):
            raise AppError(
                "You do not have permission to perform this action",
                403,
                "INSUFFICIENT_PERMISSIONS",
                {"action": action},
            )
        return user

    return dependency


def require_ownership(owner_id: Optional[str], user: TokenPayload) -> None:
    if owner_id != user.user_id:
        raise AppError("You can only access your own resources", 403, "NOT_OWNER")


def require_self_or_admin(owner_id: Optional[str], user: TokenPayload) -> None:
    if not user.is_admin:
        require_ownership(owner_id, user)
