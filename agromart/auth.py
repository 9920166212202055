import logging

from fastapi import APIRouter, Depends

from agromart.database import create_document, get_db, serialize_doc, to_object_id, utcnow
from agromart.errors import AppError, not_found
from agromart.rate_limit import login_limiter, refresh_limiter, register_limiter
from agromart.responses import ok
from agromart.schemas import (
    ChangePasswordRequest,
    LoginRequest,
    ProfileUpdate,
    RefreshRequest,
    RegisterRequest,
    User,
)
from agromart.security import (
    TokenPayload,
    authenticate,
    create_token_pair,
    decode_refresh_token,
    hash_password,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def public_user(user_doc: dict) -> dict:
    doc = serialize_doc(user_doc)
    doc.pop("password_hash", None)
    return doc


def get_user(db, user_id: str) -> dict:
    user = db["users"].find_one({"_id": to_object_id(user_id, "user ID")})
    if not user:
        raise AppError("User not found", 404, "USER_NOT_FOUND", {"user_id": user_id})
    return user


def register_user(db, payload: RegisterRequest) -> dict:
    if db["users"].find_one({"email": payload.email}):
        raise AppError("An account with this email already exists", 409, "EMAIL_EXISTS", {"email": payload.email})
    user = User(
        full_name=payload.full_name,
        email=payload.email,
        phone=payload.phone,
        password_hash=hash_password(payload.password),
        is_admin=False,
    )
    user_id = create_document(db, "users", user)
    create_document(db, "carts", {"user_id": user_id, "items": [], "coupon": None})
    user_doc = get_user(db, user_id)
    logger.info("Registered user %s", user_id)
    return {"user": public_user(user_doc), **create_token_pair(user_doc)}


def login_user(db, email: str, password: str) -> dict:
    user = db["users"].find_one({"email": email.lower()})
    if not user or not verify_password(password, user.get("password_hash", "")):
        raise AppError("Invalid email or password", 401, "INVALID_CREDENTIALS")
    if not user.get("is_active", True):
        raise AppError("Your account has been disabled", 401, "ACCOUNT_DISABLED")
    db["users"].update_one({"_id": user["_id"]}, {"$set": {"last_login_at": utcnow()}})
    return {"user": public_user(user), **create_token_pair(user)}


def refresh_tokens(db, refresh_token: str) -> dict:
    payload = decode_refresh_token(refresh_token)
    user = db["users"].find_one({"_id": to_object_id(payload.user_id, "user ID")})
    if not user:
        raise not_found("User", payload.user_id)
    if not user.get("is_active", True):
        raise AppError("Your account has been disabled", 401, "ACCOUNT_DISABLED")
    return create_token_pair(user)


def update_profile(db, user_id: str, payload: ProfileUpdate) -> dict:
    updates = payload.model_dump(exclude_none=True)
    user = get_user(db, user_id)
    if updates:
        updates["updated_at"] = utcnow()
        db["users"].update_one({"_id": user["_id"]}, {"$set": updates})
        user = get_user(db, user_id)
    return public_user(user)


def change_password(db, user_id: str, payload: ChangePasswordRequest) -> None:
    user = get_user(db, user_id)
    if not verify_password(payload.current_password, user.get("password_hash", "")):
        raise AppError("Current password is incorrect", 400, "INVALID_CREDENTIALS")
    db["users"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(payload.new_password), "updated_at": utcnow()}},
    )


# Auth Endpoints
@router.post("/register", status_code=201, dependencies=[Depends(register_limiter)])
def register(payload: RegisterRequest, db=Depends(get_db)):
    return ok(register_user(db, payload), "Registration successful")


@router.post("/login", dependencies=[Depends(login_limiter)])
def login(payload: LoginRequest, db=Depends(get_db)):
    return ok(login_user(db, payload.email, payload.password), "Login successful")


@router.post("/refresh", dependencies=[Depends(refresh_limiter)])
def refresh(payload: RefreshRequest, db=Depends(get_db)):
    return ok(refresh_tokens(db, payload.refresh_token))


@router.get("/profile")
def profile(user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(public_user(get_user(db, user.user_id)))


@router.put("/profile")
def edit_profile(payload: ProfileUpdate, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(update_profile(db, user.user_id, payload), "Profile updated")


@router.post("/change-password")
def edit_password(payload: ChangePasswordRequest, user: TokenPayload = Depends(authenticate),
                  db=Depends(get_db)):
    change_password(db, user.user_id, payload)
    return ok(message="Password changed successfully")
