"""
Accounts, sessions and the request principal.

Tokens are opaque random strings stored in the "session" collection with an
expiry. Route handlers get the caller through `Depends(require_auth)` or
`Depends(require_role(...))`; both resolve to a plain dict with
_id, role, email and full_name.
"""

import logging
import secrets
from datetime import timedelta
from typing import Optional

from bson import ObjectId
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import Settings
from database import create_document, ensure_utc, get_db, maybe_oid, serialize, touch, utc_now
from errors import ConflictError, ForbiddenError, InvalidCredentialsError, NotFoundError, UnauthorizedError, ValidationError
from schemas import CUSTOMER_ROLES, ListingStatus, Role, Session, User

logger = logging.getLogger(__name__)

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

bearer = HTTPBearer(auto_error=False)

PRINCIPAL_FIELDS = {"full_name": 1, "email": 1, "role": 1, "phone": 1, "is_active": 1}


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(password, hashed)
    except ValueError:
        return False


def public_user(user: dict) -> dict:
    out = serialize(user)
    out.pop("password_hash", None)
    return out


def create_token(db: Database, settings: Settings, user_id: ObjectId) -> str:
    token = secrets.token_urlsafe(32)
    session = Session(
        token=token,
        user_id=user_id,
        expires_at=utc_now() + timedelta(days=settings.token_ttl_days),
    )
    create_document(db, "session", session)
    return token


def signup(
    db: Database,
    settings: Settings,
    full_name: str,
    email: str,
    password: str,
    role: str = Role.BUYER.value,
    phone: Optional[str] = None,
) -> dict:
    if role not in CUSTOMER_ROLES:
        raise ValidationError("Role must be FARMER or BUYER")
    email = email.lower()
    if db["user"].find_one({"email": email}):
        raise ConflictError("Email already in use", code="EMAIL_IN_USE")

    doc = User(
        full_name=full_name.strip(),
        email=email,
        password_hash=hash_password(password),
        role=role,
        phone=phone,
    ).model_dump()
    try:
        create_document(db, "user", doc)
    except DuplicateKeyError:
        raise ConflictError("Email already in use", code="EMAIL_IN_USE")
    logger.info("New %s account %s", role, email)
    return {"user": public_user(doc), "token": create_token(db, settings, doc["_id"])}


def login(db: Database, settings: Settings, email: str, password: str) -> dict:
    user = db["user"].find_one({"email": email.lower()})
    if not user or not user.get("is_active", True):
        raise InvalidCredentialsError()
    if not verify_password(password, user.get("password_hash", "")):
        raise InvalidCredentialsError()
    return {"user": public_user(user), "token": create_token(db, settings, user["_id"])}


def logout(db: Database, token: str) -> None:
    db["session"].delete_one({"token": token})


def resolve_token(db: Database, token: str) -> dict:
    session = db["session"].find_one({"token": token})
    if not session:
        raise UnauthorizedError("Invalid token")
    if ensure_utc(session["expires_at"]) < utc_now():
        db["session"].delete_one({"_id": session["_id"]})
        raise UnauthorizedError("Session expired")
    user = db["user"].find_one({"_id": session["user_id"]}, PRINCIPAL_FIELDS)
    if not user or not user.get("is_active", True):
        raise UnauthorizedError("Invalid token")
    return user


def bearer_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> str:
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError("Missing token")
    return credentials.credentials


def require_auth(token: str = Depends(bearer_token), db: Database = Depends(get_db)) -> dict:
    return resolve_token(db, token)


def require_role(*roles: Role):
    allowed = {r.value if isinstance(r, Role) else r for r in roles}

    def dependency(user: dict = Depends(require_auth)) -> dict:
        if user["role"] not in allowed:
            raise ForbiddenError(f"Only {', '.join(sorted(allowed))} can access this endpoint")
        return user

    return dependency


def delete_account(db: Database, user: dict) -> None:
    """Deactivate the account; orders stay for the sales history."""
    user_id = user["_id"]
    db["cart"].delete_many({"user": user_id})
    db["session"].delete_many({"user_id": user_id})
    if user["role"] == Role.FARMER.value:
        now = utc_now()
        db["listing"].update_many(
            {"farmer": user_id, "status": {"$ne": ListingStatus.REMOVED.value}},
            {"$set": {"status": ListingStatus.REMOVED.value, "updated_at": now}},
        )
    touch(db, "user", user_id, {"is_active": False})
    logger.info("Account %s deleted", user_id)


# ---------- Admin ----------

def list_users(db: Database, role: Optional[str] = None) -> list:
    query = {"role": role} if role else {}
    return [public_user(u) for u in db["user"].find(query).sort("created_at", -1)]


def update_role(db: Database, user_id: str, role: Role) -> dict:
    _id = maybe_oid(user_id)
    user = db["user"].find_one({"_id": _id}) if _id else None
    if not user:
        raise NotFoundError("User not found")
    touch(db, "user", user["_id"], {"role": Role(role).value})
    return public_user(db["user"].find_one({"_id": user["_id"]}))
