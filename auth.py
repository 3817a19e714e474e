"""Session auth over the user/session collections."""
import hashlib
import hmac
import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Header, HTTPException

import database
from database import create_document, serialize_doc, to_object_id

logger = logging.getLogger(__name__)

PBKDF2_ROUNDS = 100_000


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ROUNDS)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    salt, _, _ = stored.partition("$")
    return hmac.compare_digest(hash_password(password, salt), stored)


def session_ttl() -> timedelta:
    return timedelta(hours=float(os.getenv("SESSION_TTL_HOURS", "24")))


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    user = serialize_doc(user)
    return {"id": user["id"], "name": user.get("name"), "email": user.get("email"), "role": user.get("role", "user")}


def open_session(user_id: str) -> str:
    token = secrets.token_urlsafe(32)
    create_document("session", {
        "token": token,
        "user_id": user_id,
        "expires_at": database.now() + session_ttl(),
    })
    logger.info("Session opened for user %s", user_id)
    return token


def close_session(db, token: str) -> None:
    db["session"].delete_one({"token": token})


def _aware(dt: datetime) -> datetime:
    # mongo hands datetimes back naive (UTC)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def user_for_token(db, token: str) -> Optional[Dict[str, Any]]:
    session = db["session"].find_one({"token": token})
    if not session:
        return None
    expires_at = session.get("expires_at")
    if expires_at and _aware(expires_at) <= database.now():
        db["session"].delete_one({"_id": session["_id"]})
        return None
    return db["user"].find_one({"_id": to_object_id(session["user_id"])})


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def get_optional_user(authorization: Optional[str] = Header(default=None)) -> Optional[Dict[str, Any]]:
    """Resolve the session's user, or None when there is no valid session."""
    token = bearer_token(authorization)
    if not token or database.db is None:
        return None
    user = user_for_token(database.db, token)
    return serialize_doc(user) if user else None


def get_current_user(authorization: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    user = get_optional_user(authorization)
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def require_admin(x_admin_key: Optional[str] = Header(default=None)):
    admin_key = os.getenv("ADMIN_API_KEY")
    if not admin_key:
        # If not set, allow for development convenience
        return True
    if x_admin_key is None or not hmac.compare_digest(x_admin_key, admin_key):
        raise HTTPException(status_code=401, detail="Invalid admin key")
    return True
