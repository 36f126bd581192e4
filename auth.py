"""
Session auth for the Book Club API.

A session is a row in the "session" collection keyed by an opaque token. Clients
send it back as `Authorization: Bearer <token>`. Anonymous sessions carry a fresh
user id with no user document behind it.
"""

import hashlib
import hmac
import logging
import secrets
from typing import Optional

from bson import ObjectId
from fastapi import Header, HTTPException
from pydantic import BaseModel

from database import create_document, delete_documents, get_documents

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100_000


class AuthInfo(BaseModel):
    user_id: Optional[str] = None
    anonymous: bool = False
    token: Optional[str] = None

    @property
    def signed_in(self) -> bool:
        return self.user_id is not None


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), bytes.fromhex(salt), PBKDF2_ITERATIONS)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash or "$" not in password_hash:
        return False
    salt, _ = password_hash.split("$", 1)
    return hmac.compare_digest(hash_password(password, salt), password_hash)


def open_session(user_id: str, anonymous: bool = False) -> str:
    token = secrets.token_urlsafe(32)
    create_document("session", {"token": token, "user_id": user_id, "anonymous": anonymous})
    logger.info("Opened %ssession for %s", "anonymous " if anonymous else "", user_id)
    return token


def new_anonymous_id() -> str:
    return str(ObjectId())


def close_session(token: str) -> bool:
    return delete_documents("session", {"token": token}) > 0


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def resolve_session(token: Optional[str]) -> AuthInfo:
    if not token:
        return AuthInfo()
    sessions = get_documents("session", {"token": token}, 1)
    if not sessions:
        return AuthInfo()
    s = sessions[0]
    return AuthInfo(user_id=s.get("user_id"), anonymous=bool(s.get("anonymous")), token=token)


def get_auth(action: Optional[str] = None):
    """
    Dependency factory resolving the caller's session.

    With `action` the caller must be signed in; the 401 names what they tried to do,
    e.g. get_auth("create a post") -> "You must be signed in to create a post."
    """
    def dep(authorization: Optional[str] = Header(None)) -> AuthInfo:
        info = resolve_session(_bearer_token(authorization))
        if action and not info.signed_in:
            raise HTTPException(status_code=401, detail=f"You must be signed in to {action}.")
        return info
    return dep
