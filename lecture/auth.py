from __future__ import annotations

import datetime as dt
import secrets
import sqlite3
from typing import Optional

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from fastapi import Depends, Request

from .db import (
    create_session,
    delete_expired_sessions,
    delete_session,
    get_db,
    get_session,
    get_user,
    touch_session,
)
from .env import token_ttl_hours
from .errors import Forbidden, Unauthorized
from .models import User

BEARER_PREFIX = "bearer "
PUBLISHING_ROLES = ("ADMIN", "AUTHOR", "TRANSLATOR")


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def hash_password(password: str) -> str:
    return PasswordHasher().hash(password)


def verify_password(stored: Optional[str], password: str) -> bool:
    if not stored:
        return False
    hasher = PasswordHasher()
    try:
        return hasher.verify(stored, password)
    except (VerifyMismatchError, InvalidHash, VerificationError):
        return False


def create_session_token() -> str:
    return secrets.token_urlsafe(32)


def sign_in(conn: sqlite3.Connection, user: User) -> str:
    token = create_session_token()
    now = _now()
    delete_expired_sessions(conn, now.isoformat())
    expires = now + dt.timedelta(hours=token_ttl_hours())
    create_session(conn, token, user.id, now.isoformat(), expires.isoformat())
    return token


def sign_out(conn: sqlite3.Connection, token: Optional[str]) -> None:
    if not token:
        return
    delete_session(conn, token)


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    if not header.lower().startswith(BEARER_PREFIX):
        return None
    token = header[len(BEARER_PREFIX):].strip()
    return token or None


def authenticate_token(conn: sqlite3.Connection, token: Optional[str]) -> User:
    if not token:
        raise Unauthorized("access token required")
    session = get_session(conn, token)
    if not session:
        raise Unauthorized("invalid token")
    now = _now()
    if dt.datetime.fromisoformat(session["expires_at"]) <= now:
        delete_session(conn, token)
        raise Unauthorized("token expired")
    user = get_user(conn, session["user_id"])
    if user is None:
        raise Unauthorized("invalid token")
    touch_session(conn, token, now.isoformat())
    return user


def current_user(request: Request, conn: sqlite3.Connection = Depends(get_db)) -> User:
    return authenticate_token(conn, bearer_token(request))


def authorize(user: User, *roles: str) -> None:
    if user.status not in roles:
        raise Forbidden("insufficient permissions")


def is_admin(user: User) -> bool:
    return user.status == "ADMIN"
