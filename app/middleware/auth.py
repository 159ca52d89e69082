# app/middleware/auth.py
# Caller identity resolution for session endpoints.
# Tokens are issued by the external login flow; this module only verifies them.

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request

from app.config import settings
from app.middleware.error_handler import UnauthorizedError
from app.repositories.user_repository import UserRepository


@dataclass(frozen=True)
class CurrentUser:
    id: str
    username: str
    avatar: Optional[str] = None


def hash_token(token: str) -> str:
    """Tokens are stored as lowercase sha256 hex digests."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def extract_token(request: Request) -> Optional[str]:
    """Bearer header first, then the session cookie."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, credentials = auth_header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return request.cookies.get(settings.AUTH_COOKIE_NAME) or None


def get_user_repository() -> UserRepository:
    return UserRepository()


async def get_optional_user(
    request: Request,
    users: UserRepository = Depends(get_user_repository),
) -> Optional[CurrentUser]:
    token = extract_token(request)
    if not token:
        return None
    row = await users.get_by_token_hash(hash_token(token))
    if row is None:
        return None
    return CurrentUser(
        id=str(row["id"]),
        username=row["username"],
        avatar=row.get("avatar"),
    )


async def get_current_user(user: Optional[CurrentUser] = Depends(get_optional_user)) -> CurrentUser:
    if user is None:
        raise UnauthorizedError()
    return user
