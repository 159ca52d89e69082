# app/repositories/user_repository.py
# Caller identity lookup by hashed bearer token

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import select

from app.db.base import get_session
from app.models.session_tables import auth_sessions, users


class UserRepository:
    """Read-only access to users and the tokens issued for them."""

    async def get_by_token_hash(self, token_hash: str) -> Optional[Dict[str, Any]]:
        """Return the user owning an unexpired token, or None."""
        stmt = (
            select(users.c.id, users.c.username, users.c.global_name, users.c.avatar)
            .select_from(auth_sessions.join(users, auth_sessions.c.user_id == users.c.id))
            .where(auth_sessions.c.id == token_hash)
            .where(auth_sessions.c.expires_at > datetime.now(timezone.utc))
        )
        async with get_session() as session:
            result = await session.execute(stmt)
            row = result.mappings().first()
            return dict(row) if row else None
