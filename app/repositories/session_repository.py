# app/repositories/session_repository.py
# Repository for shared sessions and their versioned state blob

from __future__ import annotations

import secrets
import string
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from app.constants import SESSION_CODE_LENGTH
from app.db.base import get_session
from app.models.session_tables import session_presence, shared_sessions


def _generate_short_id(length: int = SESSION_CODE_LENGTH) -> str:
    """Generate a URL-safe short session code."""
    alphabet = string.ascii_letters + string.digits
    return ''.join(secrets.choice(alphabet) for _ in range(length))


_SESSION_COLUMNS = (
    shared_sessions.c.id,
    shared_sessions.c.name,
    shared_sessions.c.creator_id,
    shared_sessions.c.created_at,
    shared_sessions.c.is_active,
)


class SessionRepository:
    """Persistence for sessions, their state blob and the presence snapshot read."""

    async def create(self, name: str, creator_id: str, attempts: int = 3) -> Dict[str, Any]:
        """Insert a session under a fresh short code and return its row."""
        now = datetime.now(timezone.utc)
        attempt = 0
        while True:
            attempt += 1
            session_id = _generate_short_id()
            try:
                async with get_session() as session:
                    await session.execute(
                        shared_sessions.insert().values(
                            id=session_id,
                            name=name,
                            creator_id=creator_id,
                            created_at=now,
                            is_active=True,
                            state={},
                            state_version=0,
                        )
                    )
                    await session.commit()
            except IntegrityError:
                # code collision, or an unknown creator once attempts run out
                if attempt >= attempts:
                    raise
                continue
            return {
                "id": session_id,
                "name": name,
                "creator_id": creator_id,
                "created_at": now,
                "is_active": True,
            }

    async def list_for_creator(self, creator_id: str) -> List[Dict[str, Any]]:
        stmt = (
            select(*_SESSION_COLUMNS)
            .where(shared_sessions.c.creator_id == creator_id)
            .order_by(shared_sessions.c.created_at.desc())
        )
        async with get_session() as session:
            result = await session.execute(stmt)
            return [dict(r) for r in result.mappings().all()]

    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        async with get_session() as session:
            result = await session.execute(
                select(*_SESSION_COLUMNS).where(shared_sessions.c.id == session_id)
            )
            row = result.mappings().first()
            return dict(row) if row else None

    async def delete(self, session_id: str) -> bool:
        """Delete a session; presence rows cascade."""
        async with get_session() as session:
            result = await session.execute(
                delete(shared_sessions).where(shared_sessions.c.id == session_id)
            )
            await session.commit()
            return (result.rowcount or 0) > 0

    async def get_state(self, session_id: str) -> Optional[Tuple[Dict[str, Any], int]]:
        """Return (state, version) or None when the session does not exist."""
        async with get_session() as session:
            result = await session.execute(
                select(shared_sessions.c.state, shared_sessions.c.state_version)
                .where(shared_sessions.c.id == session_id)
            )
            row = result.fetchone()
            if row is None:
                return None
            return dict(row[0] or {}), int(row[1] or 0)

    async def compare_and_set_state(
        self,
        session_id: str,
        expected_version: int,
        state: Dict[str, Any],
    ) -> Optional[int]:
        """
        Store ``state`` with version ``expected_version + 1`` only if the row
        is still at ``expected_version``. Returns the new version, or None if
        another writer got there first (or the session is gone).
        """
        stmt = (
            update(shared_sessions)
            .where(shared_sessions.c.id == session_id)
            .where(shared_sessions.c.state_version == expected_version)
            .values(state=state, state_version=expected_version + 1)
            .returning(shared_sessions.c.state_version)
        )
        async with get_session() as session:
            result = await session.execute(stmt)
            row = result.fetchone()
            await session.commit()
            return int(row[0]) if row else None

    async def read_snapshot(self, session_id: str, cutoff: int) -> Tuple[Optional[Dict[str, Any]], int]:
        """
        Read state, version and live members in one transaction.

        Presence rows with ``last_seen < cutoff`` are deleted before the
        member select, so stale rows are never returned. Returns
        (snapshot or None, number of evicted rows).
        """
        async with get_session() as session:
            result = await session.execute(
                select(
                    shared_sessions.c.id,
                    shared_sessions.c.name,
                    shared_sessions.c.state,
                    shared_sessions.c.state_version,
                ).where(shared_sessions.c.id == session_id)
            )
            row = result.mappings().first()
            if row is None:
                return None, 0

            evicted = await session.execute(
                delete(session_presence)
                .where(session_presence.c.session_id == session_id)
                .where(session_presence.c.last_seen < cutoff)
            )
            members = await session.execute(
                select(
                    session_presence.c.user_id,
                    session_presence.c.username,
                    session_presence.c.avatar,
                )
                .where(session_presence.c.session_id == session_id)
                .order_by(session_presence.c.username.asc())
            )
            member_rows = [dict(m) for m in members.mappings().all()]
            await session.commit()

        snapshot = {
            "id": row["id"],
            "name": row["name"],
            "state": dict(row["state"] or {}),
            "state_version": int(row["state_version"] or 0),
            "members": member_rows,
        }
        return snapshot, evicted.rowcount or 0
