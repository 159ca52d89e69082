# app/repositories/presence_repository.py
# Repository for presence heartbeats (insert-or-refresh, explicit leave)

from __future__ import annotations

from typing import Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.dialects.postgresql import insert as pg_insert

from app.db.base import get_session
from app.middleware.error_handler import NotFoundError
from app.models.session_tables import session_presence


class PresenceRepository:
    """Writer side of presence; stale rows are evicted by SessionRepository.read_snapshot."""

    async def upsert(
        self,
        session_id: str,
        user_id: str,
        username: str,
        avatar: Optional[str],
        last_seen: int,
    ) -> None:
        stmt = pg_insert(session_presence).values(
            session_id=session_id,
            user_id=user_id,
            username=username,
            avatar=avatar,
            last_seen=last_seen,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[session_presence.c.session_id, session_presence.c.user_id],
            set_={
                "username": stmt.excluded.username,
                "avatar": stmt.excluded.avatar,
                "last_seen": stmt.excluded.last_seen,
            },
        )
        async with get_session() as session:
            try:
                await session.execute(stmt)
                await session.commit()
            except IntegrityError as e:
                # Session deleted between the existence check and this write
                await session.rollback()
                raise NotFoundError("Session not found") from e

    async def remove(self, session_id: str, user_id: str) -> bool:
        async with get_session() as session:
            result = await session.execute(
                delete(session_presence)
                .where(session_presence.c.session_id == session_id)
                .where(session_presence.c.user_id == user_id)
            )
            await session.commit()
            return (result.rowcount or 0) > 0
