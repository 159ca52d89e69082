# app/services/session_service.py

from __future__ import annotations

import math
import time
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple

from app import config
from app.middleware.auth import CurrentUser
from app.middleware.error_handler import ConflictError, NotFoundError, ValidationError
from app.observability.metrics import (
    PRESENCE_EVICTIONS,
    PRESENCE_HEARTBEATS,
    STATE_MERGE_CONFLICTS,
    STATE_MERGE_RETRIES,
    STATE_MERGES,
)
from app.repositories.presence_repository import PresenceRepository
from app.repositories.session_repository import SessionRepository
from app.sync.state import StateValidationError, merge_state, validate_partial
from app.utils.logger import log_session_event, log_warning
from app.utils.telemetry import get_tracer

tracer = get_tracer(__name__)


class SessionService:
    """Business logic for shared sessions: snapshots, state merges and presence."""

    def __init__(
        self,
        sessions: SessionRepository,
        presence: PresenceRepository,
        *,
        presence_timeout: Optional[int] = None,
        max_retries: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._sessions = sessions
        self._presence = presence
        self._presence_timeout = presence_timeout if presence_timeout is not None else config.PRESENCE_TIMEOUT_SECONDS
        self._max_retries = max_retries if max_retries is not None else config.STATE_MERGE_MAX_RETRIES
        self._clock = clock

    # --- sessions ---

    async def create_session(self, user: CurrentUser, name: Optional[str]) -> Dict[str, Any]:
        name = (name or "").strip() or f"Session {date.today().isoformat()}"
        row = await self._sessions.create(name=name, creator_id=user.id)
        log_session_event(row["id"], "created", creator=user.id)
        return row

    async def list_sessions(self, user_id: str) -> List[Dict[str, Any]]:
        return await self._sessions.list_for_creator(user_id)

    async def delete_session(self, user: CurrentUser, session_id: str) -> None:
        existing = await self._sessions.get(session_id)
        # Someone else's session is reported exactly like a missing one
        if existing is None or existing["creator_id"] != user.id:
            raise NotFoundError("Not found or not authorized")
        await self._sessions.delete(session_id)
        log_session_event(session_id, "deleted", by=user.id)

    # --- state ---

    async def get_snapshot(self, session_id: str) -> Dict[str, Any]:
        """State, version and live members; stale presence is evicted first."""
        cutoff = self.presence_cutoff()
        snapshot, evicted = await self._sessions.read_snapshot(session_id, cutoff)
        if snapshot is None:
            raise NotFoundError("Session not found")
        if evicted:
            PRESENCE_EVICTIONS.inc(evicted)
            log_session_event(session_id, "evicted", rows=evicted)
        return snapshot

    async def merge_state(self, session_id: str, partial: Any) -> Tuple[int, Dict[str, Any]]:
        """
        Shallow-merge ``partial`` onto the stored blob and bump the version.

        The write only lands if the version is unchanged since the read; a
        lost race re-reads and re-merges, so concurrent writers touching
        different keys both survive. Same-key writers stay last-writer-wins.
        """
        try:
            changes = validate_partial(partial)
        except StateValidationError as e:
            raise ValidationError(str(e), details={"field": e.key})

        with tracer.start_as_current_span("session.merge_state") as span:
            span.set_attribute("session.id", session_id)
            span.set_attribute("session.keys", len(changes))
            for attempt in range(1, self._max_retries + 1):
                current = await self._sessions.get_state(session_id)
                if current is None:
                    raise NotFoundError("Session not found")
                state, version = current
                merged = merge_state(state, changes)
                new_version = await self._sessions.compare_and_set_state(session_id, version, merged)
                if new_version is not None:
                    span.set_attribute("session.attempts", attempt)
                    span.set_attribute("session.state_version", new_version)
                    STATE_MERGES.inc()
                    return new_version, merged
                STATE_MERGE_RETRIES.inc()
            span.set_attribute("session.attempts", self._max_retries)

        STATE_MERGE_CONFLICTS.inc()
        log_warning(
            f"SessionService: merge on {session_id} lost the version check {self._max_retries} times"
        )
        raise ConflictError(details={"attempts": self._max_retries})

    # --- presence ---

    async def heartbeat(self, session_id: str, user: CurrentUser) -> None:
        if await self._sessions.get(session_id) is None:
            raise NotFoundError("Session not found")
        await self._presence.upsert(
            session_id=session_id,
            user_id=user.id,
            username=user.username,
            avatar=user.avatar,
            last_seen=int(self._clock()),
        )
        PRESENCE_HEARTBEATS.inc()

    async def leave(self, session_id: str, user: CurrentUser) -> None:
        removed = await self._presence.remove(session_id, user.id)
        if removed:
            log_session_event(session_id, "left", user=user.id)

    def presence_cutoff(self) -> int:
        # last_seen is whole seconds; anything below now - timeout is stale
        return math.ceil(self._clock() - self._presence_timeout)
