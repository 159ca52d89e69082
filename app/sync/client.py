# app/sync/client.py
"""
Client-side session synchronization engine.

One SessionSyncClient instance represents one participant (a tab, a bot,
a test double). It keeps a local mirror of the session's shared state and
member list and reconciles it with the server:

- local edits apply immediately, lock the edited fields for a short window
  and are batched into a single debounced write;
- a poll task fetches the authoritative snapshot every ``poll_interval``;
- a heartbeat task keeps the participant's presence row fresh;
- remote state (poll or broadcast bus) is applied only when its version is
  newer than the local one, skipping fields that are still locked;
- fields left out of step by a dropped write or a lock are overwritten by
  the next full snapshot once their lock has expired.

Network failures never propagate out of the background tasks: the next
tick retries, and the lock window plus the next poll repair any divergence.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set

import httpx

from app.config import settings
from app.sync.api_client import SessionApiClient, SessionApiError
from app.sync.broadcast import Broadcaster, NullBroadcaster
from app.sync.lock_table import LocalLockTable
from app.sync.members import MemberSnapshot, MembershipChange, SessionMember, diff_members
from app.sync.state import SharedState, merge_state, validate_partial

logger = logging.getLogger(__name__)

# Errors a background tick absorbs and retries on the next tick
TRANSIENT_ERRORS = (httpx.HTTPError, SessionApiError, ValueError, KeyError)

_MISSING = object()


class SyncEventKind(str, Enum):
    JOINED = "joined"
    LEFT = "left"
    MEMBER_JOINED = "member_joined"
    MEMBER_LEFT = "member_left"
    STATE_CHANGED = "state_changed"


@dataclass(frozen=True)
class SyncEvent:
    kind: SyncEventKind
    session_id: str
    message: str = ""
    user_id: Optional[str] = None


SyncListener = Callable[[SyncEvent], None]


class SessionSyncClient:
    """Replicates one session's shared state for a single participant."""

    def __init__(
        self,
        api: SessionApiClient,
        broadcaster: Optional[Broadcaster] = None,
        *,
        poll_interval: Optional[float] = None,
        heartbeat_interval: Optional[float] = None,
        lock_window: Optional[float] = None,
        send_debounce: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._api = api
        self._broadcaster = broadcaster or NullBroadcaster()
        self._poll_interval = poll_interval if poll_interval is not None else settings.SYNC_POLL_INTERVAL_MS / 1000
        self._heartbeat_interval = (
            heartbeat_interval if heartbeat_interval is not None else settings.SYNC_HEARTBEAT_INTERVAL_MS / 1000
        )
        self._send_debounce = send_debounce if send_debounce is not None else settings.SYNC_SEND_DEBOUNCE_MS / 1000
        self._locks = LocalLockTable(
            window=lock_window if lock_window is not None else settings.SYNC_LOCK_WINDOW_MS / 1000,
            clock=clock,
        )
        self._clock = clock
        self._listeners: List[SyncListener] = []

        self._session_id: Optional[str] = None
        self._session_name = ""
        self._connected = False
        self._members: List[SessionMember] = []
        self._member_snapshot: Optional[MemberSnapshot] = None
        self._shared_state: SharedState = {}
        self._state_version = 0
        self._send_queue: SharedState = {}
        self._stale_keys: Set[str] = set()

        self._poll_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._flush_handle: Optional[asyncio.TimerHandle] = None
        self._inflight: Set[asyncio.Task] = set()

    # --- read-only view ---

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def session_name(self) -> str:
        return self._session_name

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def members(self) -> List[SessionMember]:
        return list(self._members)

    @property
    def member_count(self) -> int:
        return len(self._members)

    @property
    def shared_state(self) -> SharedState:
        return dict(self._shared_state)

    @property
    def state_version(self) -> int:
        return self._state_version

    @property
    def pending_changes(self) -> SharedState:
        return dict(self._send_queue)

    def is_in_session(self, session_id: str) -> bool:
        return self._session_id == session_id

    # --- listeners ---

    def add_listener(self, listener: SyncListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SyncListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # --- public operations ---

    async def join(self, session_id: str) -> None:
        """Join ``session_id``, leaving the current session first."""
        if self._session_id is not None:
            await self.leave()

        self._reset_mirrors()
        self._session_id = session_id
        self._connected = True

        await self._broadcaster.open(session_id, self._on_broadcast)

        # Initial state without waiting a full interval
        await self._send_heartbeat()
        await self._poll_state()
        if self._session_id != session_id:
            return

        self._poll_task = asyncio.create_task(
            self._every(self._poll_interval, self._poll_state), name=f"sync-poll:{session_id}"
        )
        self._heartbeat_task = asyncio.create_task(
            self._every(self._heartbeat_interval, self._send_heartbeat), name=f"sync-heartbeat:{session_id}"
        )
        logger.info(f"Joined session {session_id}")
        self._emit(SyncEventKind.JOINED, session_id, f'Joined session "{self._session_name or session_id}"')

    async def leave(self) -> None:
        """Leave the current session; no-op when not in one."""
        session_id = self._session_id
        if session_id is None:
            return
        name = self._session_name or session_id

        await self._stop_timers()
        try:
            await self._api.leave(session_id)
        except TRANSIENT_ERRORS as e:
            # Presence TTL eviction covers a lost leave request
            logger.debug(f"Leave request for {session_id} failed: {e}")

        await self._broadcaster.close()
        self._reset_mirrors()
        self._session_id = None
        self._session_name = ""
        self._connected = False
        logger.info(f"Left session {session_id}")
        self._emit(SyncEventKind.LEFT, session_id, f'Left session "{name}"')

    def update_state(self, partial: Mapping[str, Any]) -> None:
        """
        Apply ``partial`` locally and queue it for the server.

        Must be called from inside the running event loop. Raises
        StateValidationError for keys or values the server would reject.
        """
        if self._session_id is None:
            return
        changes = validate_partial(partial)
        if not changes:
            return

        self._shared_state = merge_state(self._shared_state, changes)
        self._locks.lock(changes)
        self._send_queue.update(changes)
        self._schedule_flush()
        self._emit(SyncEventKind.STATE_CHANGED, self._session_id)

    async def close(self) -> None:
        """Leave and release the HTTP client and broadcast transport."""
        await self.leave()
        for task in list(self._inflight):
            task.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        await self._broadcaster.aclose()
        await self._api.aclose()

    # --- debounced send ---

    def _schedule_flush(self) -> None:
        if self._flush_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._flush_handle = loop.call_later(self._send_debounce, self._fire_flush)

    def _fire_flush(self) -> None:
        self._flush_handle = None
        payload, self._send_queue = self._send_queue, {}
        session_id = self._session_id
        if session_id is None or not payload:
            return
        task = asyncio.create_task(self._send(session_id, payload), name=f"sync-send:{session_id}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _send(self, session_id: str, payload: SharedState) -> None:
        try:
            version, merged = await self._api.put_state(session_id, payload)
        except TRANSIENT_ERRORS as e:
            # Dropped: once the lock expires the next poll restores the server value
            logger.debug(f"State write to {session_id} dropped: {e}")
            if self._session_id == session_id:
                self._stale_keys.update(payload)
            return
        if self._session_id != session_id:
            return
        # The response carries writes that landed between ours and the last one we saw
        self._apply_remote(merged, version, complete=True)
        await self._broadcaster.publish(payload, version)

    # --- periodic tasks ---

    async def _every(self, interval: float, tick: Callable[[], Awaitable[None]]) -> None:
        # Deadlines run from each tick's start; a slow request does not stretch the period
        loop = asyncio.get_running_loop()
        deadline = loop.time() + interval
        while True:
            await asyncio.sleep(max(0.0, deadline - loop.time()))
            started = loop.time()
            try:
                await tick()
            except Exception:
                logger.exception("Sync tick failed")
            deadline = started + interval

    async def _poll_state(self) -> None:
        session_id = self._session_id
        if session_id is None:
            return
        try:
            snapshot = await self._api.get_state(session_id)
        except TRANSIENT_ERRORS as e:
            logger.debug(f"Poll of {session_id} failed: {e}")
            return
        if self._session_id != session_id:
            return

        self._session_name = snapshot.name

        # Diff against the previous member list before replacing it
        events, self._member_snapshot = diff_members(self._member_snapshot, snapshot.members)
        self._members = list(snapshot.members)
        for event in events:
            if event.change is MembershipChange.JOINED:
                self._emit(
                    SyncEventKind.MEMBER_JOINED, session_id,
                    f"{event.username} joined the session", event.user_id,
                )
            else:
                self._emit(
                    SyncEventKind.MEMBER_LEFT, session_id,
                    f"{event.username} left the session", event.user_id,
                )

        self._apply_remote(snapshot.state, snapshot.state_version, complete=True)

    async def _send_heartbeat(self) -> None:
        session_id = self._session_id
        if session_id is None:
            return
        try:
            await self._api.heartbeat(session_id)
        except TRANSIENT_ERRORS as e:
            logger.debug(f"Heartbeat for {session_id} failed: {e}")

    async def _stop_timers(self) -> None:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        current = asyncio.current_task()
        tasks = [t for t in (self._poll_task, self._heartbeat_task) if t is not None]
        self._poll_task = None
        self._heartbeat_task = None
        for task in tasks:
            task.cancel()
        pending = [t for t in tasks if t is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # --- remote state ---

    def _on_broadcast(self, state: SharedState, version: int) -> None:
        if self._session_id is None:
            return
        self._apply_remote(state, version)

    def _apply_remote(self, remote: Mapping[str, Any], version: int, complete: bool = False) -> bool:
        """
        Version-gated merge that keeps locally locked fields.

        ``complete`` marks a full server snapshot (poll or write response).
        Fields the local mirror may disagree on (skipped under a lock, or
        part of a dropped write) are kept in ``_stale_keys``; a complete
        snapshot at the current version or newer overwrites them once their
        lock has expired, so the mirror converges even when no newer
        version ever arrives.
        """
        current = self._state_version
        if version < current or (version == current and not (complete and self._stale_keys)):
            return False

        now = self._clock()
        merged: Dict[str, Any] = dict(self._shared_state)
        changed = False
        if version > current:
            for key, value in remote.items():
                if self._locks.is_locked(key, now):
                    if merged.get(key, _MISSING) != value:
                        self._stale_keys.add(key)
                    continue
                if merged.get(key, _MISSING) != value:
                    changed = True
                merged[key] = value
            self._state_version = version

        if complete:
            for key in list(self._stale_keys):
                if self._locks.is_locked(key, now):
                    continue
                self._stale_keys.discard(key)
                if key in remote:
                    if merged.get(key, _MISSING) != remote[key]:
                        merged[key] = remote[key]
                        changed = True
                elif key in merged:
                    # Never reached the server
                    del merged[key]
                    changed = True

        self._shared_state = merged
        if changed and self._session_id is not None:
            self._emit(SyncEventKind.STATE_CHANGED, self._session_id)
        return changed

    # --- internals ---

    def _reset_mirrors(self) -> None:
        self._members = []
        self._member_snapshot = None
        self._shared_state = {}
        self._state_version = 0
        self._send_queue = {}
        self._locks.clear()
        self._stale_keys.clear()

    def _emit(self, kind: SyncEventKind, session_id: str, message: str = "", user_id: Optional[str] = None) -> None:
        event = SyncEvent(kind=kind, session_id=session_id, message=message, user_id=user_id)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Sync listener failed on {kind.value}")
