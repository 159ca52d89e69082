"""HTTP client for the session state endpoints."""

from __future__ import annotations

from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, List, Mapping, Optional, Tuple

import httpx

from app.config import settings
from app.sync.members import SessionMember
from app.sync.state import SharedState


class SessionApiError(Exception):
    """Non-success response from the session API."""

    def __init__(self, status_code: int, message: str = ""):
        super().__init__(f"session API returned {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class SessionNotFoundError(SessionApiError):
    pass


@dataclass
class SessionSnapshot:
    id: str
    name: str
    state: SharedState
    state_version: int
    members: List[SessionMember] = field(default_factory=list)

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "SessionSnapshot":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            state=dict(data.get("state") or {}),
            state_version=int(data.get("stateVersion") or 0),
            members=[SessionMember.from_wire(m) for m in data.get("members") or []],
        )


class SessionApiClient:
    """
    Thin wrapper over httpx.AsyncClient for the sync endpoints.

    Transport failures surface as httpx.HTTPError, non-2xx responses as
    SessionApiError. Callers decide what is transient.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        headers = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if client is None:
            request_timeout = timeout if timeout is not None else settings.SYNC_HTTP_TIMEOUT_SECONDS
            client = httpx.AsyncClient(
                base_url=base_url or settings.SYNC_API_BASE_URL,
                timeout=httpx.Timeout(request_timeout),
                headers=headers,
            )
            self._owns_client = True
        else:
            client.headers.update(headers)
            self._owns_client = False
        self._client = client

    @property
    def http(self) -> httpx.AsyncClient:
        return self._client

    async def get_state(self, session_id: str) -> SessionSnapshot:
        response = await self._client.get(f"/sessions/{session_id}/state")
        self._raise_for_status(response)
        return SessionSnapshot.from_wire(response.json())

    async def put_state(self, session_id: str, partial: Mapping[str, Any]) -> Tuple[int, SharedState]:
        response = await self._client.put(
            f"/sessions/{session_id}/state",
            json={"state": dict(partial)},
        )
        self._raise_for_status(response)
        data = response.json()
        return int(data["stateVersion"]), dict(data.get("state") or {})

    async def heartbeat(self, session_id: str) -> None:
        response = await self._client.post(f"/sessions/{session_id}/heartbeat")
        self._raise_for_status(response)

    async def leave(self, session_id: str) -> None:
        response = await self._client.delete(f"/sessions/{session_id}/heartbeat")
        self._raise_for_status(response)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        message = ""
        try:
            body = response.json()
            error = body.get("error") if isinstance(body, dict) else None
            if isinstance(error, dict):
                message = str(error.get("message", ""))
            elif error:
                message = str(error)
        except ValueError:
            message = response.text[:200]
        if response.status_code == HTTPStatus.NOT_FOUND:
            raise SessionNotFoundError(response.status_code, message)
        raise SessionApiError(response.status_code, message)
