# app/routers/sessions.py
# FastAPI router for shared sessions: CRUD, versioned state merge, presence heartbeat

from __future__ import annotations

import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request, Response, status

from app.middleware.auth import CurrentUser, get_current_user, get_optional_user
from app.middleware.error_handler import ValidationError
from app.repositories.presence_repository import PresenceRepository
from app.repositories.session_repository import SessionRepository
from app.schemas.common import StatusResponse, error_responses
from app.schemas.sessions import (
    SessionCreatedResponse,
    SessionListResponse,
    SessionMemberOut,
    SessionOut,
    SessionStateResponse,
    StateUpdateResponse,
)
from app.services.session_service import SessionService


router = APIRouter(tags=["Sessions"])


def get_session_repository() -> SessionRepository:
    return SessionRepository()


def get_presence_repository() -> PresenceRepository:
    return PresenceRepository()


def get_service(
    sessions: SessionRepository = Depends(get_session_repository),
    presence: PresenceRepository = Depends(get_presence_repository),
) -> SessionService:
    """Provide service with DI so handlers stay thin."""
    return SessionService(sessions, presence)


async def _read_json(request: Request, default: Any = None) -> Any:
    """Parse the request body; bodies that are not JSON are a 400, not a 422."""
    raw = await request.body()
    if not raw.strip():
        return default
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON body")


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(
    user: Optional[CurrentUser] = Depends(get_optional_user),
    service: SessionService = Depends(get_service),
) -> SessionListResponse:
    """Sessions created by the caller, newest first."""
    if user is None:
        return SessionListResponse(sessions=[])
    rows = await service.list_sessions(user.id)
    return SessionListResponse(sessions=[SessionOut(**row) for row in rows])


@router.post(
    "/sessions",
    response_model=SessionCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    responses=error_responses(400, 401),
)
async def create_session(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_service),
) -> SessionCreatedResponse:
    body = await _read_json(request, default={})
    if not isinstance(body, dict):
        raise ValidationError("Body must be a JSON object")
    name = body.get("name")
    if name is not None and not isinstance(name, str):
        raise ValidationError("name must be a string")
    row = await service.create_session(user, name)
    return SessionCreatedResponse(session=SessionOut(**row))


@router.delete("/sessions", response_model=StatusResponse, responses=error_responses(400, 401, 404))
async def delete_session(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_service),
) -> StatusResponse:
    body = await _read_json(request, default={})
    session_id = body.get("id") if isinstance(body, dict) else None
    if not session_id or not isinstance(session_id, str):
        raise ValidationError("Missing session ID")
    await service.delete_session(user, session_id)
    return StatusResponse(success=True)


@router.get("/sessions/{session_id}/state", response_model=SessionStateResponse, responses=error_responses(404))
async def get_state(
    session_id: str,
    service: SessionService = Depends(get_service),
) -> SessionStateResponse:
    """Current state, version and live members of a session."""
    snapshot = await service.get_snapshot(session_id)
    return SessionStateResponse(
        id=snapshot["id"],
        name=snapshot["name"],
        state=snapshot["state"],
        state_version=snapshot["state_version"],
        members=[SessionMemberOut(**m) for m in snapshot["members"]],
    )


@router.put(
    "/sessions/{session_id}/state",
    response_model=StateUpdateResponse,
    responses=error_responses(400, 401, 404, 409),
)
async def update_state(
    session_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_service),
) -> StateUpdateResponse:
    """Merge a partial state onto the session blob (last writer wins per key)."""
    body = await _read_json(request)
    if not isinstance(body, dict) or body.get("state") is None:
        raise ValidationError("Missing state")
    version, state = await service.merge_state(session_id, body["state"])
    return StateUpdateResponse(state_version=version, state=state)


@router.post(
    "/sessions/{session_id}/heartbeat",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=error_responses(401, 404),
)
async def heartbeat(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_service),
) -> Response:
    await service.heartbeat(session_id, user)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete(
    "/sessions/{session_id}/heartbeat",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=error_responses(401),
)
async def leave(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_service),
) -> Response:
    await service.leave(session_id, user)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
