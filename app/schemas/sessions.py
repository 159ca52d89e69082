from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(populate_by_name=True)


class SessionMemberOut(_WireModel):
    user_id: str = Field(alias="userId")
    username: str
    avatar: Optional[str] = None


class SessionStateResponse(_WireModel):
    id: str
    name: str
    state: Dict[str, Any]
    state_version: int = Field(alias="stateVersion")
    members: List[SessionMemberOut] = []


class StateUpdateResponse(_WireModel):
    state_version: int = Field(alias="stateVersion")
    state: Dict[str, Any]


class SessionOut(_WireModel):
    id: str
    name: str
    creator_id: str = Field(alias="creatorId")
    is_active: bool = Field(default=True, alias="isActive")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")


class SessionListResponse(BaseModel):
    sessions: List[SessionOut]


class SessionCreatedResponse(BaseModel):
    session: SessionOut
