# app/sync/members.py
"""Membership diff between successive presence snapshots."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Tuple


class MembershipChange(str, Enum):
    JOINED = "joined"
    LEFT = "left"


@dataclass(frozen=True)
class SessionMember:
    user_id: str
    username: str
    avatar: Optional[str] = None

    @classmethod
    def from_wire(cls, data: Mapping) -> "SessionMember":
        return cls(
            user_id=str(data["userId"]),
            username=str(data.get("username") or ""),
            avatar=data.get("avatar"),
        )


@dataclass(frozen=True)
class MembershipEvent:
    change: MembershipChange
    user_id: str
    username: str


# user id -> last known display name
MemberSnapshot = Dict[str, str]


def diff_members(
    previous: Optional[Mapping[str, str]],
    members: Iterable[SessionMember],
) -> Tuple[List[MembershipEvent], MemberSnapshot]:
    """
    Compare the previous snapshot with a new member list.

    ``previous`` is None for the first snapshot after joining; that call
    only seeds the snapshot and yields no events. Left events carry the
    username cached in ``previous``.
    """
    current: MemberSnapshot = {m.user_id: m.username for m in members}
    if previous is None:
        return [], current

    events: List[MembershipEvent] = []
    for user_id, username in current.items():
        if user_id not in previous:
            events.append(MembershipEvent(MembershipChange.JOINED, user_id, username))
    for user_id, username in previous.items():
        if user_id not in current:
            events.append(MembershipEvent(MembershipChange.LEFT, user_id, username or "Someone"))
    return events, current
