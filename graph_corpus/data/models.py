"""Records exchanged between the API client, the store and the orchestrator."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


class RelationshipKind(str, Enum):
    """Which side of a follow relationship a pass expands."""

    FOLLOWING = "following"
    FOLLOWERS = "followers"

    @property
    def endpoint(self) -> str:
        return "friends/ids" if self is RelationshipKind.FOLLOWING else "followers/ids"

    @property
    def watermark_column(self) -> str:
        return "latest_following_id" if self is RelationshipKind.FOLLOWING else "latest_follower_id"

    @property
    def other_column(self) -> str:
        return "following_id" if self is RelationshipKind.FOLLOWING else "follower_id"


@dataclass(frozen=True)
class ProfileSnapshot:
    """Profile as returned by the API, with the raw JSON preserved."""

    user_id: int
    handle: str
    description: str
    protected: bool
    blob: bytes


@dataclass(frozen=True)
class StoredProfile:
    """A row of the ``profiles`` table."""

    user_id: int
    handle: str
    description: str
    last_looked_at: int
    latest_message_id: int
    latest_following_id: int
    latest_follower_id: int
    protected: bool
    processed: bool
    accepted: bool
    blob: Optional[bytes]

    def watermark(self, kind: RelationshipKind) -> int:
        return getattr(self, kind.watermark_column)


@dataclass(frozen=True)
class MessageSnapshot:
    """A timeline entry; ``created_at`` is unix seconds."""

    message_id: int
    created_at: int
    language: Optional[str]
    user_id: int
    text: str
    blob: bytes


@dataclass(frozen=True)
class RelationshipPage:
    """One page of a cursored ID list. ``next_cursor == 0`` marks the end."""

    ids: List[int]
    next_cursor: int
