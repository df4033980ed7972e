"""
Domain records for the chat tables and feed cards.

Rows are loaded with ``Model.from_db_row(dict(row))``. Room kinds form a
closed set; pipeline code asks ``is_thread`` / ``is_direct`` / ``is_derived``
instead of comparing kinds directly.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def utc_now() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def to_db_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(DB_TIME_FORMAT)


def from_db_time(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    for fmt in (DB_TIME_FORMAT, "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=UTC)
        except ValueError:
            continue
    return datetime.fromisoformat(value).astimezone(UTC)


class RoomKind(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    THREAD = "thread"  # nested under one parent message
    DIRECT = "direct"  # never scanned
    DERIVED = "derived"  # materialized feed room


class FeedCardType(str, Enum):
    AUTOMATED = "automated"
    PROMOTED = "promoted"


class User(BaseModel):
    id: int
    name: str
    active: bool = True

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> User:
        return cls(**row)


class Room(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    kind: RoomKind
    active: bool = True
    creator_id: int | None = None
    parent_message_id: int | None = None
    source_room_id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_thread(self) -> bool:
        return self.kind == RoomKind.THREAD

    @property
    def is_direct(self) -> bool:
        return self.kind == RoomKind.DIRECT

    @property
    def is_derived(self) -> bool:
        return self.kind == RoomKind.DERIVED

    @property
    def is_scannable(self) -> bool:
        """Active rooms whose content may be surfaced on the feed."""
        return self.active and not self.is_direct and not self.is_derived

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _parse_time(cls, v: Any) -> Any:
        return from_db_time(v) if v is not None else None

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> Room:
        return cls(**row)


class LinkPreview(BaseModel):
    title: str = ""
    description: str = ""
    url: str = ""


class Reaction(BaseModel):
    creator_id: int
    content: str
    created_at: datetime | None = None

    @field_validator("created_at", mode="before")
    @classmethod
    def _parse_time(cls, v: Any) -> Any:
        return from_db_time(v) if v is not None else None


class Message(BaseModel):
    """A chat message. ``original_message_id`` is set only on feed copies."""

    id: int
    room_id: int
    creator_id: int
    body: str = ""
    client_message_id: str | None = None
    attachment_name: str | None = None
    link_previews: list[LinkPreview] = Field(default_factory=list)
    original_message_id: int | None = None
    in_feed: bool = False
    active: bool = True
    created_at: datetime
    updated_at: datetime

    # Populated by repository joins when requested
    creator_name: str | None = None
    reactions: list[Reaction] = Field(default_factory=list)

    @property
    def is_copy(self) -> bool:
        return self.original_message_id is not None

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _parse_time(cls, v: Any) -> Any:
        return from_db_time(v)

    @field_validator("link_previews", mode="before")
    @classmethod
    def _parse_previews(cls, v: Any) -> Any:
        if v is None or v == "":
            return []
        if isinstance(v, str):
            return json.loads(v)
        return v

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> Message:
        return cls(**row)


class FeedCard(BaseModel):
    id: int
    room_id: int
    title: str
    summary: str = ""
    type: FeedCardType
    promoted_by: int | None = None
    preview_message_id: int | None = None
    message_fingerprint: str | None = None
    created_at: datetime
    updated_at: datetime

    # Joined from the derived room
    source_room_id: int | None = None

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _parse_time(cls, v: Any) -> Any:
        return from_db_time(v)

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> FeedCard:
        return cls(**row)
