from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic import ConfigDict
from pydantic.alias_generators import to_camel


def _now_utc() -> datetime:
    return datetime.now(UTC)


class CamelModel(BaseModel):
    """Base for records persisted and served with camelCase keys.

    Snake-case keys are still accepted on input so older cache files load.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ConversationSummary(CamelModel):
    """Normalized view of one upstream conversation."""

    id: str
    patient_name: str = "Unknown"
    last_message: str = "No messages"
    updated_at: str
    unread_count: int = Field(default=0, ge=0)
    archived: bool = False


class Message(CamelModel):
    """One normalized item of a conversation's history."""

    id: str
    content: str
    timestamp: str
    sender_name: str
    is_from_patient: bool = False
    is_internal_note: bool = False
    type: str = "message"
    media: Optional[List[str]] = None


class MessageCacheEntry(CamelModel):
    last_fetched_at: int = Field(description="epoch milliseconds of the upstream fetch")
    messages: List[Message] = Field(default_factory=list)


class SyncResponse(BaseModel):
    success: bool
    count: int
    pages: int | None = None
    synced_at: datetime = Field(default_factory=_now_utc)


class UpdatesResponse(BaseModel):
    count: int
    conversations: List[ConversationSummary] = Field(default_factory=list)


class ArchiveResponse(BaseModel):
    success: bool


class HistoryInvalidateResponse(BaseModel):
    conversation_id: str
    removed: bool


class HistoryClearResponse(BaseModel):
    removed: int


class RateLimitStatus(BaseModel):
    remaining: int | None = None
    reset_at: str | None = None


class CacheStatusResponse(BaseModel):
    conversation_count: int
    message_cache_count: int
    auth_scheme: str
    last_sync_at: datetime | None = None
    last_sync_pages: int | None = None
    rate_limit: RateLimitStatus = Field(default_factory=RateLimitStatus)
