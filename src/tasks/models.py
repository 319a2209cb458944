from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    def can_become(self, other: "TaskStatus") -> bool:
        """Monotonic order: pending -> processing -> one terminal state, then nothing."""
        if self.is_terminal:
            return False
        if other == self:
            return True
        if self == TaskStatus.PROCESSING:
            return other.is_terminal
        return True


_TERMINAL = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


def _utcnow() -> datetime:
    return datetime.now(UTC)


# --------------- Search payloads ---------------
class SourceMetadata(BaseModel):
    url: str
    title: Optional[str] = None
    description: Optional[str] = None


class SearchSource(BaseModel):
    metadata: SourceMetadata
    content: str


class SearchResponse(BaseModel):
    message: str
    sources: Optional[List[SearchSource]] = None


class SearchData(BaseModel):
    """Plaintext `{query, response}` pair; only ever persisted encrypted."""

    query: str
    response: SearchResponse


class EncryptedPayload(BaseModel):
    """
    Ciphertext-only form of `SearchData`.

    `timestamp` is milliseconds since the epoch, set at encryption time.
    """

    encrypted_query: str
    encrypted_response: str
    timestamp: int


class SearchResult(BaseModel):
    """A finished search as the backend returns it (temporary and save endpoints)."""

    id: str
    query: str
    response: SearchResponse
    created_at: Optional[str] = None
    group_id: Optional[str] = None


# --------------- Task tracking ---------------
class TaskStatusResponse(BaseModel):
    """Backend view of one search task (status and pending endpoints)."""

    id: str
    status: TaskStatus
    query: str = ""
    group_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    response: Optional[SearchResponse] = None


class ActiveTask(BaseModel):
    """
    Client-side record of a tracked task.

    Status is only ever changed by the task manager, through the registry.
    """

    id: str
    query: str
    group_id: str
    status: TaskStatus = TaskStatus.PENDING
    started_at: datetime = Field(default_factory=_utcnow)
    created_at: datetime = Field(default_factory=_utcnow)
    error: Optional[str] = None
    partial_result: Optional[str] = None
    response: Optional[SearchResponse] = None


__all__ = [
    "ActiveTask",
    "EncryptedPayload",
    "SearchData",
    "SearchResponse",
    "SearchResult",
    "SearchSource",
    "SourceMetadata",
    "TaskStatus",
    "TaskStatusResponse",
]
