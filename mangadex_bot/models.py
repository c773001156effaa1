"""
Core data models for mangadex-bot.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CatalogItem(BaseModel):
    """One chapter as published upstream. Immutable once fetched."""

    model_config = ConfigDict(frozen=True)

    id: str
    manga_id: str
    published_at: datetime
    title: str
    url: str
    chapter: Optional[str] = None
    volume: Optional[str] = None
    chapter_title: Optional[str] = None
    language: Optional[str] = None


class SeenRecord(BaseModel):
    """An identifier that has already been announced."""

    id: str
    first_seen: datetime = Field(default_factory=utcnow)
    manga_id: Optional[str] = None


class TrackedManga(BaseModel):
    """A manga and the channels that want its chapter announcements."""

    id: str
    title: str
    channels: List[str] = Field(default_factory=list)
    added_at: datetime = Field(default_factory=utcnow)


class CycleOutcome(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"
    SKIPPED = "skipped"


class PollCycle(BaseModel):
    """One fetch → diff → notify → commit run. Never persisted."""

    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    fetched: List[CatalogItem] = Field(default_factory=list)
    new_items: List[CatalogItem] = Field(default_factory=list)
    committed: int = 0
    outcome: CycleOutcome = CycleOutcome.SUCCESS
    error: Optional[str] = None


class TaskStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED_TRANSIENT = "failed_transient"
    FAILED_FATAL = "failed_fatal"


class NotificationTask(BaseModel):
    """One catalog item bound for one target, with its delivery attempts."""

    item: CatalogItem
    target: str
    text: str
    attempts: int = 0
    status: TaskStatus = TaskStatus.PENDING
    error: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.status is not TaskStatus.PENDING

    @property
    def committable(self) -> bool:
        """Delivered, or failed in a way a retry next cycle cannot fix."""
        return self.status in (TaskStatus.DELIVERED, TaskStatus.FAILED_FATAL)
