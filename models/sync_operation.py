"""SQLModel table for queued biometric operations awaiting synchronization."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, Index, Text
from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


class OperationType:
    REGISTRATION = "registration"
    VERIFICATION = "verification"

    ALL = (REGISTRATION, VERIFICATION)


class SyncStatus:
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SYNCED = "synced"
    ERROR = "error"
    ABANDONED = "abandoned"

    ALL = (PENDING, IN_PROGRESS, SYNCED, ERROR, ABANDONED)
    RETRYABLE = (PENDING, ERROR)
    RESETTABLE = (ERROR, ABANDONED)


INTERRUPTED_ERROR = "interrupted: processing stopped before the attempt completed"


class SyncOperation(SQLModel, table=True):
    __table_args__ = (
        Index("ix_syncoperation_status_created", "sync_status", "created_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    operation_type: str = Field(index=True)
    payload: str = Field(sa_column=Column(Text, nullable=False))
    sync_status: str = Field(default=SyncStatus.PENDING)
    sync_attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    # attempts already spent when an operator last reset the row
    retry_base: int = Field(default=0)
    last_sync_attempt: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


__all__ = ["INTERRUPTED_ERROR", "OperationType", "SyncOperation", "SyncStatus"]
