"""Journal of synchronization runs shown on the status screen."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class SyncLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    sync_type: str = Field(index=True)
    direction: str
    records_count: int = Field(default=0)
    success_count: int = Field(default=0)
    failed_count: int = Field(default=0)
    error_message: Optional[str] = None
    started_at: datetime = Field(index=True)
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None


__all__ = ["SyncLog"]
