"""Persistence helpers for the synchronization journal."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from core.log import get_sync_logger
from datetime_utils import ensure_utc, utc_now
from models.sync_log import SyncLog
from storage.db import SessionFactory


@dataclass
class SyncLogEntry:
    id: int
    sync_type: str
    direction: str
    records_count: int
    success_count: int
    failed_count: int
    error_message: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]
    duration_seconds: Optional[float]


class SyncHistory:
    """Append-only journal of cycles, skips and cleanups."""

    def __init__(self, session_factory: SessionFactory, logger: Optional[logging.Logger] = None):
        self._session_factory = session_factory
        self.logger = logger or get_sync_logger("history")

    def record(
        self,
        sync_type: str,
        direction: str,
        *,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        records: int = 0,
        success: int = 0,
        failed: int = 0,
        error: Optional[str] = None,
    ) -> None:
        started = ensure_utc(started_at) or utc_now()
        completed = ensure_utc(completed_at) or utc_now()
        entry = SyncLog(
            sync_type=sync_type,
            direction=direction,
            records_count=records,
            success_count=success,
            failed_count=failed,
            error_message=error[:1000] if error else None,
            started_at=started,
            completed_at=completed,
            duration_seconds=max((completed - started).total_seconds(), 0.0),
        )
        try:
            with self._session_factory() as session:
                session.add(entry)
                session.commit()
        except SQLAlchemyError as exc:
            # The journal is informational; a full disk must not fail the cycle itself
            self.logger.warning("Could not write sync journal entry %s/%s: %s", sync_type, direction, exc)

    def recent(self, limit: int = 20) -> List[SyncLogEntry]:
        with self._session_factory() as session:
            stmt = (
                select(SyncLog)
                .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
                .limit(limit)
            )
            rows = list(session.exec(stmt))
        return [
            SyncLogEntry(
                id=row.id,
                sync_type=row.sync_type,
                direction=row.direction,
                records_count=row.records_count,
                success_count=row.success_count,
                failed_count=row.failed_count,
                error_message=row.error_message,
                started_at=ensure_utc(row.started_at),
                completed_at=ensure_utc(row.completed_at),
                duration_seconds=row.duration_seconds,
            )
            for row in rows
        ]


__all__ = ["SyncHistory", "SyncLogEntry"]
