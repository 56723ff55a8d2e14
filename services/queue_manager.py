"""Gateway over the operation store for offline biometric events.

The queue never talks to the network. Every status change that can race with
another claimer is a single ``UPDATE ... WHERE id = ? AND sync_status = ?``
so a row is owned by at most one processing cycle.
"""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Sequence, Union

from sqlalchemy import delete, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from core.log import get_sync_logger
from core.settings import SYNC, SyncSettings
from datetime_utils import days_ago, ensure_utc, utc_now
from models.payloads import RegistrationPayload, VerificationPayload
from models.sync_operation import INTERRUPTED_ERROR, OperationType, SyncOperation, SyncStatus
from services.errors import InvalidTransitionError, NotFoundError, StorageError, ValidationError
from services.sync_history import SyncHistory
from storage.db import SessionFactory


MAX_ERROR_LENGTH = 1000


@dataclass
class PendingOperation:
    id: int
    operation_type: str
    payload: dict
    sync_status: str
    sync_attempts: int
    max_attempts: int
    retry_base: int
    last_sync_attempt: Optional[datetime]
    last_error: Optional[str]
    created_at: datetime
    completed_at: Optional[datetime]

    @property
    def remaining_attempts(self) -> int:
        return max(self.max_attempts - (self.sync_attempts - self.retry_base), 0)

    @property
    def is_retryable(self) -> bool:
        return self.sync_status in SyncStatus.RETRYABLE and self.remaining_attempts > 0


@dataclass
class QueueStatistics:
    pending_count: int
    in_progress_count: int
    error_count: int
    abandoned_count: int
    synced_count: int
    pending_registrations: int
    pending_verifications: int
    last_updated: datetime

    @property
    def outstanding_count(self) -> int:
        """Rows the server has not confirmed yet and may still be retried."""

        return self.pending_count + self.in_progress_count + self.error_count


def _budget_left():
    return (SyncOperation.sync_attempts - SyncOperation.retry_base) < SyncOperation.max_attempts


def _to_operation(row: SyncOperation) -> PendingOperation:
    try:
        payload = json.loads(row.payload)
    except json.JSONDecodeError:
        payload = {}
    return PendingOperation(
        id=row.id,
        operation_type=row.operation_type,
        payload=payload if isinstance(payload, dict) else {},
        sync_status=row.sync_status,
        sync_attempts=row.sync_attempts,
        max_attempts=row.max_attempts,
        retry_base=row.retry_base,
        last_sync_attempt=ensure_utc(row.last_sync_attempt),
        last_error=row.last_error,
        created_at=ensure_utc(row.created_at),
        completed_at=ensure_utc(row.completed_at),
    )


class QueueManager:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        settings: SyncSettings = SYNC,
        history: Optional[SyncHistory] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._session_factory = session_factory
        self.settings = settings
        self.history = history
        self.logger = logger or get_sync_logger("queue")

    @contextmanager
    def _session(self, action: str) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            self.logger.error("Operation store failure during %s: %s", action, exc)
            raise StorageError(f"{action} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Enqueue
    def queue_fingerprint_registration(self, payload: RegistrationPayload) -> int:
        if not isinstance(payload, RegistrationPayload):
            raise ValidationError("Registration payload is required")
        return self._enqueue(OperationType.REGISTRATION, payload)

    def queue_fingerprint_verification(self, payload: VerificationPayload) -> int:
        if not isinstance(payload, VerificationPayload):
            raise ValidationError("Verification payload is required")
        return self._enqueue(OperationType.VERIFICATION, payload)

    def _enqueue(self, operation_type: str, payload: Union[RegistrationPayload, VerificationPayload]) -> int:
        problems = payload.problems()
        if problems:
            raise ValidationError("; ".join(problems))
        body = json.dumps(payload.to_dict(), ensure_ascii=False)
        if len(body.encode("utf-8")) > self.settings.max_payload_bytes:
            raise ValidationError(
                f"Payload is larger than {self.settings.max_payload_bytes} bytes"
            )

        record = SyncOperation(
            operation_type=operation_type,
            payload=body,
            sync_status=SyncStatus.PENDING,
            sync_attempts=0,
            max_attempts=self.settings.max_attempts,
            created_at=utc_now(),
        )
        with self._session("enqueue") as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            op_id = record.id
        self.logger.info("Queued %s #%s for roll %s", operation_type, op_id, payload.roll_number)
        return op_id

    # ------------------------------------------------------------------
    # Queries
    def get_operation(self, operation_id: int) -> PendingOperation:
        with self._session("get operation") as session:
            row = session.get(SyncOperation, operation_id)
            if row is None:
                raise NotFoundError(operation_id)
            return _to_operation(row)

    def get_queue_statistics(self) -> QueueStatistics:
        counts: Dict[str, int] = {status: 0 for status in SyncStatus.ALL}
        pending_by_type: Dict[str, int] = {op_type: 0 for op_type in OperationType.ALL}
        # One grouped SELECT reads a single snapshot, so counts never mix two states
        stmt = select(
            SyncOperation.sync_status, SyncOperation.operation_type, func.count()
        ).group_by(SyncOperation.sync_status, SyncOperation.operation_type)
        with self._session("read statistics") as session:
            rows = list(session.exec(stmt))

        for status, op_type, count in rows:
            counts[status] = counts.get(status, 0) + int(count)
            if status == SyncStatus.PENDING:
                pending_by_type[op_type] = pending_by_type.get(op_type, 0) + int(count)

        return QueueStatistics(
            pending_count=counts[SyncStatus.PENDING],
            in_progress_count=counts[SyncStatus.IN_PROGRESS],
            error_count=counts[SyncStatus.ERROR],
            abandoned_count=counts[SyncStatus.ABANDONED],
            synced_count=counts[SyncStatus.SYNCED],
            pending_registrations=pending_by_type[OperationType.REGISTRATION],
            pending_verifications=pending_by_type[OperationType.VERIFICATION],
            last_updated=utc_now(),
        )

    def get_retryable_operations(
        self,
        limit: Optional[int] = None,
        *,
        statuses: Sequence[str] = SyncStatus.RETRYABLE,
    ) -> List[PendingOperation]:
        """Eligible rows, oldest first, so early failures are never starved."""

        stmt = (
            select(SyncOperation)
            .where(SyncOperation.sync_status.in_(list(statuses)))
            .where(_budget_left())
            .order_by(SyncOperation.created_at.asc(), SyncOperation.id.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session("list retryable") as session:
            rows = list(session.exec(stmt))
        return [_to_operation(row) for row in rows]

    def get_failed_operations(self) -> List[PendingOperation]:
        stmt = (
            select(SyncOperation)
            .where(SyncOperation.sync_status.in_([SyncStatus.ERROR, SyncStatus.ABANDONED]))
            .order_by(SyncOperation.created_at.asc(), SyncOperation.id.asc())
        )
        with self._session("list failed") as session:
            rows = list(session.exec(stmt))
        return [_to_operation(row) for row in rows]

    def get_operations_by_type(self, operation_type: str, status: Optional[str] = None) -> List[PendingOperation]:
        if operation_type not in OperationType.ALL:
            raise ValueError(f"Unsupported operation type: {operation_type}")
        stmt = select(SyncOperation).where(SyncOperation.operation_type == operation_type)
        if status:
            stmt = stmt.where(SyncOperation.sync_status == status)
        stmt = stmt.order_by(SyncOperation.created_at.asc(), SyncOperation.id.asc())
        with self._session("list by type") as session:
            rows = list(session.exec(stmt))
        return [_to_operation(row) for row in rows]

    # ------------------------------------------------------------------
    # Operator actions
    def reset_operation_for_retry(self, operation_id: int) -> None:
        """Move an ``error``/``abandoned`` row back to ``pending``.

        ``sync_attempts`` and ``last_error`` stay as they are; the row gets a
        fresh attempt budget by remembering how many attempts were already spent.
        """

        with self._session("reset operation") as session:
            row = session.get(SyncOperation, operation_id)
            if row is None:
                raise NotFoundError(operation_id)
            current = row.sync_status
            if current == SyncStatus.PENDING:
                return
            if current not in SyncStatus.RESETTABLE:
                raise InvalidTransitionError(operation_id, current, "reset")

            stmt = (
                update(SyncOperation)
                .where(SyncOperation.id == operation_id)
                .where(SyncOperation.sync_status == current)
                .values(sync_status=SyncStatus.PENDING, retry_base=SyncOperation.sync_attempts)
            )
            result = session.execute(stmt, execution_options={"synchronize_session": False})
            session.commit()
            if result.rowcount != 1:
                session.expire_all()
                latest = session.get(SyncOperation, operation_id)
                status = latest.sync_status if latest else "missing"
                if status != SyncStatus.PENDING:
                    raise InvalidTransitionError(operation_id, status, "reset")
                return
        self.logger.info("Operation #%s reset for retry (was %s)", operation_id, current)

    def cleanup_completed_operations(self, older_than_days: Optional[int] = None) -> int:
        days = self.settings.retention_days if older_than_days is None else older_than_days
        if days < 0:
            raise ValidationError("older_than_days must not be negative")
        started = utc_now()
        cutoff = days_ago(days, now=started)
        stmt = (
            delete(SyncOperation)
            .where(SyncOperation.sync_status == SyncStatus.SYNCED)
            .where(SyncOperation.completed_at.is_not(None))
            .where(SyncOperation.completed_at < cutoff)
        )
        with self._session("cleanup") as session:
            result = session.execute(stmt, execution_options={"synchronize_session": False})
            session.commit()
            deleted = int(result.rowcount or 0)
        self.logger.info("Cleanup removed %d synced operations older than %d days", deleted, days)
        if self.history is not None:
            self.history.record(
                "queue_cleanup",
                "local",
                started_at=started,
                records=deleted,
                success=deleted,
            )
        return deleted

    # ------------------------------------------------------------------
    # Processing transitions (used by the background processor)
    def claim_operation(self, operation_id: int, *, statuses: Sequence[str] = SyncStatus.RETRYABLE) -> bool:
        """Atomically move an eligible row to ``in_progress``; False if someone else owns it."""

        stmt = (
            update(SyncOperation)
            .where(SyncOperation.id == operation_id)
            .where(SyncOperation.sync_status.in_(list(statuses)))
            .where(_budget_left())
            .values(sync_status=SyncStatus.IN_PROGRESS, last_sync_attempt=utc_now())
        )
        with self._session("claim operation") as session:
            result = session.execute(stmt, execution_options={"synchronize_session": False})
            session.commit()
            return result.rowcount == 1

    def mark_synced(self, operation_id: int) -> bool:
        now = utc_now()
        stmt = (
            update(SyncOperation)
            .where(SyncOperation.id == operation_id)
            .where(SyncOperation.sync_status == SyncStatus.IN_PROGRESS)
            .values(
                sync_status=SyncStatus.SYNCED,
                sync_attempts=SyncOperation.sync_attempts + 1,
                last_sync_attempt=now,
                last_error=None,
                completed_at=now,
            )
        )
        with self._session("mark synced") as session:
            result = session.execute(stmt, execution_options={"synchronize_session": False})
            session.commit()
            updated = result.rowcount == 1
        if not updated:
            self.logger.warning("Operation #%s was not in progress when marking synced", operation_id)
        return updated

    def mark_failed(self, operation_id: int, error: str, *, permanent: bool = False) -> str:
        """Record a failed attempt and return the status the row landed in."""

        message = (error or "unknown error")[:MAX_ERROR_LENGTH]
        with self._session("mark failed") as session:
            row = session.get(SyncOperation, operation_id)
            if row is None:
                raise NotFoundError(operation_id)
            if row.sync_status != SyncStatus.IN_PROGRESS:
                self.logger.warning(
                    "Operation #%s was %s, not in progress, when recording a failure",
                    operation_id,
                    row.sync_status,
                )
                return row.sync_status

            spent = row.sync_attempts + 1 - row.retry_base
            exhausted = spent >= row.max_attempts
            new_status = SyncStatus.ABANDONED if permanent or exhausted else SyncStatus.ERROR
            stmt = (
                update(SyncOperation)
                .where(SyncOperation.id == operation_id)
                .where(SyncOperation.sync_status == SyncStatus.IN_PROGRESS)
                .values(
                    sync_status=new_status,
                    sync_attempts=SyncOperation.sync_attempts + 1,
                    last_sync_attempt=utc_now(),
                    last_error=message,
                )
            )
            result = session.execute(stmt, execution_options={"synchronize_session": False})
            session.commit()
            if result.rowcount != 1:
                session.expire_all()
                latest = session.get(SyncOperation, operation_id)
                return latest.sync_status if latest else new_status
        return new_status

    def release_claim(self, operation_id: int, previous_status: str) -> bool:
        """Hand a claimed row back unchanged after its outcome could not be recorded."""

        if previous_status not in SyncStatus.RETRYABLE:
            raise InvalidTransitionError(operation_id, previous_status, "release")
        stmt = (
            update(SyncOperation)
            .where(SyncOperation.id == operation_id)
            .where(SyncOperation.sync_status == SyncStatus.IN_PROGRESS)
            .values(sync_status=previous_status)
        )
        with self._session("release claim") as session:
            result = session.execute(stmt, execution_options={"synchronize_session": False})
            session.commit()
            released = result.rowcount == 1
        if released:
            self.logger.info("Operation #%s released back to %s", operation_id, previous_status)
        return released

    def recover_interrupted_operations(self) -> int:
        """Sweep rows left ``in_progress`` by a previous run back to ``error``."""

        stmt = (
            update(SyncOperation)
            .where(SyncOperation.sync_status == SyncStatus.IN_PROGRESS)
            .values(sync_status=SyncStatus.ERROR, last_error=INTERRUPTED_ERROR)
        )
        with self._session("recover interrupted") as session:
            result = session.execute(stmt, execution_options={"synchronize_session": False})
            session.commit()
            recovered = int(result.rowcount or 0)
        if recovered:
            self.logger.warning("Recovered %d operations interrupted by a previous shutdown", recovered)
        return recovered


__all__ = ["PendingOperation", "QueueManager", "QueueStatistics"]
