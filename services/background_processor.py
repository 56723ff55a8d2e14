"""Background synchronization of the offline operation queue.

A cycle claims a bounded, oldest-first batch of eligible operations, pushes
each one through the Sync Client and records the outcome. Only one cycle runs
at a time: the periodic timer, connectivity changes and manual "sync now"
requests all funnel into the same non-blocking lock, so a trigger that
arrives mid-cycle is simply dropped.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from core.log import get_sync_logger
from core.settings import SYNC, SyncSettings
from datetime_utils import utc_now
from models.sync_operation import OperationType, SyncStatus
from services.errors import QueueError, StorageError
from services.events import EventHub
from services.queue_manager import PendingOperation, QueueManager
from services.sync_client import SyncOutcome, SyncResult
from services.sync_history import SyncHistory


PROCESSING_STARTED = "processing_started"
PROCESSING_COMPLETED = "processing_completed"
PROCESSING_ERROR = "processing_error"
PROCESSING_SKIPPED = "processing_skipped"
EVENTS = (PROCESSING_STARTED, PROCESSING_COMPLETED, PROCESSING_ERROR, PROCESSING_SKIPPED)

SKIP_OFFLINE = "offline"
SKIP_NOT_AUTHENTICATED = "not_authenticated"


class SyncClientProtocol(Protocol):
    def sync_registrations(self, batch: Sequence[Dict[str, Any]]) -> List[SyncResult]: ...

    def sync_verifications(self, batch: Sequence[Dict[str, Any]]) -> List[SyncResult]: ...


class ConnectivityProtocol(Protocol):
    def is_online(self) -> bool: ...


class TokenStoreProtocol(Protocol):
    def has_valid_token(self) -> bool: ...


@dataclass
class ProcessingStarted:
    started_at: datetime
    trigger: str


@dataclass
class ProcessingSummary:
    started_at: datetime
    completed_at: datetime
    total_processed: int = 0
    success_count: int = 0
    failed_count: int = 0
    abandoned_count: int = 0
    stopped_on_auth: bool = False

    @property
    def duration(self) -> timedelta:
        return self.completed_at - self.started_at


@dataclass
class ProcessingErrorInfo:
    error: BaseException
    started_at: datetime
    total_processed: int
    operation_id: Optional[int] = None


@dataclass
class ProcessingSkipped:
    reason: str
    at: datetime
    trigger: str


@dataclass
class _CycleCounters:
    processed: int = 0
    success: int = 0
    failed: int = 0
    abandoned: int = 0


class BackgroundProcessor:
    def __init__(
        self,
        queue: QueueManager,
        client: SyncClientProtocol,
        connectivity: ConnectivityProtocol,
        *,
        settings: SyncSettings = SYNC,
        history: Optional[SyncHistory] = None,
        token_store: Optional[TokenStoreProtocol] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.queue = queue
        self.client = client
        self.connectivity = connectivity
        self.settings = settings
        self.history = history
        self.token_store = token_store
        self.logger = logger or get_sync_logger("processor")
        self._events = EventHub(EVENTS, self.logger)
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._timer_thread: Optional[threading.Thread] = None
        self.last_summary: Optional[ProcessingSummary] = None
        self.last_success_at: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Events
    def subscribe(self, event: str, callback: Callable[[Any], None]) -> None:
        self._events.subscribe(event, callback)

    def unsubscribe(self, event: str, callback: Callable[[Any], None]) -> None:
        self._events.unsubscribe(event, callback)

    # ------------------------------------------------------------------
    # Lifecycle
    @property
    def is_processing(self) -> bool:
        return self._cycle_lock.locked()

    @property
    def is_running(self) -> bool:
        return self._timer_thread is not None and self._timer_thread.is_alive()

    def start(self) -> int:
        """Recover interrupted rows, start the timer and kick off a first cycle.

        Returns the number of operations recovered from a previous run.
        """

        recovered = self.queue.recover_interrupted_operations()
        self._stop_event.clear()
        if self.settings.auto_sync_enabled and not self.is_running:
            self._timer_thread = threading.Thread(
                target=self._timer_loop, name="queue-sync-timer", daemon=True
            )
            self._timer_thread.start()
            self.logger.info(
                "Background sync started with %d minute interval", self.settings.sync_interval_minutes
            )
        else:
            self.logger.info("Automatic sync disabled; only manual cycles will run")
        self.trigger()
        return recovered

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Stop the timer and wait for an in-flight cycle.

        Rows still claimed after ``timeout`` are left for the startup recovery
        sweep. Returns True when no cycle is running any more.
        """

        wait_for = self.settings.stop_timeout_sec if timeout is None else timeout
        self._stop_event.set()
        thread = self._timer_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(wait_for)
        self._timer_thread = None
        if self._cycle_lock.acquire(timeout=wait_for):
            self._cycle_lock.release()
            self.logger.info("Background sync stopped")
            return True
        self.logger.warning("Background sync stopped while a cycle was still running")
        return False

    def trigger(self, reason: str = "trigger") -> bool:
        """Run a cycle on a worker thread unless one is already active."""

        if self.is_processing:
            return False
        worker = threading.Thread(
            target=self._guarded_cycle, args=(reason,), name="queue-sync-cycle", daemon=True
        )
        worker.start()
        return True

    def notify_connectivity_changed(self, online: bool) -> None:
        if online and not self._stop_event.is_set():
            self.logger.info("Network came back online; processing queue")
            self.trigger("connectivity")

    def process_now(self) -> Optional[ProcessingSummary]:
        """Run one cycle on the calling thread.

        Returns ``None`` when another cycle is active or the cycle was skipped.
        """

        return self._guarded_cycle("manual")

    def status(self) -> Dict[str, Any]:
        try:
            queue_stats = asdict(self.queue.get_queue_statistics())
        except QueueError as exc:
            queue_stats = {"error": str(exc)}
        return {
            "is_processing": self.is_processing,
            "auto_sync": self.settings.auto_sync_enabled,
            "interval_minutes": self.settings.sync_interval_minutes,
            "online": getattr(self.connectivity, "last_state", None),
            "queue": queue_stats,
            "last_cycle": asdict(self.last_summary) if self.last_summary else None,
            "last_success_at": self.last_success_at,
        }

    # ------------------------------------------------------------------
    # Cycle
    def _timer_loop(self) -> None:
        interval = self.settings.sync_interval_minutes * 60
        while not self._stop_event.wait(interval):
            self._guarded_cycle("timer")

    def _guarded_cycle(self, trigger: str) -> Optional[ProcessingSummary]:
        if not self._cycle_lock.acquire(blocking=False):
            self.logger.debug("Cycle already running; %s trigger ignored", trigger)
            return None
        try:
            return self._run_cycle(trigger)
        except Exception as exc:
            # A crashing cycle must not take the timer thread down
            self.logger.exception("Queue processing crashed: %s", exc)
            self._events.emit(PROCESSING_ERROR, ProcessingErrorInfo(exc, utc_now(), 0))
            return None
        finally:
            self._cycle_lock.release()

    def _run_cycle(self, trigger: str) -> Optional[ProcessingSummary]:
        started = utc_now()
        if not self._is_online():
            self._skip(SKIP_OFFLINE, started, trigger)
            return None
        if self.token_store is not None and not self.token_store.has_valid_token():
            self._skip(SKIP_NOT_AUTHENTICATED, started, trigger)
            return None

        self._events.emit(PROCESSING_STARTED, ProcessingStarted(started, trigger))
        statuses = SyncStatus.RETRYABLE if self.settings.auto_retry_errors else (SyncStatus.PENDING,)
        try:
            batch = self.queue.get_retryable_operations(self.settings.batch_size, statuses=statuses)
        except StorageError as exc:
            self._report_error(exc, started, 0)
            self._journal(started, _CycleCounters(), error=str(exc))
            return None

        counters = _CycleCounters()
        stopped_on_auth = False
        for operation in batch:
            result = self._process_operation(operation, statuses, started, counters)
            if result is not None and result.outcome == SyncOutcome.AUTH:
                self.logger.warning(
                    "Credentials rejected; leaving the rest of the batch for the next cycle"
                )
                stopped_on_auth = True
                break

        summary = ProcessingSummary(
            started_at=started,
            completed_at=utc_now(),
            total_processed=counters.processed,
            success_count=counters.success,
            failed_count=counters.failed,
            abandoned_count=counters.abandoned,
            stopped_on_auth=stopped_on_auth,
        )
        self.last_summary = summary
        if counters.success:
            self.last_success_at = summary.completed_at
        self.logger.info(
            "Cycle finished: %d processed, %d synced, %d failed (%d abandoned) in %.1fs",
            summary.total_processed,
            summary.success_count,
            summary.failed_count,
            summary.abandoned_count,
            summary.duration.total_seconds(),
        )
        self._journal(
            started,
            counters,
            error=f"{counters.failed} operations failed" if counters.failed else None,
            completed_at=summary.completed_at,
        )
        self._events.emit(PROCESSING_COMPLETED, summary)
        return summary

    def _process_operation(
        self,
        operation: PendingOperation,
        statuses: Sequence[str],
        started: datetime,
        counters: _CycleCounters,
    ) -> Optional[SyncResult]:
        try:
            claimed = self.queue.claim_operation(operation.id, statuses=statuses)
        except StorageError as exc:
            self._report_error(exc, started, counters.processed, operation.id)
            return None
        if not claimed:
            self.logger.debug("Operation #%s already claimed elsewhere; skipping", operation.id)
            return None

        counters.processed += 1
        try:
            result = self._send(operation)
        except Exception as exc:
            self.logger.exception("Sync of operation #%s crashed", operation.id)
            result = SyncResult(SyncOutcome.RETRYABLE, f"Unexpected error: {exc}")

        try:
            if result.ok:
                if self.queue.mark_synced(operation.id):
                    counters.success += 1
                    self.logger.info("Operation #%s (%s) synced", operation.id, operation.operation_type)
                else:
                    # Swept out of in_progress by another process; it will be sent again
                    counters.failed += 1
                    self.logger.warning(
                        "Operation #%s was accepted but no longer claimed; not counted as synced",
                        operation.id,
                    )
                return result

            landed = self.queue.mark_failed(
                operation.id, result.message or result.outcome, permanent=result.permanent
            )
        except QueueError as exc:
            counters.failed += 1
            self._report_error(exc, started, counters.processed, operation.id)
            self._release(operation)
            return result

        counters.failed += 1
        if landed == SyncStatus.ABANDONED:
            counters.abandoned += 1
        self.logger.warning(
            "Operation #%s (%s) failed [%s] -> %s: %s",
            operation.id,
            operation.operation_type,
            result.outcome,
            landed,
            result.message,
        )
        return result

    def _send(self, operation: PendingOperation) -> SyncResult:
        if not operation.payload:
            return SyncResult(SyncOutcome.PERMANENT, "Stored payload is unreadable")
        if operation.operation_type == OperationType.REGISTRATION:
            results = self.client.sync_registrations([operation.payload])
        elif operation.operation_type == OperationType.VERIFICATION:
            results = self.client.sync_verifications([operation.payload])
        else:
            return SyncResult(
                SyncOutcome.PERMANENT, f"Unknown operation type: {operation.operation_type}"
            )
        if not results:
            return SyncResult(SyncOutcome.RETRYABLE, "Server returned no result for the operation")
        return results[0]

    # ------------------------------------------------------------------
    # helpers
    def _release(self, operation: PendingOperation) -> None:
        try:
            self.queue.release_claim(operation.id, operation.sync_status)
        except QueueError as exc:
            self.logger.error(
                "Operation #%s stays in_progress until the next startup sweep: %s", operation.id, exc
            )

    def _is_online(self) -> bool:
        try:
            return bool(self.connectivity.is_online())
        except Exception as exc:
            self.logger.warning("Connectivity check failed: %s", exc)
            return False

    def _skip(self, reason: str, at: datetime, trigger: str) -> None:
        self.logger.info("Queue processing skipped (%s, %s trigger)", reason, trigger)
        if trigger == "manual" and self.history is not None:
            self.history.record("manual_process", "skip", started_at=at, error=f"Skipped - {reason}")
        self._events.emit(PROCESSING_SKIPPED, ProcessingSkipped(reason, at, trigger))

    def _report_error(
        self,
        error: BaseException,
        started: datetime,
        processed: int,
        operation_id: Optional[int] = None,
    ) -> None:
        self.logger.error("Queue processing error (operation %s): %s", operation_id, error)
        self._events.emit(
            PROCESSING_ERROR, ProcessingErrorInfo(error, started, processed, operation_id)
        )

    def _journal(
        self,
        started: datetime,
        counters: _CycleCounters,
        *,
        error: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> None:
        if self.history is None:
            return
        self.history.record(
            "background_queue",
            "upload",
            started_at=started,
            completed_at=completed_at,
            records=counters.processed,
            success=counters.success,
            failed=counters.failed,
            error=error,
        )


__all__ = [
    "BackgroundProcessor",
    "EVENTS",
    "PROCESSING_COMPLETED",
    "PROCESSING_ERROR",
    "PROCESSING_SKIPPED",
    "PROCESSING_STARTED",
    "ProcessingErrorInfo",
    "ProcessingSkipped",
    "ProcessingStarted",
    "ProcessingSummary",
    "SKIP_NOT_AUTHENTICATED",
    "SKIP_OFFLINE",
]
