from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy import update

from conftest import make_registration, make_verification
from datetime_utils import utc_now
from models.sync_operation import INTERRUPTED_ERROR, OperationType, SyncOperation, SyncStatus
from services.errors import InvalidTransitionError, NotFoundError, StorageError, ValidationError
from services.queue_manager import QueueManager


def _fail_once(queue, op_id, message="HTTP 503", permanent=False):
    assert queue.claim_operation(op_id) is True
    return queue.mark_failed(op_id, message, permanent=permanent)


def test_enqueue_registration_increments_pending_only(queue):
    before = queue.get_queue_statistics()
    op_id = queue.queue_fingerprint_registration(make_registration())
    after = queue.get_queue_statistics()

    assert op_id > 0
    assert after.pending_count == before.pending_count + 1
    assert after.synced_count == before.synced_count
    assert after.pending_registrations == 1
    assert after.pending_verifications == 0


def test_enqueued_operation_starts_pending_with_fresh_budget(queue, settings):
    op_id = queue.queue_fingerprint_verification(make_verification())
    op = queue.get_operation(op_id)

    assert op.operation_type == OperationType.VERIFICATION
    assert op.sync_status == SyncStatus.PENDING
    assert op.sync_attempts == 0
    assert op.max_attempts == settings.max_attempts
    assert op.last_error is None
    assert op.completed_at is None
    assert op.payload["roll_number"] == "R-001"
    assert op.payload["verified_at"] == "2024-05-01T10:00:00Z"
    assert op.created_at.tzinfo is not None


@pytest.mark.parametrize(
    "payload",
    [
        make_registration(roll="   "),
        make_registration(fingerprint_template=""),
        make_registration(quality_score=101),
        make_registration(roll=12345),
        make_registration(fingerprint_template=None),
    ],
)
def test_invalid_registration_is_rejected_and_not_stored(queue, payload):
    with pytest.raises(ValidationError):
        queue.queue_fingerprint_registration(payload)
    assert queue.get_queue_statistics().pending_count == 0


def test_invalid_verification_is_rejected(queue):
    with pytest.raises(ValidationError):
        queue.queue_fingerprint_verification(make_verification(match_result="maybe"))
    with pytest.raises(ValidationError):
        queue.queue_fingerprint_verification(make_verification(roll=404))
    with pytest.raises(ValidationError):
        queue.queue_fingerprint_registration(make_verification())


def test_oversized_payload_is_rejected(session_factory, settings):
    small = QueueManager(session_factory, settings=replace(settings, max_payload_bytes=200))
    with pytest.raises(ValidationError):
        small.queue_fingerprint_registration(make_registration(fingerprint_template="x" * 500))


def test_get_operation_unknown_id(queue):
    with pytest.raises(NotFoundError):
        queue.get_operation(9999)


def test_retryable_operations_are_oldest_first(queue):
    ids = [queue.queue_fingerprint_registration(make_registration(roll=f"R-{i}")) for i in range(3)]
    listed = queue.get_retryable_operations()
    assert [op.id for op in listed] == ids
    assert [op.id for op in queue.get_retryable_operations(limit=2)] == ids[:2]


def test_failures_until_budget_exhausted_abandon(queue, settings):
    op_id = queue.queue_fingerprint_registration(make_registration())

    landed = [_fail_once(queue, op_id) for _ in range(settings.max_attempts)]

    assert landed == [SyncStatus.ERROR] * (settings.max_attempts - 1) + [SyncStatus.ABANDONED]
    op = queue.get_operation(op_id)
    assert op.sync_status == SyncStatus.ABANDONED
    assert op.sync_attempts == settings.max_attempts
    assert op.last_error == "HTTP 503"
    assert op_id not in [o.id for o in queue.get_retryable_operations()]
    assert queue.claim_operation(op_id) is False


def test_permanent_failure_abandons_immediately(queue):
    op_id = queue.queue_fingerprint_verification(make_verification())
    assert _fail_once(queue, op_id, "roll_number: unknown", permanent=True) == SyncStatus.ABANDONED
    op = queue.get_operation(op_id)
    assert op.sync_attempts == 1
    assert op.sync_status == SyncStatus.ABANDONED


def test_reset_abandoned_makes_it_eligible_and_keeps_history(queue, settings):
    op_id = queue.queue_fingerprint_registration(make_registration())
    for _ in range(settings.max_attempts):
        _fail_once(queue, op_id, "boom")

    queue.reset_operation_for_retry(op_id)

    op = queue.get_operation(op_id)
    assert op.sync_status == SyncStatus.PENDING
    assert op.sync_attempts == settings.max_attempts
    assert op.last_error == "boom"
    assert op.remaining_attempts == settings.max_attempts
    assert op_id in [o.id for o in queue.get_retryable_operations()]


def test_reset_error_row_and_pending_noop(queue):
    op_id = queue.queue_fingerprint_registration(make_registration())
    queue.reset_operation_for_retry(op_id)
    assert queue.get_operation(op_id).sync_status == SyncStatus.PENDING

    _fail_once(queue, op_id)
    queue.reset_operation_for_retry(op_id)
    assert queue.get_operation(op_id).sync_status == SyncStatus.PENDING


def test_reset_rejects_in_progress_and_synced(queue):
    op_id = queue.queue_fingerprint_registration(make_registration())
    assert queue.claim_operation(op_id)
    with pytest.raises(InvalidTransitionError):
        queue.reset_operation_for_retry(op_id)

    assert queue.mark_synced(op_id)
    with pytest.raises(InvalidTransitionError):
        queue.reset_operation_for_retry(op_id)

    with pytest.raises(NotFoundError):
        queue.reset_operation_for_retry(424242)


def test_claim_is_exclusive(session_factory, settings):
    first = QueueManager(session_factory, settings=settings)
    second = QueueManager(session_factory, settings=settings)
    op_id = first.queue_fingerprint_registration(make_registration())

    assert first.claim_operation(op_id) is True
    assert second.claim_operation(op_id) is False
    assert first.get_operation(op_id).sync_status == SyncStatus.IN_PROGRESS


def test_mark_synced_sets_completion(queue):
    op_id = queue.queue_fingerprint_registration(make_registration())
    _fail_once(queue, op_id)
    queue.claim_operation(op_id)
    assert queue.mark_synced(op_id) is True

    op = queue.get_operation(op_id)
    assert op.sync_status == SyncStatus.SYNCED
    assert op.sync_attempts == 2
    assert op.last_error is None
    assert op.completed_at is not None
    # only in-progress rows can be completed
    assert queue.mark_synced(op_id) is False


def _backdate_completion(session_factory, op_id, days):
    with session_factory() as session:
        session.execute(
            update(SyncOperation)
            .where(SyncOperation.id == op_id)
            .values(completed_at=utc_now() - timedelta(days=days)),
            execution_options={"synchronize_session": False},
        )
        session.commit()


def test_cleanup_only_deletes_old_synced_rows(queue, session_factory, history):
    old_synced = queue.queue_fingerprint_registration(make_registration(roll="old"))
    new_synced = queue.queue_fingerprint_registration(make_registration(roll="new"))
    pending = queue.queue_fingerprint_registration(make_registration(roll="pending"))
    abandoned = queue.queue_fingerprint_verification(make_verification(roll="gone"))

    for op_id in (old_synced, new_synced):
        queue.claim_operation(op_id)
        queue.mark_synced(op_id)
    _fail_once(queue, abandoned, "rejected", permanent=True)
    _backdate_completion(session_factory, old_synced, 10)

    deleted = queue.cleanup_completed_operations(7)

    assert deleted == 1
    with pytest.raises(NotFoundError):
        queue.get_operation(old_synced)
    assert queue.get_operation(new_synced).sync_status == SyncStatus.SYNCED
    assert queue.get_operation(pending).sync_status == SyncStatus.PENDING
    assert queue.get_operation(abandoned).sync_status == SyncStatus.ABANDONED

    journal = history.recent()
    assert journal[0].sync_type == "queue_cleanup"
    assert journal[0].records_count == 1


def test_cleanup_rejects_negative_days(queue):
    with pytest.raises(ValidationError):
        queue.cleanup_completed_operations(-1)


def test_recover_interrupted_moves_in_progress_to_error(session_factory, settings):
    before_restart = QueueManager(session_factory, settings=settings)
    op_id = before_restart.queue_fingerprint_registration(make_registration())
    before_restart.claim_operation(op_id)

    after_restart = QueueManager(session_factory, settings=settings)
    assert after_restart.recover_interrupted_operations() == 1

    op = after_restart.get_operation(op_id)
    assert op.sync_status == SyncStatus.ERROR
    assert op.last_error == INTERRUPTED_ERROR
    assert op.sync_attempts == 0
    assert op_id in [o.id for o in after_restart.get_retryable_operations()]


def test_failed_and_by_type_queries(queue):
    reg = queue.queue_fingerprint_registration(make_registration())
    ver = queue.queue_fingerprint_verification(make_verification())
    _fail_once(queue, ver)

    assert [op.id for op in queue.get_failed_operations()] == [ver]
    assert [op.id for op in queue.get_operations_by_type(OperationType.REGISTRATION)] == [reg]
    assert queue.get_operations_by_type(OperationType.VERIFICATION, SyncStatus.PENDING) == []
    with pytest.raises(ValueError):
        queue.get_operations_by_type("enrolment")


def test_statistics_counts_every_status(queue):
    a = queue.queue_fingerprint_registration(make_registration(roll="a"))
    b = queue.queue_fingerprint_registration(make_registration(roll="b"))
    queue.queue_fingerprint_verification(make_verification(roll="c"))
    queue.claim_operation(a)
    queue.claim_operation(b)
    queue.mark_synced(b)

    stats = queue.get_queue_statistics()
    assert stats.pending_count == 1
    assert stats.pending_verifications == 1
    assert stats.in_progress_count == 1
    assert stats.synced_count == 1
    assert stats.outstanding_count == 2


def test_storage_failure_is_wrapped(queue, engine):
    with engine.begin() as conn:
        conn.exec_driver_sql("DROP TABLE syncoperation")
    with pytest.raises(StorageError):
        queue.get_queue_statistics()


def test_release_claim_restores_previous_status(queue):
    op_id = queue.queue_fingerprint_registration(make_registration())
    _fail_once(queue, op_id)
    assert queue.claim_operation(op_id)

    assert queue.release_claim(op_id, SyncStatus.ERROR) is True

    op = queue.get_operation(op_id)
    assert op.sync_status == SyncStatus.ERROR
    assert op.sync_attempts == 1
    # only an in-progress row can be released
    assert queue.release_claim(op_id, SyncStatus.PENDING) is False
    with pytest.raises(InvalidTransitionError):
        queue.release_claim(op_id, SyncStatus.SYNCED)


def test_timestamps_are_stored_and_read_as_utc(queue):
    before = utc_now()
    op_id = queue.queue_fingerprint_registration(make_registration())
    queue.claim_operation(op_id)
    queue.mark_synced(op_id)
    after = utc_now()

    op = queue.get_operation(op_id)
    for stamp in (op.created_at, op.last_sync_attempt, op.completed_at):
        assert stamp.utcoffset() == timedelta(0)
        assert before - timedelta(seconds=1) <= stamp <= after + timedelta(seconds=1)
