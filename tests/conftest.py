import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import List

import pytest

from core.settings import SYNC
from models.payloads import MATCH, RegistrationPayload, VerificationPayload
from services.queue_manager import QueueManager
from services.sync_client import SyncOutcome, SyncResult
from services.sync_history import SyncHistory
from storage.db import create_db_engine, init_db, make_session_factory


@pytest.fixture()
def engine(tmp_path):
    engine = create_db_engine(tmp_path / "queue.db")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture()
def settings():
    return replace(SYNC, auto_sync_enabled=False, max_attempts=3, batch_size=20)


@pytest.fixture()
def history(session_factory):
    return SyncHistory(session_factory)


@pytest.fixture()
def queue(session_factory, settings, history):
    return QueueManager(session_factory, settings=settings, history=history)


def make_registration(roll: str = "R-001", **overrides) -> RegistrationPayload:
    values = dict(
        student_id=1,
        roll_number=roll,
        fingerprint_template="dGVtcGxhdGU=",
        quality_score=80,
        captured_at=datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc),
        operator_id=7,
        operator_name="Operator",
    )
    values.update(overrides)
    return RegistrationPayload(**values)


def make_verification(roll: str = "R-001", **overrides) -> VerificationPayload:
    values = dict(
        roll_number=roll,
        match_result=MATCH,
        confidence_score=92.5,
        entry_allowed=True,
        student_id=1,
        verified_at=datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc),
        verifier_id=3,
        verifier_name="Gate 1",
    )
    values.update(overrides)
    return VerificationPayload(**values)


class FakeSyncClient:
    """Scripted stand-in for :class:`services.sync_client.SyncClient`."""

    def __init__(self, outcome: str = SyncOutcome.SUCCESS, message: str = "ok"):
        self.outcome = outcome
        self.message = message
        self.calls: List[tuple] = []
        self.per_roll = {}
        self.gate = None
        self.entered = threading.Event()

    def _answer(self, kind, batch):
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        results = []
        for payload in batch:
            self.calls.append((kind, payload.get("roll_number")))
            outcome, message = self.per_roll.get(payload.get("roll_number"), (self.outcome, self.message))
            if isinstance(outcome, Exception):
                raise outcome
            results.append(SyncResult(outcome, message))
        return results

    def sync_registrations(self, batch):
        return self._answer("registration", batch)

    def sync_verifications(self, batch):
        return self._answer("verification", batch)


class FakeConnectivity:
    def __init__(self, online: bool = True):
        self.online = online
        self.last_state = online

    def is_online(self) -> bool:
        return self.online


class FakeTokens:
    def __init__(self, valid: bool = True):
        self.valid = valid

    def has_valid_token(self) -> bool:
        return self.valid
