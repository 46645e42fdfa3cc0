from datetime import datetime, timedelta, timezone

import pytest

from smart_attendance.errors import DuplicateActiveSession, SessionClosed, SessionNotFound
from smart_attendance.models import EligibleStudent
from smart_attendance.registry import SessionRegistry

T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class StaticRoster:
    def __init__(self):
        self.calls = 0

    def get_eligible_students(self, schedule_id):
        self.calls += 1
        return [EligibleStudent(1, "Asha Rao", "R001"), EligibleStudent(2, "Bilal Khan", "R002")]


class RecordingLedger:
    def __init__(self):
        self.commits = []

    def commit(self, session_id, schedule_id, verdicts):
        self.commits.append(session_id)


@pytest.fixture()
def registry():
    return SessionRegistry(
        StaticRoster(),
        qr_validity_seconds=60,
        face_threshold=0.6,
        geofence_radius=100.0,
        verify_timeout_seconds=30.0,
    )


def test_create_session_snapshots_roster(registry):
    session = registry.create_session(7, 3, 12.97, 77.59, now=T0)
    snapshot = session.snapshot(T0)
    assert snapshot.status == "qr_active"
    assert snapshot.session.qr_expires_at == T0 + timedelta(seconds=60)
    assert [s.student_id for s in snapshot.roster] == [1, 2]
    assert registry.get(session.session_id) is session


def test_second_session_for_schedule_is_rejected(registry):
    first = registry.create_session(7, 3, 12.97, 77.59, now=T0)
    with pytest.raises(DuplicateActiveSession) as info:
        registry.create_session(7, 3, 12.97, 77.59, now=T0 + timedelta(seconds=5))
    assert info.value.session_id == first.session_id
    assert info.value.schedule_id == 7

    # Other schedules are unaffected.
    registry.create_session(8, 3, 12.97, 77.59, now=T0)
    assert registry.live_count() == 2


def test_force_new_supersedes_previous_session(registry):
    first = registry.create_session(7, 3, 12.97, 77.59, now=T0)
    first.record_scan(1, 10.0, 0.9, T0 + timedelta(seconds=2))

    second = registry.create_session(7, 3, 12.97, 77.59, force_new=True, now=T0 + timedelta(seconds=10))

    assert first.status(T0 + timedelta(seconds=10)) == "superseded"
    assert first.snapshot(T0).session.superseded_by == second.session_id
    with pytest.raises(SessionClosed):
        first.record_scan(2, 10.0, 0.9, T0 + timedelta(seconds=11))
    ledger = RecordingLedger()
    with pytest.raises(SessionClosed):
        first.finalize(ledger, T0 + timedelta(seconds=11))
    assert ledger.commits == []
    assert first.snapshot(T0 + timedelta(seconds=11)).scans.verified == 1

    record, _ = second.record_scan(2, 10.0, 0.9, T0 + timedelta(seconds=11))
    assert record.status == "verified"
    assert registry.live_count() == 1
    assert registry.get(first.session_id) is first


def test_expired_session_with_evidence_keeps_blocking(registry):
    first = registry.create_session(7, 3, 12.97, 77.59, now=T0)
    first.record_scan(1, 10.0, 0.9, T0 + timedelta(seconds=2))

    with pytest.raises(DuplicateActiveSession):
        registry.create_session(7, 3, 12.97, 77.59, now=T0 + timedelta(minutes=5))


def test_expired_empty_session_is_replaced(registry):
    first = registry.create_session(7, 3, 12.97, 77.59, now=T0)
    second = registry.create_session(7, 3, 12.97, 77.59, now=T0 + timedelta(minutes=5))
    assert first.status(T0 + timedelta(minutes=5)) == "superseded"
    assert {s.session_id for s in registry.sessions_for_schedule(7)} == {first.session_id, second.session_id}


def test_retire_moves_session_to_archive(registry):
    session = registry.create_session(7, 3, 12.97, 77.59, now=T0)
    registry.retire(session.session_id)
    registry.retire(session.session_id)
    assert registry.live_count() == 0
    assert registry.get(session.session_id) is session


def test_unknown_session(registry):
    with pytest.raises(SessionNotFound):
        registry.get("missing")
