from datetime import datetime, timezone

from smart_attendance.models import EligibleStudent, PhotoMatchEvent
from smart_attendance.reconcile import reconcile, tally

T0 = datetime(2026, 3, 2, 9, 5, 0, tzinfo=timezone.utc)

ROSTER = [
    EligibleStudent(1, "Asha Rao", "R001"),
    EligibleStudent(2, "Bilal Khan", "R002"),
    EligibleStudent(3, "Chen Wei", "R003"),
]


def _photo(*ids: int) -> PhotoMatchEvent:
    return PhotoMatchEvent(captured_at=T0, matched_student_ids=frozenset(ids), detected_faces_count=len(ids))


def _by_id(verdicts):
    return {v.student_id: v for v in verdicts}


def test_scan_and_photo_is_present():
    verdicts = _by_id(reconcile(ROSTER, [1], _photo(1)))
    assert verdicts[1].status == "present"
    assert verdicts[1].reason == "verified in both scan & photo"
    assert verdicts[1].verification_status == "both"


def test_scan_without_photo_match_is_absent():
    verdicts = _by_id(reconcile(ROSTER, [2], _photo(1)))
    assert verdicts[2].status == "absent"
    assert verdicts[2].reason == "not detected in class photo"
    assert verdicts[2].verification_status == "scan-only"


def test_photo_without_scan_is_absent():
    # A photo match on its own never grants presence.
    verdicts = _by_id(reconcile(ROSTER, [], _photo(3)))
    assert verdicts[3].status == "absent"
    assert verdicts[3].reason == "did not scan QR code"
    assert verdicts[3].verification_status == "photo-only"


def test_no_evidence_is_absent():
    verdicts = _by_id(reconcile(ROSTER, [], _photo()))
    assert all(v.status == "absent" for v in verdicts.values())
    assert verdicts[1].verification_status == "none"


def test_missing_photo_is_flagged_in_reason():
    verdicts = _by_id(reconcile(ROSTER, [1], None))
    assert verdicts[1].status == "absent"
    assert "class photo not captured" in verdicts[1].reason


def test_override_wins_unconditionally():
    verdicts = _by_id(reconcile(ROSTER, [1], _photo(1), {1: "absent", 3: "present"}))
    assert verdicts[1].status == "absent"
    assert verdicts[1].manually_marked is True
    assert verdicts[1].reason == "manually adjusted by teacher"
    assert verdicts[3].status == "present"
    assert verdicts[2].manually_marked is False


def test_one_verdict_per_student_in_roster_order():
    verdicts = reconcile(ROSTER, [3, 1, 1], _photo(1, 3))
    assert [v.student_id for v in verdicts] == [1, 2, 3]


def test_verified_scanner_outside_roster_is_included():
    verdicts = reconcile(ROSTER, [9, 1], _photo(9))
    assert [v.student_id for v in verdicts] == [1, 2, 3, 9]
    drift = verdicts[-1]
    assert drift.student_name == "Student 9"
    assert drift.status == "present"


def test_reconcile_is_deterministic():
    photo = _photo(1, 2)
    overrides = {3: "present"}
    first = reconcile(ROSTER, [1, 2], photo, overrides)
    second = reconcile(ROSTER, [1, 2], photo, overrides)
    assert first == second
    assert overrides == {3: "present"}


def test_tally_counts():
    verdicts = reconcile(ROSTER, [1, 2], _photo(1, 3), {2: "present"})
    counts = tally(verdicts)
    assert counts == {
        "present": 2,
        "absent": 1,
        "total_students": 3,
        "scanned": 2,
        "detected_in_photo": 2,
        "cross_verified": 1,
        "manually_marked": 1,
    }
