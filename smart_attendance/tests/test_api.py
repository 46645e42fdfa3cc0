from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

import database.db as db
import smart_attendance.config as config
import smart_attendance.main as main
from smart_attendance.routers.smart_attendance import get_now
from smart_attendance.services.attendance import reset_service

SCHEDULE_ID = 7
TEACHER_ID = 3
CLASSROOM = {"lat": 12.9716, "lng": 77.5946}


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def client(tmp_path, monkeypatch, clock):
    test_db = tmp_path / "smart_attendance_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)
    monkeypatch.setattr(main, "LOG_DIR", None)

    db.create_tables()
    reset_service()
    main.app.dependency_overrides[get_now] = lambda: clock.now

    with TestClient(main.app) as c:
        yield c

    main.app.dependency_overrides.clear()
    reset_service()


def _create_student(client, name: str, roll_number: str) -> int:
    res = client.post("/students", json={"name": name, "roll_number": roll_number})
    assert res.status_code == 200
    return res.json()["id"]


@pytest.fixture()
def roster(client):
    ids = [
        _create_student(client, "Asha Rao", "R001"),
        _create_student(client, "Bilal Khan", "R002"),
        _create_student(client, "Chen Wei", "R003"),
    ]
    res = client.post(f"/schedules/{SCHEDULE_ID}/students", json={"studentIds": ids})
    assert res.status_code == 200
    return ids


def _open_session(client, **extra) -> dict:
    res = client.post(
        "/smart-attendance/generate-qr",
        json={"scheduleId": SCHEDULE_ID, "teacherId": TEACHER_ID, **CLASSROOM, **extra},
    )
    assert res.status_code == 201, res.json()
    return res.json()


def _scan(client, session_id: str, student_id: int, confidence: float = 0.92, distance: float = 12.0):
    return client.post(
        "/smart-attendance/scan",
        json={
            "sessionId": session_id,
            "studentId": student_id,
            "faceConfidence": confidence,
            "distance": distance,
        },
    )


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_attendance_config_reports_defaults(client):
    res = client.get("/config/attendance")
    assert res.status_code == 200
    payload = res.json()
    assert payload["qr_validity_seconds"] == config.QR_VALIDITY_SECONDS
    assert payload["geofence_radius_meters"] == config.GEOFENCE_RADIUS_METERS
    assert payload["face_match_threshold"] == config.FACE_MATCH_THRESHOLD
    assert payload["allow_photo_recapture"] is False


def test_create_student_and_enroll(client, roster):
    res = client.get(f"/schedules/{SCHEDULE_ID}/students")
    assert res.status_code == 200
    rows = res.json()
    assert [r["id"] for r in rows] == roster
    assert rows[0]["roll_number"] == "R001"

    res = client.post("/students", json={"name": "Dup", "roll_number": "R001"})
    assert res.status_code == 409
    assert res.json()["detail"] == "Roll number already exists."


def test_enroll_unknown_student_is_rejected(client):
    res = client.post(f"/schedules/{SCHEDULE_ID}/students", json={"studentIds": [999]})
    assert res.status_code == 404


def test_register_face_limits_and_delete(client, roster, monkeypatch):
    monkeypatch.setattr(config, "MAX_FACES_PER_STUDENT", 2)
    student_id = roster[0]

    res = client.post("/smart-attendance/register-face", json={"studentId": 999, "faceDescriptor": [1.0, 0.0]})
    assert res.status_code == 404

    face_ids = []
    for _ in range(2):
        res = client.post(
            "/smart-attendance/register-face",
            json={"studentId": student_id, "faceDescriptor": [1.0, 0.0, 0.0]},
        )
        assert res.status_code == 201
        face_ids.append(res.json()["faceId"])

    res = client.post(
        "/smart-attendance/register-face",
        json={"studentId": student_id, "faceDescriptor": [1.0, 0.0, 0.0]},
    )
    assert res.status_code == 400
    assert "Maximum 2 faces" in res.json()["detail"]

    res = client.delete(f"/smart-attendance/face/{face_ids[0]}")
    assert res.status_code == 200
    res = client.delete(f"/smart-attendance/face/{face_ids[0]}")
    assert res.status_code == 404

    res = client.get(f"/smart-attendance/student/{student_id}/faces")
    assert res.status_code == 200
    body = res.json()
    assert body["totalFaces"] == 1
    assert body["faces"][0]["descriptorLength"] == 3


def test_full_session_cross_verifies_scan_and_photo(client, roster, clock):
    asha, bilal, chen = roster
    created = _open_session(client)
    session_id = created["sessionId"]
    assert created["status"] == "qr_active"
    assert created["eligibleCount"] == 3

    res = client.post("/smart-attendance/validate-qr", json={"qrToken": created["qrToken"]})
    assert res.status_code == 200
    assert res.json()["session"]["sessionId"] == session_id

    clock.advance(5)
    assert _scan(client, session_id, asha).json()["status"] == "verified"
    assert _scan(client, session_id, bilal).json()["status"] == "verified"

    res = client.post(
        "/smart-attendance/photo-capture",
        json={"sessionId": session_id, "matchedStudentIds": [asha, chen], "detectedFacesCount": 2},
    )
    assert res.status_code == 201
    assert res.json()["matchedStudentIds"] == sorted([asha, chen])

    res = client.get(f"/smart-attendance/session/{session_id}/status")
    assert res.status_code == 200
    status = res.json()
    assert status["session"]["status"] == "photo_captured"
    assert status["scans"]["verified"] == 2
    assert status["summary"]["present"] == 1

    res = client.post("/smart-attendance/finalize", json={"sessionId": session_id})
    assert res.status_code == 200
    body = res.json()
    records = {r["studentId"]: r for r in body["attendanceRecords"]}
    assert records[asha]["status"] == "present"
    assert records[asha]["verificationStatus"] == "both"
    assert records[bilal]["status"] == "absent"
    assert records[bilal]["reason"] == "not detected in class photo"
    assert records[chen]["status"] == "absent"
    assert records[chen]["reason"] == "did not scan QR code"
    assert records[chen]["verificationStatus"] == "photo-only"
    assert body["summary"]["present"] == 1
    assert body["summary"]["crossVerifiedCount"] == 1

    res = client.get(f"/smart-attendance/session/{session_id}/records")
    assert res.status_code == 200
    ledger = res.json()
    assert len(ledger["records"]) == 3
    assert {n["studentId"] for n in ledger["notifications"]} == {bilal, chen}

    res = client.get(f"/smart-attendance/session/{session_id}/status")
    assert res.json()["session"]["status"] == "finalized"


def test_finalize_twice_is_rejected(client, roster):
    session_id = _open_session(client)["sessionId"]
    _scan(client, session_id, roster[0])

    assert client.post("/smart-attendance/finalize", json={"sessionId": session_id}).status_code == 200
    res = client.post("/smart-attendance/finalize", json={"sessionId": session_id})
    assert res.status_code == 409
    assert res.json()["code"] == "ALREADY_FINALIZED"

    res = client.get(f"/smart-attendance/session/{session_id}/records")
    assert len(res.json()["records"]) == 3


def test_finalize_without_photo_marks_scanned_students_absent(client, roster):
    session_id = _open_session(client)["sessionId"]
    _scan(client, session_id, roster[0])

    res = client.post("/smart-attendance/finalize", json={"sessionId": session_id})
    assert res.status_code == 200
    body = res.json()
    first = body["attendanceRecords"][0]
    assert first["status"] == "absent"
    assert "class photo not captured" in first["reason"]
    assert body["summary"]["photoCaptured"] is False


def test_finalize_requires_photo_when_configured(client, roster, monkeypatch):
    monkeypatch.setattr(config, "REQUIRE_CLASS_PHOTO", True)
    reset_service()
    session_id = _open_session(client)["sessionId"]

    res = client.post("/smart-attendance/finalize", json={"sessionId": session_id})
    assert res.status_code == 409
    assert res.json()["code"] == "PHOTO_REQUIRED"


def test_duplicate_session_and_force_new(client, roster):
    first = _open_session(client)["sessionId"]
    assert _scan(client, first, roster[0]).json()["status"] == "verified"

    res = client.post(
        "/smart-attendance/generate-qr",
        json={"scheduleId": SCHEDULE_ID, "teacherId": TEACHER_ID, **CLASSROOM},
    )
    assert res.status_code == 409
    body = res.json()
    assert body["code"] == "DUPLICATE_ACTIVE_SESSION"
    assert body["existingSessionId"] == first

    second = _open_session(client, forceNew=True)["sessionId"]
    assert second != first

    res = client.get(f"/smart-attendance/session/{first}/status")
    assert res.json()["session"]["status"] == "superseded"
    assert res.json()["session"]["supersededBy"] == second

    res = _scan(client, first, roster[0])
    assert res.status_code == 409
    assert res.json()["code"] == "SESSION_CLOSED"

    res = client.post("/smart-attendance/finalize", json={"sessionId": first})
    assert res.status_code == 409
    assert res.json()["code"] == "SESSION_CLOSED"

    # Evidence gathered before the switch stays on the old session.
    old_scans = client.get(f"/smart-attendance/session/{first}/status").json()["scans"]
    assert old_scans["verified"] == 1
    assert old_scans["records"][0]["status"] == "verified"

    assert _scan(client, second, roster[0]).status_code == 201


def test_scan_after_qr_expiry_is_refused(client, roster, clock):
    created = _open_session(client)
    clock.advance(config.QR_VALIDITY_SECONDS + 1)

    res = _scan(client, created["sessionId"], roster[0])
    assert res.status_code == 403
    assert res.json()["code"] == "SESSION_EXPIRED"

    res = client.post("/smart-attendance/validate-qr", json={"qrToken": created["qrToken"]})
    assert res.status_code == 401
    assert res.json()["code"] == "INVALID_QR_TOKEN"

    res = client.get(f"/smart-attendance/session/{created['sessionId']}/status")
    assert res.json()["session"]["status"] == "expired"
    assert res.json()["session"]["remainingSeconds"] == 0


def test_expired_session_without_scans_does_not_block(client, roster, clock):
    first = _open_session(client)["sessionId"]
    clock.advance(config.QR_VALIDITY_SECONDS + 1)

    second = _open_session(client)["sessionId"]
    res = client.get(f"/smart-attendance/session/{first}/status")
    assert res.json()["session"]["status"] == "superseded"
    assert second != first


def test_rejected_scans_and_duplicates(client, roster):
    session_id = _open_session(client)["sessionId"]
    asha = roster[0]

    res = _scan(client, session_id, asha, confidence=0.3)
    assert res.json()["status"] == "rejected"
    assert res.json()["reason"] == "low_confidence"

    res = _scan(client, session_id, asha, distance=450.0)
    assert res.json()["reason"] == "out_of_range"

    first = _scan(client, session_id, asha).json()
    assert first["status"] == "verified"
    assert first["duplicate"] is False

    again = _scan(client, session_id, asha).json()
    assert again["duplicate"] is True
    assert again["scanId"] == first["scanId"]
    assert again["status"] == "verified"

    status = client.get(f"/smart-attendance/session/{session_id}/status").json()
    assert status["scans"]["total"] == 1
    assert status["scans"]["verified"] == 1


def test_scan_requires_location(client, roster):
    session_id = _open_session(client)["sessionId"]
    res = client.post(
        "/smart-attendance/scan",
        json={"sessionId": session_id, "studentId": roster[0], "faceConfidence": 0.9},
    )
    assert res.status_code == 400


def test_scan_with_coordinates_uses_geofence(client, roster):
    session_id = _open_session(client)["sessionId"]
    near = client.post(
        "/smart-attendance/scan",
        json={
            "sessionId": session_id,
            "studentId": roster[0],
            "faceConfidence": 0.9,
            "locationLat": CLASSROOM["lat"] + 0.0002,
            "locationLng": CLASSROOM["lng"],
        },
    )
    assert near.json()["status"] == "verified"

    far = client.post(
        "/smart-attendance/scan",
        json={
            "sessionId": session_id,
            "studentId": roster[1],
            "faceConfidence": 0.9,
            "locationLat": CLASSROOM["lat"] + 0.01,
            "locationLng": CLASSROOM["lng"],
        },
    )
    assert far.json()["status"] == "rejected"
    assert far.json()["reason"] == "out_of_range"


def test_verify_face_against_registered_descriptor(client, roster):
    asha, bilal, _ = roster
    client.post("/smart-attendance/register-face", json={"studentId": asha, "faceDescriptor": [1.0, 0.0, 0.0]})
    client.post("/smart-attendance/register-face", json={"studentId": bilal, "faceDescriptor": [0.0, 1.0, 0.0]})
    session_id = _open_session(client)["sessionId"]

    res = client.post(
        "/smart-attendance/verify-face",
        json={"sessionId": session_id, "studentId": asha, "faceDescriptor": [0.98, 0.1, 0.0], "distance": 5},
    )
    assert res.status_code == 201
    assert res.json()["status"] == "verified"

    # Asha's face presented for Bilal.
    res = client.post(
        "/smart-attendance/verify-face",
        json={"sessionId": session_id, "studentId": bilal, "faceDescriptor": [1.0, 0.0, 0.0], "distance": 5},
    )
    assert res.json()["status"] == "rejected"
    assert res.json()["reason"] == "low_confidence"


def test_process_class_photo_matches_roster_faces(client, roster):
    asha, bilal, chen = roster
    client.post("/smart-attendance/register-face", json={"studentId": asha, "faceDescriptor": [1.0, 0.0, 0.0]})
    client.post("/smart-attendance/register-face", json={"studentId": bilal, "faceDescriptor": [0.0, 1.0, 0.0]})
    session_id = _open_session(client)["sessionId"]
    _scan(client, session_id, asha)
    _scan(client, session_id, bilal)

    res = client.post(
        "/smart-attendance/process-class-photo",
        json={
            "sessionId": session_id,
            "detectedFaces": [
                {"descriptor": [0.99, 0.05, 0.0]},
                {"descriptor": [0.0, 0.0, 1.0]},
            ],
        },
    )
    assert res.status_code == 201
    body = res.json()
    assert body["matchedStudentIds"] == [asha]
    assert body["capture"]["detectedFacesCount"] == 2

    res = client.post(
        "/smart-attendance/photo-capture",
        json={"sessionId": session_id, "matchedStudentIds": [bilal]},
    )
    assert res.status_code == 409
    assert res.json()["code"] == "PHOTO_ALREADY_CAPTURED"

    res = client.post("/smart-attendance/finalize", json={"sessionId": session_id})
    records = {r["studentId"]: r["status"] for r in res.json()["attendanceRecords"]}
    assert records == {asha: "present", bilal: "absent", chen: "absent"}


def test_overrides_update_and_finalize(client, roster):
    asha, bilal, chen = roster
    session_id = _open_session(client)["sessionId"]

    res = client.put(
        f"/smart-attendance/session/{session_id}/overrides",
        json={"studentStatuses": [{"studentId": 999, "status": "present"}]},
    )
    assert res.status_code == 400
    assert res.json()["code"] == "STUDENT_NOT_ELIGIBLE"

    res = client.put(
        f"/smart-attendance/session/{session_id}/overrides",
        json={"studentStatuses": [{"studentId": chen, "status": "present"}]},
    )
    assert res.status_code == 200
    assert res.json()["overrides"] == [{"studentId": chen, "status": "present"}]

    res = client.post(
        "/smart-attendance/finalize",
        json={"sessionId": session_id, "studentStatuses": [{"studentId": bilal, "status": "present"}]},
    )
    records = {r["studentId"]: r for r in res.json()["attendanceRecords"]}
    assert records[chen]["status"] == "present"
    assert records[chen]["reason"] == "manually adjusted by teacher"
    assert records[bilal]["manuallyMarked"] is True
    assert records[asha]["status"] == "absent"


def test_abandon_session(client, roster):
    session_id = _open_session(client)["sessionId"]
    res = client.post(f"/smart-attendance/session/{session_id}/abandon")
    assert res.status_code == 200

    res = client.post("/smart-attendance/finalize", json={"sessionId": session_id})
    assert res.status_code == 409
    assert res.json()["code"] == "SESSION_CLOSED"

    # An abandoned session never blocks the schedule.
    _open_session(client)


def test_unknown_session_returns_404(client):
    res = client.get("/smart-attendance/session/does-not-exist/status")
    assert res.status_code == 404
    assert res.json()["code"] == "SESSION_NOT_FOUND"


def test_tampered_qr_token_is_rejected(client, roster):
    token = _open_session(client)["qrToken"]
    payload, signature = token.split(".", 1)
    res = client.post("/smart-attendance/validate-qr", json={"qrToken": f"{payload}.{signature[::-1]}"})
    assert res.status_code == 401
