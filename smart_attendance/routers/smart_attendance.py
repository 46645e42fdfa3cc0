from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from smart_attendance.clock import isoformat, remaining, utcnow
from smart_attendance.collaborators import DetectedFace
from smart_attendance.config import FACE_VERIFY_TIMEOUT_SECONDS, QR_VALIDITY_SECONDS
from smart_attendance.models import AttendanceVerdict, ScanEvent
from smart_attendance.reconcile import tally
from smart_attendance.services.attendance import AttendanceService, get_service
from smart_attendance.session import SessionSnapshot

router = APIRouter(prefix="/smart-attendance")


def get_now() -> datetime:
    return utcnow()


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GenerateQrRequest(CamelModel):
    schedule_id: int
    teacher_id: int
    lat: float = Field(validation_alias=AliasChoices("lat", "locationLat"))
    lng: float = Field(validation_alias=AliasChoices("lng", "locationLng"))
    force_new: bool = False


class ValidateQrRequest(CamelModel):
    qr_token: str


class ScanRequest(CamelModel):
    session_id: str
    student_id: int
    face_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    distance: float | None = Field(default=None, ge=0.0)
    location_lat: float | None = None
    location_lng: float | None = None


class VerifyFaceRequest(CamelModel):
    session_id: str
    student_id: int
    face_descriptor: list[float] = Field(min_length=1)
    distance: float | None = Field(default=None, ge=0.0)
    location_lat: float | None = None
    location_lng: float | None = None


class PhotoCaptureRequest(CamelModel):
    session_id: str
    matched_student_ids: list[int] = Field(default_factory=list)
    detected_faces_count: int | None = Field(default=None, ge=0)


class DetectedFacePayload(CamelModel):
    descriptor: list[float] = Field(min_length=1)
    bbox: dict[str, Any] | None = None


class ClassPhotoRequest(CamelModel):
    session_id: str
    detected_faces: list[DetectedFacePayload]


class SessionRequest(CamelModel):
    session_id: str


class StudentStatus(CamelModel):
    student_id: int
    status: Literal["present", "absent"] | None


class OverridesRequest(CamelModel):
    student_statuses: list[StudentStatus]


class FinalizeRequest(CamelModel):
    session_id: str
    student_statuses: list[StudentStatus] = Field(default_factory=list)


# -----------------------------
# Serializers
# -----------------------------
def _session_payload(snapshot: SessionSnapshot, now: datetime) -> dict:
    session = snapshot.session
    return {
        "sessionId": session.session_id,
        "scheduleId": session.schedule_id,
        "teacherId": session.teacher_id,
        "status": snapshot.status,
        "createdAt": isoformat(session.created_at),
        "expiresAt": isoformat(session.qr_expires_at),
        "isExpired": snapshot.is_expired,
        "remainingSeconds": int(remaining(now, session.qr_expires_at).total_seconds()),
        "locationLat": session.location_lat,
        "locationLng": session.location_lng,
        "completedAt": isoformat(session.completed_at),
        "supersededBy": session.superseded_by,
        "finalizing": snapshot.finalizing,
    }


def _scan_payload(record: ScanEvent, names: dict[int, tuple[str, str | None]] | None = None) -> dict:
    name, roll = (names or {}).get(record.student_id, (None, None))
    return {
        "scanId": record.scan_id,
        "studentId": record.student_id,
        "studentName": name,
        "rollNumber": roll,
        "status": record.status,
        "reason": record.reason,
        "confidence": record.face_confidence,
        "distance": round(record.distance_meters),
        "scannedAt": isoformat(record.scanned_at),
    }


def _verdict_payload(verdict: AttendanceVerdict) -> dict:
    return {
        "studentId": verdict.student_id,
        "name": verdict.student_name,
        "rollNumber": verdict.roll_number,
        "status": verdict.status,
        "reason": verdict.reason,
        "verifiedByScan": verdict.verified_by_scan,
        "verifiedByPhoto": verdict.verified_by_photo,
        "manuallyMarked": verdict.manually_marked,
        "verificationStatus": verdict.verification_status,
    }


def _summary_payload(snapshot: SessionSnapshot, verdicts: list[AttendanceVerdict]) -> dict:
    counts = tally(verdicts)
    return {
        "present": counts["present"],
        "absent": counts["absent"],
        "totalStudents": counts["total_students"],
        "scannedCount": counts["scanned"],
        "detectedInPhotoCount": counts["detected_in_photo"],
        "crossVerifiedCount": counts["cross_verified"],
        "manuallyMarkedCount": counts["manually_marked"],
        "enrolledCount": len(snapshot.roster),
        "photoCaptured": snapshot.photo is not None,
    }


def _status_payload(snapshot: SessionSnapshot, now: datetime) -> dict:
    names = {s.student_id: (s.student_name, s.roll_number) for s in snapshot.roster}
    photo = snapshot.photo
    verdicts = list(snapshot.verdicts)
    return {
        "session": _session_payload(snapshot, now),
        "scans": {
            "total": snapshot.scans.total,
            "verified": snapshot.scans.verified,
            "rejected": snapshot.scans.rejected,
            "pending": snapshot.scans.pending,
            "records": [_scan_payload(r, names) for r in snapshot.scans.records],
        },
        "eligibleStudents": [
            {
                "studentId": s.student_id,
                "studentName": s.student_name,
                "rollNumber": s.roll_number,
            }
            for s in snapshot.roster
        ],
        "classPhotos": {
            "total": 1 if photo else 0,
            "processed": 1 if photo else 0,
            "records": [
                {
                    "capturedAt": isoformat(photo.captured_at),
                    "detectedFacesCount": photo.detected_faces_count,
                    "matchedStudentIds": sorted(photo.matched_student_ids),
                }
            ]
            if photo
            else [],
        },
        "overrides": [{"studentId": sid, "status": status} for sid, status in snapshot.overrides.items()],
        "verdicts": [_verdict_payload(v) for v in verdicts],
        "summary": _summary_payload(snapshot, verdicts),
    }


def _scan_response(record: ScanEvent, duplicate: bool) -> dict:
    payload = _scan_payload(record)
    payload["duplicate"] = duplicate
    if duplicate:
        payload["message"] = "You have already been verified for this session"
    elif record.status == "verified":
        payload["message"] = "Face verified successfully!"
    else:
        payload["message"] = "Scan rejected"
    return payload


def _require_location(distance: float | None, lat: float | None, lng: float | None) -> None:
    if distance is None and (lat is None or lng is None):
        raise HTTPException(status_code=400, detail="distance or locationLat/locationLng is required.")


def _statuses_to_overrides(items: list[StudentStatus]) -> dict[int, str | None]:
    return {item.student_id: item.status for item in items}


# -----------------------------
# Teacher endpoints
# -----------------------------
@router.post("/generate-qr", status_code=201)
def generate_qr(
    payload: GenerateQrRequest,
    service: AttendanceService = Depends(get_service),
    now: datetime = Depends(get_now),
):
    session, qr_token = service.open_session(
        payload.schedule_id,
        payload.teacher_id,
        payload.lat,
        payload.lng,
        force_new=payload.force_new,
        now=now,
    )
    snapshot = session.snapshot(now)
    return {
        "message": "QR code generated successfully",
        "sessionId": session.session_id,
        "status": snapshot.status,
        "expiresAt": isoformat(snapshot.session.qr_expires_at),
        "expiresIn": QR_VALIDITY_SECONDS,
        "qrToken": qr_token,
        "eligibleCount": len(snapshot.roster),
    }


@router.get("/session/{session_id}/status")
def session_status(
    session_id: str,
    service: AttendanceService = Depends(get_service),
    now: datetime = Depends(get_now),
):
    return _status_payload(service.status(session_id, now), now)


@router.post("/close-scans")
def close_scans(
    payload: SessionRequest,
    service: AttendanceService = Depends(get_service),
    now: datetime = Depends(get_now),
):
    snapshot = service.close_scans(payload.session_id, now)
    return {"sessionId": payload.session_id, "status": snapshot.status}


@router.post("/photo-capture", status_code=201)
def photo_capture(
    payload: PhotoCaptureRequest,
    service: AttendanceService = Depends(get_service),
    now: datetime = Depends(get_now),
):
    photo = service.capture_photo(
        payload.session_id,
        payload.matched_student_ids,
        now,
        detected_faces_count=payload.detected_faces_count,
    )
    return {
        "message": "Class photo recorded",
        "capture": {
            "capturedAt": isoformat(photo.captured_at),
            "detectedFacesCount": photo.detected_faces_count,
            "matchedStudentsCount": len(photo.matched_student_ids),
        },
        "matchedStudentIds": sorted(photo.matched_student_ids),
    }


@router.post("/process-class-photo", status_code=201)
def process_class_photo(
    payload: ClassPhotoRequest,
    service: AttendanceService = Depends(get_service),
    now: datetime = Depends(get_now),
):
    faces = [DetectedFace(descriptor=f.descriptor, bbox=f.bbox) for f in payload.detected_faces]
    photo = service.process_class_photo(payload.session_id, faces, now)
    return {
        "message": "Class photo processed successfully",
        "capture": {
            "capturedAt": isoformat(photo.captured_at),
            "detectedFacesCount": photo.detected_faces_count,
            "matchedStudentsCount": len(photo.matched_student_ids),
        },
        "matchedStudentIds": sorted(photo.matched_student_ids),
    }


@router.put("/session/{session_id}/overrides")
def update_overrides(
    session_id: str,
    payload: OverridesRequest,
    service: AttendanceService = Depends(get_service),
    now: datetime = Depends(get_now),
):
    snapshot = service.set_overrides(session_id, _statuses_to_overrides(payload.student_statuses), now)
    return _status_payload(snapshot, now)


@router.post("/session/{session_id}/abandon")
def abandon_session(
    session_id: str,
    service: AttendanceService = Depends(get_service),
    now: datetime = Depends(get_now),
):
    service.abandon(session_id, now)
    return {"ok": True, "sessionId": session_id, "status": "abandoned"}


@router.post("/finalize")
def finalize(
    payload: FinalizeRequest,
    service: AttendanceService = Depends(get_service),
    now: datetime = Depends(get_now),
):
    verdicts = service.finalize(payload.session_id, now, _statuses_to_overrides(payload.student_statuses))
    snapshot = service.status(payload.session_id, now)
    return {
        "message": "Attendance finalized successfully",
        "summary": _summary_payload(snapshot, verdicts),
        "attendanceRecords": [_verdict_payload(v) for v in verdicts],
    }


# -----------------------------
# Student endpoints
# -----------------------------
@router.post("/validate-qr")
def validate_qr(
    payload: ValidateQrRequest,
    service: AttendanceService = Depends(get_service),
    now: datetime = Depends(get_now),
):
    snapshot = service.validate_qr(payload.qr_token, now)
    session = snapshot.session
    return {
        "message": "QR code is valid",
        "session": {
            "sessionId": session.session_id,
            "scheduleId": session.schedule_id,
            "locationLat": session.location_lat,
            "locationLng": session.location_lng,
            "expiresAt": isoformat(session.qr_expires_at),
            "scanTimeout": FACE_VERIFY_TIMEOUT_SECONDS,
        },
    }


@router.post("/scan", status_code=201)
def scan(
    payload: ScanRequest,
    service: AttendanceService = Depends(get_service),
    now: datetime = Depends(get_now),
):
    _require_location(payload.distance, payload.location_lat, payload.location_lng)
    record, duplicate = service.submit_scan(
        payload.session_id,
        payload.student_id,
        payload.face_confidence,
        now,
        distance=payload.distance,
        lat=payload.location_lat,
        lng=payload.location_lng,
    )
    return _scan_response(record, duplicate)


@router.post("/verify-face", status_code=201)
def verify_face(
    payload: VerifyFaceRequest,
    service: AttendanceService = Depends(get_service),
    now: datetime = Depends(get_now),
):
    _require_location(payload.distance, payload.location_lat, payload.location_lng)
    record, duplicate = service.verify_face(
        payload.session_id,
        payload.student_id,
        payload.face_descriptor,
        now,
        distance=payload.distance,
        lat=payload.location_lat,
        lng=payload.location_lng,
    )
    return _scan_response(record, duplicate)
