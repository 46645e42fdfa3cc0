from fastapi import APIRouter

from smart_attendance.config import (
    ALLOW_PHOTO_RECAPTURE,
    FACE_MATCH_THRESHOLD,
    FACE_VERIFY_TIMEOUT_SECONDS,
    GEOFENCE_RADIUS_METERS,
    MAX_FACES_PER_STUDENT,
    QR_VALIDITY_SECONDS,
    REQUIRE_CLASS_PHOTO,
)
from smart_attendance.services.attendance import get_service

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/health/sessions")
def session_health():
    return {"status": "ok", "liveSessions": get_service().registry.live_count()}


@router.get("/config/attendance")
def attendance_config():
    return {
        "qr_validity_seconds": QR_VALIDITY_SECONDS,
        "face_verify_timeout_seconds": FACE_VERIFY_TIMEOUT_SECONDS,
        "face_match_threshold": FACE_MATCH_THRESHOLD,
        "geofence_radius_meters": GEOFENCE_RADIUS_METERS,
        "allow_photo_recapture": ALLOW_PHOTO_RECAPTURE,
        "require_class_photo": REQUIRE_CLASS_PHOTO,
        "max_faces_per_student": MAX_FACES_PER_STUDENT,
    }
