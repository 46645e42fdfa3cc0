import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("SMART_ATTENDANCE_DB_PATH", BASE_DIR / "database" / "smart_attendance.db"))
LOG_DIR = Path(os.getenv("SMART_ATTENDANCE_LOG_DIR", BASE_DIR / "logs"))
LOG_LEVEL = os.getenv("SMART_ATTENDANCE_LOG_LEVEL", "INFO").strip().upper() or "INFO"
QR_SIGNING_KEY = (
    os.getenv("SMART_ATTENDANCE_QR_SIGNING_KEY", "").strip()
    or secrets.token_urlsafe(32)
)


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_float(value: str | None, fallback: float) -> float:
    if not value:
        return fallback
    try:
        return float(value)
    except ValueError:
        return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("SMART_ATTENDANCE_CORS_ALLOW_ORIGINS"),
    ["http://localhost:3000", "http://127.0.0.1:3000"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("SMART_ATTENDANCE_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("SMART_ATTENDANCE_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("SMART_ATTENDANCE_CORS_ALLOW_CREDENTIALS"), True)

# Session time windows
QR_VALIDITY_SECONDS = max(1, int(os.getenv("SMART_ATTENDANCE_QR_VALIDITY_SECONDS", "60")))
FACE_VERIFY_TIMEOUT_SECONDS = max(
    0.1,
    _parse_float(os.getenv("SMART_ATTENDANCE_FACE_VERIFY_TIMEOUT_SECONDS"), 60.0),
)

# Scan acceptance gates
GEOFENCE_RADIUS_METERS = _parse_float(os.getenv("SMART_ATTENDANCE_GEOFENCE_RADIUS_METERS"), 100.0)
FACE_MATCH_THRESHOLD = _parse_float(os.getenv("SMART_ATTENDANCE_FACE_MATCH_THRESHOLD"), 0.6)

# Photo evidence policy
ALLOW_PHOTO_RECAPTURE = _parse_bool(os.getenv("SMART_ATTENDANCE_ALLOW_PHOTO_RECAPTURE"), False)
REQUIRE_CLASS_PHOTO = _parse_bool(os.getenv("SMART_ATTENDANCE_REQUIRE_CLASS_PHOTO"), False)

VERIFIER_WORKERS = max(1, int(os.getenv("SMART_ATTENDANCE_VERIFIER_WORKERS", "4")))
MAX_FACES_PER_STUDENT = max(1, int(os.getenv("SMART_ATTENDANCE_MAX_FACES_PER_STUDENT", "5")))
