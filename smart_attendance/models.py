from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

SessionStatus = Literal[
    "created",
    "qr_active",
    "expired",
    "scans_closed",
    "photo_captured",
    "reconciled",
    "finalized",
    "superseded",
    "abandoned",
]
ScanStatus = Literal["verified", "rejected", "pending"]
AttendanceStatus = Literal["present", "absent"]
VerificationLabel = Literal["both", "scan-only", "photo-only", "none"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"finalized", "superseded", "abandoned"})
SCAN_OPEN_STATUSES: frozenset[str] = frozenset({"created", "qr_active", "expired"})
ATTENDANCE_STATUSES: frozenset[str] = frozenset({"present", "absent"})

REASON_SCAN_AND_PHOTO = "verified in both scan & photo"
REASON_NOT_IN_PHOTO = "not detected in class photo"
REASON_NO_PHOTO = "not detected in class photo (class photo not captured, anti-proxy check skipped)"
REASON_NO_SCAN = "did not scan QR code"
REASON_MANUAL = "manually adjusted by teacher"

# Rejection reasons recorded on scan events.
REJECT_LOW_CONFIDENCE = "low_confidence"
REJECT_OUT_OF_RANGE = "out_of_range"
REJECT_VERIFIER_TIMEOUT = "verifier_timeout"
REJECT_ALREADY_VERIFIED = "already_verified"


@dataclass(frozen=True)
class EligibleStudent:
    student_id: int
    student_name: str
    roll_number: str | None = None


@dataclass
class Session:
    session_id: str
    schedule_id: int
    teacher_id: int
    created_at: datetime
    qr_expires_at: datetime
    location_lat: float
    location_lng: float
    status: SessionStatus = "created"
    completed_at: datetime | None = None
    superseded_by: str | None = None


@dataclass
class ScanEvent:
    scan_id: str
    student_id: int
    scanned_at: datetime
    distance_meters: float
    face_confidence: float | None
    status: ScanStatus
    reason: str | None = None
    deadline: datetime | None = None
    resolved_at: datetime | None = None
    duplicate_of: str | None = None


@dataclass(frozen=True)
class PhotoMatchEvent:
    captured_at: datetime
    matched_student_ids: frozenset[int]
    detected_faces_count: int = 0


@dataclass(frozen=True)
class AttendanceVerdict:
    student_id: int
    status: AttendanceStatus
    reason: str
    student_name: str | None = None
    roll_number: str | None = None
    verified_by_scan: bool = False
    verified_by_photo: bool = False
    manually_marked: bool = False

    @property
    def verification_status(self) -> VerificationLabel:
        if self.verified_by_scan and self.verified_by_photo:
            return "both"
        if self.verified_by_scan:
            return "scan-only"
        if self.verified_by_photo:
            return "photo-only"
        return "none"


@dataclass(frozen=True)
class ScanSummary:
    total: int
    verified: int
    rejected: int
    pending: int
    records: tuple[ScanEvent, ...] = field(default_factory=tuple)
