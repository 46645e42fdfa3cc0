"""Lifecycle of one attendance session.

Every mutation and every snapshot read goes through the session's own lock,
so concurrent student scans are serialized per session and teacher polls
never observe half-applied evidence.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable, Mapping, Sequence

from smart_attendance.clock import is_expired
from smart_attendance.collaborators import AttendanceLedger
from smart_attendance.errors import (
    AlreadyFinalized,
    LedgerCommitFailed,
    PhotoRequired,
    SessionClosed,
    SessionExpired,
    StudentNotEligible,
)
from smart_attendance.evidence import EvidenceStore
from smart_attendance.models import (
    ATTENDANCE_STATUSES,
    SCAN_OPEN_STATUSES,
    TERMINAL_STATUSES,
    AttendanceStatus,
    AttendanceVerdict,
    EligibleStudent,
    PhotoMatchEvent,
    ScanEvent,
    ScanSummary,
    Session,
    SessionStatus,
)
from smart_attendance.reconcile import reconcile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionSnapshot:
    session: Session
    status: SessionStatus
    is_expired: bool
    finalizing: bool
    scans: ScanSummary
    roster: tuple[EligibleStudent, ...]
    photo: PhotoMatchEvent | None
    overrides: dict[int, AttendanceStatus]
    verdicts: tuple[AttendanceVerdict, ...]


class AttendanceSession:
    def __init__(
        self,
        session: Session,
        roster: Sequence[EligibleStudent],
        *,
        face_threshold: float,
        geofence_radius: float,
        verify_timeout_seconds: float,
        allow_photo_recapture: bool = False,
        require_class_photo: bool = False,
    ) -> None:
        self._session = session
        self._roster = tuple(roster)
        self._roster_ids = frozenset(s.student_id for s in self._roster)
        self._require_photo = require_class_photo
        self._evidence = EvidenceStore(
            session.session_id,
            face_threshold=face_threshold,
            geofence_radius=geofence_radius,
            verify_timeout_seconds=verify_timeout_seconds,
            allow_photo_recapture=allow_photo_recapture,
        )
        self._overrides: dict[int, AttendanceStatus] = {}
        self._final_verdicts: tuple[AttendanceVerdict, ...] | None = None
        self._finalizing = False
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Identity / status
    # ------------------------------------------------------------------
    @property
    def session_id(self) -> str:
        return self._session.session_id

    @property
    def schedule_id(self) -> int:
        return self._session.schedule_id

    @property
    def roster(self) -> tuple[EligibleStudent, ...]:
        return self._roster

    def _status_at(self, now: datetime) -> SessionStatus:
        status = self._session.status
        if status in ("created", "qr_active") and is_expired(now, self._session.qr_expires_at):
            return "expired"
        return status

    def status(self, now: datetime) -> SessionStatus:
        with self._lock:
            return self._status_at(now)

    def blocks_new_session(self, now: datetime) -> bool:
        """
        Whether this session still counts as the active one for its schedule.

        An expired session that never received any scan is treated as
        abandoned; one holding evidence keeps blocking until it is finalized
        or explicitly superseded.
        """
        with self._lock:
            status = self._status_at(now)
            if status in TERMINAL_STATUSES:
                return False
            if status == "expired":
                return self._evidence.summary(now).total > 0 or self._finalizing
            return True

    def activate(self, now: datetime) -> None:
        with self._lock:
            if self._session.status == "created":
                self._session.status = "qr_active"
                logger.info("[Session] %s QR active until %s", self.session_id, self._session.qr_expires_at)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------
    def _ensure_open(self) -> None:
        status = self._session.status
        if status == "finalized" or self._finalizing:
            raise AlreadyFinalized("Attendance already finalized for this session.", session_id=self.session_id)
        if status in TERMINAL_STATUSES:
            raise SessionClosed(f"Session is {status}.", session_id=self.session_id)

    def _ensure_scans_open(self, now: datetime) -> None:
        status = self._session.status
        if status in TERMINAL_STATUSES or self._finalizing:
            raise SessionClosed(f"Session is {status}; scans are no longer accepted.", session_id=self.session_id)
        if status not in SCAN_OPEN_STATUSES:
            raise SessionClosed("Scan collection is closed for this session.", session_id=self.session_id)
        if is_expired(now, self._session.qr_expires_at):
            raise SessionExpired("QR code has expired.", session_id=self.session_id)

    # ------------------------------------------------------------------
    # Scan evidence
    # ------------------------------------------------------------------
    def record_scan(
        self,
        student_id: int,
        distance_meters: float,
        face_confidence: float | None,
        now: datetime,
    ) -> tuple[ScanEvent, bool]:
        """Returns the student's canonical scan record and whether this attempt was a duplicate."""
        with self._lock:
            self._ensure_scans_open(now)
            self._evidence.expire_pending(now)
            attempt = self._evidence.record_scan(student_id, distance_meters, face_confidence, now)
            return replace(self._evidence.canonical(attempt)), attempt.duplicate_of is not None

    def begin_scan(self, student_id: int, distance_meters: float, now: datetime) -> ScanEvent:
        with self._lock:
            self._ensure_scans_open(now)
            self._evidence.expire_pending(now)
            return replace(self._evidence.begin_scan(student_id, distance_meters, now))

    def resolve_scan(self, scan_id: str, face_confidence: float | None, now: datetime) -> tuple[ScanEvent, bool]:
        # A scan opened inside the QR window may settle after expiry or after
        # the teacher closed scanning; only terminal states refuse it.
        with self._lock:
            self._ensure_open()
            attempt = self._evidence.resolve_scan(scan_id, face_confidence, now)
            return replace(self._evidence.canonical(attempt)), attempt.duplicate_of is not None

    # ------------------------------------------------------------------
    # Teacher actions
    # ------------------------------------------------------------------
    def close_scans(self, now: datetime) -> SessionStatus:
        with self._lock:
            self._ensure_open()
            if self._session.status in SCAN_OPEN_STATUSES:
                self._session.status = "scans_closed"
                logger.info("[Session] %s scan collection closed", self.session_id)
            return self._status_at(now)

    def capture_photo(
        self,
        matched_student_ids: Iterable[int],
        now: datetime,
        *,
        detected_faces_count: int | None = None,
    ) -> PhotoMatchEvent:
        with self._lock:
            self._ensure_open()
            self.close_scans(now)
            photo = self._evidence.record_photo_match(
                matched_student_ids,
                now,
                detected_faces_count=detected_faces_count,
            )
            self._session.status = "photo_captured"
            logger.info(
                "[Session] %s class photo captured: %d matched student(s)",
                self.session_id,
                len(photo.matched_student_ids),
            )
            return photo

    def _validate_overrides(self, overrides: Mapping[int, str | None]) -> dict[int, AttendanceStatus | None]:
        verified = set(self._evidence.verified_student_ids())
        cleaned: dict[int, AttendanceStatus | None] = {}
        for raw_id, raw_status in overrides.items():
            student_id = int(raw_id)
            if student_id not in self._roster_ids and student_id not in verified:
                raise StudentNotEligible(
                    f"Student {student_id} is not part of this session.",
                    session_id=self.session_id,
                )
            if raw_status is None:
                cleaned[student_id] = None
                continue
            status = str(raw_status).strip().lower()
            if status not in ATTENDANCE_STATUSES:
                raise ValueError(f"Invalid attendance status: {raw_status!r}")
            cleaned[student_id] = status  # type: ignore[assignment]
        return cleaned

    def _apply_overrides(self, overrides: Mapping[int, str | None]) -> None:
        for student_id, status in self._validate_overrides(overrides).items():
            if status is None:
                self._overrides.pop(student_id, None)
            else:
                self._overrides[student_id] = status

    def set_overrides(self, overrides: Mapping[int, str | None]) -> dict[int, AttendanceStatus]:
        """Add, change or (with ``None``) clear manual overrides before finalization."""
        with self._lock:
            self._ensure_open()
            self._apply_overrides(overrides)
            return dict(self._overrides)

    def supersede(self, by_session_id: str, now: datetime) -> None:
        with self._lock:
            if self._session.status in TERMINAL_STATUSES or self._finalizing:
                return
            self._session.status = "superseded"
            self._session.superseded_by = by_session_id
            self._session.completed_at = now
            logger.info("[Session] %s superseded by %s", self.session_id, by_session_id)

    def abandon(self, now: datetime) -> None:
        with self._lock:
            self._ensure_open()
            self._session.status = "abandoned"
            self._session.completed_at = now
            logger.info("[Session] %s abandoned", self.session_id)

    # ------------------------------------------------------------------
    # Reconciliation / finalize
    # ------------------------------------------------------------------
    def _reconcile_locked(self) -> list[AttendanceVerdict]:
        return reconcile(
            self._roster,
            self._evidence.verified_student_ids(),
            self._evidence.photo,
            self._overrides,
        )

    def reconcile(self) -> list[AttendanceVerdict]:
        with self._lock:
            if self._final_verdicts is not None:
                return list(self._final_verdicts)
            return self._reconcile_locked()

    def finalize(
        self,
        ledger: AttendanceLedger,
        now: datetime,
        overrides: Mapping[int, str | None] | None = None,
    ) -> list[AttendanceVerdict]:
        with self._lock:
            self._ensure_open()
            if self._require_photo and self._evidence.photo is None:
                raise PhotoRequired(
                    "A class photo is required before attendance can be finalized.",
                    session_id=self.session_id,
                )
            if overrides:
                self._apply_overrides(overrides)
            self._evidence.expire_pending(now, force=True)
            self._session.status = "reconciled"
            verdicts = self._reconcile_locked()
            # Check-and-set: any concurrent finalize now fails in _ensure_open.
            self._finalizing = True

        try:
            ledger.commit(self.session_id, self.schedule_id, verdicts)
        except Exception as exc:
            with self._lock:
                self._finalizing = False
            logger.error("[Session] %s ledger commit failed: %s", self.session_id, exc)
            if isinstance(exc, LedgerCommitFailed):
                raise
            raise LedgerCommitFailed(
                f"Failed to commit attendance: {exc}",
                session_id=self.session_id,
            ) from exc

        with self._lock:
            self._final_verdicts = tuple(verdicts)
            self._session.status = "finalized"
            self._session.completed_at = now
            self._finalizing = False
        logger.info(
            "[Session] %s finalized: %d present / %d total",
            self.session_id,
            sum(1 for v in verdicts if v.status == "present"),
            len(verdicts),
        )
        return list(verdicts)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    def snapshot(self, now: datetime) -> SessionSnapshot:
        with self._lock:
            status = self._status_at(now)
            return SessionSnapshot(
                session=replace(self._session),
                status=status,
                is_expired=is_expired(now, self._session.qr_expires_at),
                finalizing=self._finalizing,
                scans=self._evidence.summary(now),
                roster=self._roster,
                photo=self._evidence.photo,
                overrides=dict(self._overrides),
                verdicts=tuple(self.reconcile()),
            )

    def audit_trail(self) -> list[ScanEvent]:
        with self._lock:
            return self._evidence.audit_trail()
