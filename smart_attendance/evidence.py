"""Append-only scan and photo evidence for one attendance session.

The store is not locked on its own; ``AttendanceSession`` serializes every
call under the session lock.
"""
import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Iterable

from smart_attendance.clock import deadline, is_expired
from smart_attendance.errors import PhotoAlreadyCaptured
from smart_attendance.models import (
    REJECT_ALREADY_VERIFIED,
    REJECT_LOW_CONFIDENCE,
    REJECT_OUT_OF_RANGE,
    REJECT_VERIFIER_TIMEOUT,
    PhotoMatchEvent,
    ScanEvent,
    ScanStatus,
    ScanSummary,
)

logger = logging.getLogger(__name__)


def assess_scan(
    distance_meters: float,
    face_confidence: float | None,
    *,
    face_threshold: float,
    geofence_radius: float,
) -> tuple[ScanStatus, str | None]:
    if face_confidence is None:
        return "rejected", REJECT_VERIFIER_TIMEOUT
    if face_confidence < face_threshold:
        return "rejected", REJECT_LOW_CONFIDENCE
    if distance_meters > geofence_radius:
        return "rejected", REJECT_OUT_OF_RANGE
    return "verified", None


class EvidenceStore:
    def __init__(
        self,
        session_id: str,
        *,
        face_threshold: float,
        geofence_radius: float,
        verify_timeout_seconds: float,
        allow_photo_recapture: bool = False,
    ) -> None:
        self.session_id = session_id
        self._face_threshold = face_threshold
        self._geofence_radius = geofence_radius
        self._verify_timeout = verify_timeout_seconds
        self._allow_recapture = allow_photo_recapture

        self._events: list[ScanEvent] = []
        self._by_id: dict[str, ScanEvent] = {}
        self._arrival: dict[str, int] = {}
        self._verified: dict[int, ScanEvent] = {}
        self._latest: dict[int, ScanEvent] = {}
        self._student_order: list[int] = []
        self._photo: PhotoMatchEvent | None = None

    # ------------------------------------------------------------------
    # Scan evidence
    # ------------------------------------------------------------------
    def begin_scan(self, student_id: int, distance_meters: float, now: datetime) -> ScanEvent:
        """Open a pending scan that waits for the face verifier's answer."""
        event = ScanEvent(
            scan_id=uuid.uuid4().hex,
            student_id=student_id,
            scanned_at=now,
            distance_meters=float(distance_meters),
            face_confidence=None,
            status="pending",
            deadline=deadline(now, self._verify_timeout),
        )
        self._append(event)
        return event

    def resolve_scan(self, scan_id: str, face_confidence: float | None, now: datetime) -> ScanEvent:
        """
        Settle a pending scan with the verifier's confidence.

        ``None`` or an answer arriving after the scan's deadline rejects the
        scan as a verifier timeout. Returns the attempt itself; use
        ``canonical`` for the record that represents the student.
        """
        event = self._by_id[scan_id]
        if event.status != "pending":
            return event

        if event.deadline is not None and is_expired(now, event.deadline):
            face_confidence = None
        status, reason = assess_scan(
            event.distance_meters,
            face_confidence,
            face_threshold=self._face_threshold,
            geofence_radius=self._geofence_radius,
        )
        event.face_confidence = face_confidence
        event.resolved_at = now
        self._settle(event, status, reason)
        return event

    def record_scan(
        self,
        student_id: int,
        distance_meters: float,
        face_confidence: float | None,
        now: datetime,
    ) -> ScanEvent:
        event = ScanEvent(
            scan_id=uuid.uuid4().hex,
            student_id=student_id,
            scanned_at=now,
            distance_meters=float(distance_meters),
            face_confidence=face_confidence,
            status="pending",
            resolved_at=now,
        )
        self._append(event)
        status, reason = assess_scan(
            event.distance_meters,
            face_confidence,
            face_threshold=self._face_threshold,
            geofence_radius=self._geofence_radius,
        )
        self._settle(event, status, reason)
        return event

    def expire_pending(self, now: datetime, *, force: bool = False) -> int:
        """Reject pending scans whose verifier deadline passed, or all of them with ``force``."""
        expired = 0
        for event in self._events:
            if event.status != "pending":
                continue
            if force or (event.deadline is not None and is_expired(now, event.deadline)):
                event.resolved_at = now
                self._settle(event, "rejected", REJECT_VERIFIER_TIMEOUT)
                expired += 1
        if expired:
            logger.info("[Evidence] %s: %d pending scan(s) timed out", self.session_id, expired)
        return expired

    def canonical(self, event: ScanEvent) -> ScanEvent:
        """Return the record that stands for ``event``'s student in summaries."""
        if event.duplicate_of:
            return self._by_id[event.duplicate_of]
        return event

    def _append(self, event: ScanEvent) -> None:
        self._arrival[event.scan_id] = len(self._events)
        self._events.append(event)
        self._by_id[event.scan_id] = event
        if event.student_id not in self._latest:
            self._student_order.append(event.student_id)
        if event.student_id not in self._verified:
            self._latest[event.student_id] = event

    def _settle(self, event: ScanEvent, status: ScanStatus, reason: str | None) -> None:
        existing = self._verified.get(event.student_id)
        if existing is not None and existing is not event:
            # First verified scan wins; later attempts stay in the audit trail only.
            event.status = "rejected"
            event.reason = REJECT_ALREADY_VERIFIED
            event.duplicate_of = existing.scan_id
            logger.info(
                "[Evidence] %s: student %s already verified by scan %s",
                self.session_id,
                event.student_id,
                existing.scan_id,
            )
            return

        event.status = status
        event.reason = reason
        if status == "verified":
            self._verified[event.student_id] = event
            self._latest[event.student_id] = event

    # ------------------------------------------------------------------
    # Photo evidence
    # ------------------------------------------------------------------
    @property
    def photo(self) -> PhotoMatchEvent | None:
        return self._photo

    def record_photo_match(
        self,
        matched_student_ids: Iterable[int],
        now: datetime,
        *,
        detected_faces_count: int | None = None,
    ) -> PhotoMatchEvent:
        if self._photo is not None and not self._allow_recapture:
            raise PhotoAlreadyCaptured(
                "A class photo has already been captured for this session.",
                session_id=self.session_id,
            )
        matched = frozenset(int(sid) for sid in matched_student_ids)
        if self._photo is not None:
            logger.info(
                "[Evidence] %s: class photo recaptured, discarding %d previous match(es)",
                self.session_id,
                len(self._photo.matched_student_ids),
            )
        self._photo = PhotoMatchEvent(
            captured_at=now,
            matched_student_ids=matched,
            detected_faces_count=len(matched) if detected_faces_count is None else int(detected_faces_count),
        )
        return self._photo

    # ------------------------------------------------------------------
    # Read-only aggregates
    # ------------------------------------------------------------------
    def verified_student_ids(self) -> list[int]:
        """Verified students in the order their verified scan arrived."""
        return list(self._verified)

    def summary(self, now: datetime) -> ScanSummary:
        """
        One record per student: the verified scan if there is one, else the
        latest attempt. Records are ordered by the arrival of the attempt they
        show, and counts derive from them so replays cannot inflate totals.
        Every individual attempt is available from ``audit_trail``.
        """
        records = []
        for student_id in self._student_order:
            record = self._latest[student_id]
            if record.status == "pending" and record.deadline is not None and is_expired(now, record.deadline):
                record = replace(record, status="rejected", reason=REJECT_VERIFIER_TIMEOUT)
            else:
                record = replace(record)
            records.append(record)
        records.sort(key=lambda r: self._arrival[r.scan_id])

        return ScanSummary(
            total=len(records),
            verified=sum(1 for r in records if r.status == "verified"),
            rejected=sum(1 for r in records if r.status == "rejected"),
            pending=sum(1 for r in records if r.status == "pending"),
            records=tuple(records),
        )

    def audit_trail(self) -> list[ScanEvent]:
        return [replace(event) for event in self._events]
