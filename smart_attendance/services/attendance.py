import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timedelta
from typing import Iterable, Mapping, Sequence

from smart_attendance import config

from smart_attendance.collaborators import (
    AttendanceLedger,
    DetectedFace,
    FaceVerifier,
    Notifier,
    PhotoMatcher,
)
from smart_attendance.errors import SessionClosed, SessionExpired, VerifierTimeout
from smart_attendance.geo import haversine_meters
from smart_attendance.models import AttendanceVerdict, PhotoMatchEvent, ScanEvent
from smart_attendance.registry import SessionRegistry
from smart_attendance.security import decode_qr_token, issue_qr_token
from smart_attendance.session import AttendanceSession, SessionSnapshot

logger = logging.getLogger(__name__)


class AttendanceService:
    """
    Entry point used by the HTTP layer.

    Every call names its session explicitly; sessions are looked up in the
    registry and never held as ambient state.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        ledger: AttendanceLedger,
        verifier: FaceVerifier,
        photo_matcher: PhotoMatcher,
        notifier: Notifier | None = None,
        verify_timeout_seconds: float,
        max_workers: int = 4,
    ) -> None:
        self.registry = registry
        self._ledger = ledger
        self._verifier = verifier
        self._photo_matcher = photo_matcher
        self._notifier = notifier
        self._verify_timeout = verify_timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="face-verify")
        # One slot per worker; a hung verifier keeps its slot until it returns.
        self._verifier_slots = threading.BoundedSemaphore(max_workers)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    def open_session(
        self,
        schedule_id: int,
        teacher_id: int,
        lat: float,
        lng: float,
        *,
        force_new: bool,
        now: datetime,
    ) -> tuple[AttendanceSession, str]:
        session = self.registry.create_session(
            schedule_id,
            teacher_id,
            lat,
            lng,
            force_new=force_new,
            now=now,
        )
        return session, issue_qr_token(session.snapshot(now).session)

    def validate_qr(self, qr_token: str, now: datetime) -> SessionSnapshot:
        claims = decode_qr_token(qr_token, now)
        session = self.registry.get(claims["sid"])
        snapshot = session.snapshot(now)
        if snapshot.status == "expired":
            raise SessionExpired("QR code has expired.", session_id=session.session_id)
        if snapshot.status not in ("created", "qr_active"):
            raise SessionClosed(f"Session is {snapshot.status}.", session_id=session.session_id)
        return snapshot

    def status(self, session_id: str, now: datetime) -> SessionSnapshot:
        return self.registry.get(session_id).snapshot(now)

    def close_scans(self, session_id: str, now: datetime) -> SessionSnapshot:
        session = self.registry.get(session_id)
        session.close_scans(now)
        return session.snapshot(now)

    def abandon(self, session_id: str, now: datetime) -> None:
        session = self.registry.get(session_id)
        session.abandon(now)
        self.registry.retire(session_id)

    def set_overrides(self, session_id: str, overrides: Mapping[int, str | None], now: datetime) -> SessionSnapshot:
        session = self.registry.get(session_id)
        session.set_overrides(overrides)
        return session.snapshot(now)

    # ------------------------------------------------------------------
    # Scan evidence
    # ------------------------------------------------------------------
    def _distance_for(
        self,
        session: AttendanceSession,
        now: datetime,
        distance: float | None,
        lat: float | None,
        lng: float | None,
    ) -> float:
        if distance is not None:
            return float(distance)
        if lat is None or lng is None:
            raise ValueError("Either distance or locationLat/locationLng is required.")
        centre = session.snapshot(now).session
        return haversine_meters(lat, lng, centre.location_lat, centre.location_lng)

    def submit_scan(
        self,
        session_id: str,
        student_id: int,
        face_confidence: float | None,
        now: datetime,
        *,
        distance: float | None = None,
        lat: float | None = None,
        lng: float | None = None,
    ) -> tuple[ScanEvent, bool]:
        session = self.registry.get(session_id)
        distance_meters = self._distance_for(session, now, distance, lat, lng)
        record, duplicate = session.record_scan(student_id, distance_meters, face_confidence, now)
        logger.info(
            "[Scan] session %s student %s -> %s%s",
            session_id,
            student_id,
            record.status,
            " (duplicate)" if duplicate else "",
        )
        return record, duplicate

    def _run_verifier(self, student_id: int, face_sample: Sequence[float], timeout: float) -> float:
        """
        Run the verifier on the pool and wait at most ``timeout`` seconds.

        A running verifier call cannot be interrupted: after a timeout it keeps
        its worker until it returns. When every worker is held that way, new
        scans are rejected at once instead of queueing behind the hung calls.
        """
        if not self._verifier_slots.acquire(blocking=False):
            raise VerifierTimeout("Face verifier pool is saturated by unanswered calls")
        try:
            future = self._executor.submit(self._verifier.verify, student_id, face_sample)
        except RuntimeError:
            self._verifier_slots.release()
            raise
        future.add_done_callback(lambda _f: self._verifier_slots.release())
        try:
            return float(future.result(timeout=timeout))
        except FutureTimeout:
            future.cancel()
            raise VerifierTimeout(f"Face verifier did not answer within {timeout:.1f}s")

    def verify_face(
        self,
        session_id: str,
        student_id: int,
        face_sample: Sequence[float],
        now: datetime,
        *,
        distance: float | None = None,
        lat: float | None = None,
        lng: float | None = None,
    ) -> tuple[ScanEvent, bool]:
        """
        Scan-time verification: open a pending scan, ask the face verifier,
        then settle the scan. A verifier that times out or fails rejects the
        scan instead of failing the request.
        """
        session = self.registry.get(session_id)
        distance_meters = self._distance_for(session, now, distance, lat, lng)
        pending = session.begin_scan(student_id, distance_meters, now)
        started = time.monotonic()

        confidence: float | None
        try:
            confidence = self._run_verifier(student_id, face_sample, self._verify_timeout)
        except VerifierTimeout as exc:
            logger.warning("[Verifier] %s: %s (scan %s)", VerifierTimeout.code, exc, pending.scan_id)
            confidence = None
        except ValueError as exc:
            logger.warning("[Verifier] scan %s rejected: %s", pending.scan_id, exc)
            confidence = 0.0
        except Exception as exc:
            # A broken verifier degrades this scan only.
            logger.error("[Verifier] scan %s: verifier failed: %s", pending.scan_id, exc)
            confidence = None

        resolved_at = now + timedelta(seconds=time.monotonic() - started)
        record, duplicate = session.resolve_scan(pending.scan_id, confidence, resolved_at)
        logger.info(
            "[Scan] session %s student %s verified-face -> %s (confidence=%s)",
            session_id,
            student_id,
            record.status,
            confidence,
        )
        return record, duplicate

    # ------------------------------------------------------------------
    # Photo evidence
    # ------------------------------------------------------------------
    def capture_photo(
        self,
        session_id: str,
        matched_student_ids: Iterable[int],
        now: datetime,
        *,
        detected_faces_count: int | None = None,
    ) -> PhotoMatchEvent:
        session = self.registry.get(session_id)
        return session.capture_photo(matched_student_ids, now, detected_faces_count=detected_faces_count)

    def process_class_photo(
        self,
        session_id: str,
        faces: Sequence[DetectedFace],
        now: datetime,
    ) -> PhotoMatchEvent:
        session = self.registry.get(session_id)
        result = self._photo_matcher.match(faces, session.roster)
        logger.info(
            "[Photo] session %s: %d face(s) detected, %d matched",
            session_id,
            result.detected_faces_count,
            len(result.matched_student_ids),
        )
        return session.capture_photo(
            result.matched_student_ids,
            now,
            detected_faces_count=result.detected_faces_count,
        )

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------
    def finalize(
        self,
        session_id: str,
        now: datetime,
        overrides: Mapping[int, str | None] | None = None,
    ) -> list[AttendanceVerdict]:
        session = self.registry.get(session_id)
        verdicts = session.finalize(self._ledger, now, overrides)
        self.registry.retire(session_id)

        if self._notifier is not None:
            snapshot = session.snapshot(now)
            for verdict in verdicts:
                if verdict.status != "absent":
                    continue
                try:
                    self._notifier.notify_absent(snapshot.session, verdict)
                except Exception as exc:
                    # Attendance is already committed; a failed notification is not a finalize failure.
                    logger.error("[Notify] student %s in session %s: %s", verdict.student_id, session_id, exc)
        return verdicts


# -----------------------------
# Process-wide service (lazy)
# -----------------------------
SERVICE_LOCK = threading.Lock()
_SERVICE: AttendanceService | None = None


def build_service() -> AttendanceService:
    from database.db import SqliteLedger, SqliteNotifier, SqliteRoster
    from smart_attendance.recognizer import DescriptorFaceVerifier, DescriptorPhotoMatcher

    registry = SessionRegistry(
        SqliteRoster(),
        qr_validity_seconds=config.QR_VALIDITY_SECONDS,
        face_threshold=config.FACE_MATCH_THRESHOLD,
        geofence_radius=config.GEOFENCE_RADIUS_METERS,
        verify_timeout_seconds=config.FACE_VERIFY_TIMEOUT_SECONDS,
        allow_photo_recapture=config.ALLOW_PHOTO_RECAPTURE,
        require_class_photo=config.REQUIRE_CLASS_PHOTO,
    )
    return AttendanceService(
        registry,
        ledger=SqliteLedger(),
        verifier=DescriptorFaceVerifier(),
        photo_matcher=DescriptorPhotoMatcher(config.FACE_MATCH_THRESHOLD),
        notifier=SqliteNotifier(),
        verify_timeout_seconds=config.FACE_VERIFY_TIMEOUT_SECONDS,
        max_workers=config.VERIFIER_WORKERS,
    )


def get_service() -> AttendanceService:
    global _SERVICE
    with SERVICE_LOCK:
        if _SERVICE is None:
            _SERVICE = build_service()
        return _SERVICE


def reset_service() -> None:
    """Drop every live session; the next request builds a fresh service."""
    global _SERVICE
    with SERVICE_LOCK:
        if _SERVICE is not None:
            _SERVICE.shutdown()
        _SERVICE = None
