import logging
import threading
import uuid
from datetime import datetime

from smart_attendance.clock import deadline
from smart_attendance.collaborators import RosterProvider
from smart_attendance.errors import DuplicateActiveSession, SessionNotFound
from smart_attendance.models import Session
from smart_attendance.session import AttendanceSession

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Process-wide map of attendance sessions.

    The registry lock only guards the maps; each session serializes its own
    evidence under its own lock.
    """

    def __init__(
        self,
        roster: RosterProvider,
        *,
        qr_validity_seconds: float,
        face_threshold: float,
        geofence_radius: float,
        verify_timeout_seconds: float,
        allow_photo_recapture: bool = False,
        require_class_photo: bool = False,
    ) -> None:
        self._roster = roster
        self._qr_validity_seconds = qr_validity_seconds
        self._session_options = {
            "face_threshold": face_threshold,
            "geofence_radius": geofence_radius,
            "verify_timeout_seconds": verify_timeout_seconds,
            "allow_photo_recapture": allow_photo_recapture,
            "require_class_photo": require_class_photo,
        }
        self._live: dict[str, AttendanceSession] = {}
        self._archive: dict[str, AttendanceSession] = {}
        self._lock = threading.Lock()

    def create_session(
        self,
        schedule_id: int,
        teacher_id: int,
        lat: float,
        lng: float,
        *,
        force_new: bool = False,
        now: datetime,
    ) -> AttendanceSession:
        # Roster lookup happens outside the critical section.
        roster = self._roster.get_eligible_students(schedule_id)

        with self._lock:
            previous = [s for s in self._live.values() if s.schedule_id == schedule_id]
            blocking = [s for s in previous if s.blocks_new_session(now)]
            if blocking and not force_new:
                existing = blocking[0]
                raise DuplicateActiveSession(
                    "An active attendance session already exists for this schedule.",
                    session_id=existing.session_id,
                    schedule_id=schedule_id,
                )

            session = AttendanceSession(
                Session(
                    session_id=uuid.uuid4().hex,
                    schedule_id=schedule_id,
                    teacher_id=teacher_id,
                    created_at=now,
                    qr_expires_at=deadline(now, self._qr_validity_seconds),
                    location_lat=float(lat),
                    location_lng=float(lng),
                ),
                roster,
                **self._session_options,
            )
            session.activate(now)

            for old in previous:
                old.supersede(session.session_id, now)
                self._archive[old.session_id] = self._live.pop(old.session_id)
            self._live[session.session_id] = session

        logger.info(
            "[Registry] session %s created for schedule %s (%d eligible, superseded %d)",
            session.session_id,
            schedule_id,
            len(roster),
            len(previous),
        )
        return session

    def get(self, session_id: str) -> AttendanceSession:
        with self._lock:
            session = self._live.get(session_id) or self._archive.get(session_id)
        if session is None:
            raise SessionNotFound("Session not found.", session_id=session_id)
        return session

    def retire(self, session_id: str) -> None:
        with self._lock:
            session = self._live.pop(session_id, None)
            if session is not None:
                self._archive[session_id] = session

    def sessions_for_schedule(self, schedule_id: int) -> list[AttendanceSession]:
        with self._lock:
            sessions = list(self._live.values()) + list(self._archive.values())
        return [s for s in sessions if s.schedule_id == schedule_id]

    def live_count(self) -> int:
        with self._lock:
            return len(self._live)
