"""Interfaces of the systems the attendance core talks to."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from smart_attendance.models import AttendanceVerdict, EligibleStudent, Session


@dataclass(frozen=True)
class DetectedFace:
    descriptor: Sequence[float]
    bbox: dict[str, Any] | None = None


@dataclass(frozen=True)
class PhotoMatchResult:
    matched_student_ids: frozenset[int]
    detected_faces_count: int
    matches: tuple[tuple[int | None, float], ...] = field(default_factory=tuple)


class RosterProvider(Protocol):
    def get_eligible_students(self, schedule_id: int) -> list[EligibleStudent]: ...


class FaceVerifier(Protocol):
    def verify(self, student_id: int, face_sample: Sequence[float]) -> float:
        """Return the match confidence (0-1) of ``face_sample`` against the student's references."""
        ...


class PhotoMatcher(Protocol):
    def match(self, faces: Sequence[DetectedFace], roster: Sequence[EligibleStudent]) -> PhotoMatchResult: ...


class AttendanceLedger(Protocol):
    def commit(self, session_id: str, schedule_id: int, verdicts: Sequence[AttendanceVerdict]) -> None:
        """Persist the verdicts. Must be idempotent per ``session_id``."""
        ...


class Notifier(Protocol):
    def notify_absent(self, session: Session, verdict: AttendanceVerdict) -> None: ...
