"""Cross-verification of scan and class-photo evidence into final verdicts."""
from typing import Iterable, Mapping, Sequence

from smart_attendance.models import (
    REASON_MANUAL,
    REASON_NO_PHOTO,
    REASON_NO_SCAN,
    REASON_NOT_IN_PHOTO,
    REASON_SCAN_AND_PHOTO,
    AttendanceStatus,
    AttendanceVerdict,
    EligibleStudent,
    PhotoMatchEvent,
)


def reconcile(
    roster: Sequence[EligibleStudent],
    verified_student_ids: Iterable[int],
    photo: PhotoMatchEvent | None,
    overrides: Mapping[int, AttendanceStatus] | None = None,
) -> list[AttendanceVerdict]:
    """
    Compute one verdict per eligible student plus any verified scanner missing
    from the roster.

    A student is present only when a verified scan and a class-photo match
    agree. A photo match on its own never grants presence. Manual overrides
    replace the computed status and reason unconditionally.

    Pure: the inputs are never mutated, so the result can be recomputed as
    often as the teacher polls.
    """
    overrides = overrides or {}
    verified = list(dict.fromkeys(int(sid) for sid in verified_student_ids))
    scanned = set(verified)
    in_photo = photo.matched_student_ids if photo is not None else frozenset()

    students: list[EligibleStudent] = list(roster)
    known = {s.student_id for s in students}
    for student_id in verified:
        if student_id not in known:
            students.append(EligibleStudent(student_id=student_id, student_name=f"Student {student_id}"))
            known.add(student_id)

    verdicts = []
    for student in students:
        was_scanned = student.student_id in scanned
        was_in_photo = student.student_id in in_photo

        if was_scanned and was_in_photo:
            status: AttendanceStatus = "present"
            reason = REASON_SCAN_AND_PHOTO
        elif was_scanned:
            status = "absent"
            reason = REASON_NOT_IN_PHOTO if photo is not None else REASON_NO_PHOTO
        else:
            status = "absent"
            reason = REASON_NO_SCAN

        manual = overrides.get(student.student_id)
        if manual is not None:
            status = manual
            reason = REASON_MANUAL

        verdicts.append(
            AttendanceVerdict(
                student_id=student.student_id,
                status=status,
                reason=reason,
                student_name=student.student_name,
                roll_number=student.roll_number,
                verified_by_scan=was_scanned,
                verified_by_photo=was_in_photo,
                manually_marked=manual is not None,
            )
        )
    return verdicts


def tally(verdicts: Sequence[AttendanceVerdict]) -> dict[str, int]:
    present = sum(1 for v in verdicts if v.status == "present")
    return {
        "present": present,
        "absent": len(verdicts) - present,
        "total_students": len(verdicts),
        "scanned": sum(1 for v in verdicts if v.verified_by_scan),
        "detected_in_photo": sum(1 for v in verdicts if v.verified_by_photo),
        "cross_verified": sum(1 for v in verdicts if v.verified_by_scan and v.verified_by_photo),
        "manually_marked": sum(1 for v in verdicts if v.manually_marked),
    }
