import json
import sqlite3

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from smart_attendance import config
from database.db import (
    add_student,
    add_student_face,
    deactivate_student_face,
    enroll_students,
    get_notifications,
    get_schedule_students,
    get_session_records,
    get_student_by_id,
    get_student_faces,
)

router = APIRouter()


class StudentCreate(BaseModel):
    name: str
    roll_number: str | None = None


class ScheduleEnrollment(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    student_ids: list[int] = Field(min_length=1)


class FaceRegistration(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    student_id: int
    face_descriptor: list[float] = Field(min_length=1)


def _student_payload(row) -> dict:
    return {"id": row[0], "name": row[1], "roll_number": row[2]}


@router.post("/students")
def create_student(payload: StudentCreate):
    name = payload.name.strip()
    roll_number = (payload.roll_number or "").strip() or None

    if not name:
        raise HTTPException(status_code=400, detail="Student name is required.")

    try:
        new_id = add_student(name, roll_number)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Roll number already exists.")
    return {"id": new_id, "name": name, "roll_number": roll_number}


@router.get("/students/{student_id}")
def student_detail(student_id: int):
    row = get_student_by_id(student_id)
    if not row:
        return {"found": False}
    return {"found": True, **_student_payload(row)}


@router.post("/schedules/{schedule_id}/students")
def enroll_schedule_students(schedule_id: int, payload: ScheduleEnrollment):
    unknown = [sid for sid in payload.student_ids if not get_student_by_id(sid)]
    if unknown:
        raise HTTPException(status_code=404, detail=f"Unknown student(s): {unknown}")

    added = enroll_students(schedule_id, payload.student_ids)
    return {
        "schedule_id": schedule_id,
        "added": added,
        "students": [_student_payload(r) for r in get_schedule_students(schedule_id)],
    }


@router.get("/schedules/{schedule_id}/students")
def schedule_students(schedule_id: int):
    return [_student_payload(r) for r in get_schedule_students(schedule_id)]


# -----------------------------
# Face references
# -----------------------------
@router.post("/smart-attendance/register-face", status_code=201)
def register_face(payload: FaceRegistration):
    if not get_student_by_id(payload.student_id):
        raise HTTPException(status_code=404, detail="Student not found.")

    existing = get_student_faces(payload.student_id)
    if len(existing) >= config.MAX_FACES_PER_STUDENT:
        raise HTTPException(
            status_code=400,
            detail=f"Maximum {config.MAX_FACES_PER_STUDENT} faces allowed per student.",
        )

    face_id = add_student_face(payload.student_id, payload.face_descriptor)
    return {
        "message": "Face registered successfully",
        "faceId": face_id,
        "totalFaces": len(existing) + 1,
    }


@router.get("/smart-attendance/student/{student_id}/faces")
def student_faces(student_id: int):
    rows = get_student_faces(student_id)
    return {
        "studentId": student_id,
        "faces": [
            {
                "id": r[0],
                "descriptorLength": len(json.loads(r[2])),
                "registeredAt": r[3],
            }
            for r in rows
        ],
        "totalFaces": len(rows),
    }


@router.delete("/smart-attendance/face/{face_id}")
def delete_face(face_id: int):
    if not deactivate_student_face(face_id):
        raise HTTPException(status_code=404, detail="Face not found.")
    return {"message": "Face deleted successfully", "faceId": face_id}


# -----------------------------
# Committed attendance
# -----------------------------
@router.get("/smart-attendance/session/{session_id}/records")
def session_records(session_id: str):
    rows = get_session_records(session_id)
    return {
        "sessionId": session_id,
        "records": [
            {
                "studentId": student_id,
                "status": status,
                "reason": reason,
                "verifiedByScan": bool(by_scan),
                "verifiedByPhoto": bool(by_photo),
                "manuallyMarked": bool(manual),
            }
            for (student_id, status, reason, by_scan, by_photo, manual) in rows
        ],
        "notifications": [
            {"studentId": r[0], "type": r[1], "message": r[2], "sentAt": r[3]}
            for r in get_notifications(session_id)
        ],
    }
