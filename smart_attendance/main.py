import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from database.db import create_tables
from smart_attendance.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_DIR,
    LOG_LEVEL,
)
from smart_attendance.errors import AttendanceError, DuplicateActiveSession
from smart_attendance.logging_config import setup_logging
from smart_attendance.routers import core, smart_attendance, students
from smart_attendance.services.attendance import reset_service

logger = logging.getLogger(__name__)

app = FastAPI(title="Smart Attendance API")

# -----------------------------
# CORS
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


# -----------------------------
# Startup / shutdown
# -----------------------------
@app.on_event("startup")
def _startup():
    setup_logging(LOG_LEVEL, LOG_DIR)
    create_tables()


@app.on_event("shutdown")
def _shutdown():
    reset_service()


# -----------------------------
# Errors
# -----------------------------
@app.exception_handler(AttendanceError)
async def attendance_error_handler(request: Request, exc: AttendanceError):
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    else:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)

    body = {"detail": exc.message, "code": exc.code}
    if exc.session_id:
        body["sessionId"] = exc.session_id
    if isinstance(exc, DuplicateActiveSession):
        body["existingSessionId"] = exc.session_id
        body["scheduleId"] = exc.schedule_id
    return JSONResponse(status_code=exc.status_code, content=body)


app.include_router(core.router)
app.include_router(students.router)
app.include_router(smart_attendance.router)
