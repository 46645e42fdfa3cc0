class AttendanceError(Exception):
    """Base for session-scoped failures. Never fatal to the process."""

    status_code = 400
    code = "ATTENDANCE_ERROR"

    def __init__(self, message: str, *, session_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.session_id = session_id


class DuplicateActiveSession(AttendanceError):
    status_code = 409
    code = "DUPLICATE_ACTIVE_SESSION"

    def __init__(self, message: str, *, session_id: str | None = None, schedule_id: int | None = None):
        super().__init__(message, session_id=session_id)
        self.schedule_id = schedule_id


class SessionNotFound(AttendanceError):
    status_code = 404
    code = "SESSION_NOT_FOUND"


class SessionClosed(AttendanceError):
    status_code = 409
    code = "SESSION_CLOSED"


class SessionExpired(AttendanceError):
    status_code = 403
    code = "SESSION_EXPIRED"


class PhotoAlreadyCaptured(AttendanceError):
    status_code = 409
    code = "PHOTO_ALREADY_CAPTURED"


class PhotoRequired(AttendanceError):
    status_code = 409
    code = "PHOTO_REQUIRED"


class AlreadyFinalized(AttendanceError):
    status_code = 409
    code = "ALREADY_FINALIZED"


class StudentNotEligible(AttendanceError):
    status_code = 400
    code = "STUDENT_NOT_ELIGIBLE"


class InvalidQrToken(AttendanceError):
    status_code = 401
    code = "INVALID_QR_TOKEN"


class VerifierTimeout(AttendanceError):
    # Degrades a single scan to rejected; never returned to the caller.
    status_code = 504
    code = "VERIFIER_TIMEOUT"


class LedgerCommitFailed(AttendanceError):
    status_code = 503
    code = "LEDGER_COMMIT_FAILED"
