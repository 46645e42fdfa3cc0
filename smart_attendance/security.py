import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime
from typing import Any

from smart_attendance.config import QR_SIGNING_KEY
from smart_attendance.errors import InvalidQrToken
from smart_attendance.models import Session

security_logger = logging.getLogger("security")


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(payload_b64: str, key: str) -> str:
    digest = hmac.new(
        key.encode("utf-8"),
        payload_b64.encode("ascii"),
        hashlib.sha256,
    ).digest()
    return _b64url_encode(digest)


def issue_qr_token(session: Session, *, key: str | None = None) -> str:
    """Token the QR code encodes; expiry is the session's absolute QR deadline."""
    payload = {
        "sid": session.session_id,
        "scheduleId": session.schedule_id,
        "exp": session.qr_expires_at.timestamp(),
    }
    payload_json = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    payload_b64 = _b64url_encode(payload_json.encode("utf-8"))
    return f"{payload_b64}.{_sign(payload_b64, key or QR_SIGNING_KEY)}"


def decode_qr_token(token: str, now: datetime, *, key: str | None = None) -> dict[str, Any]:
    if not token or "." not in token:
        security_logger.warning("QR token rejected: malformed")
        raise InvalidQrToken("Invalid or expired QR code.")

    payload_b64, signature = token.split(".", 1)
    expected = _sign(payload_b64, key or QR_SIGNING_KEY)
    if not hmac.compare_digest(signature, expected):
        security_logger.warning("QR token rejected: bad signature")
        raise InvalidQrToken("Invalid or expired QR code.")

    try:
        payload = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        security_logger.warning("QR token rejected: undecodable payload")
        raise InvalidQrToken("Invalid or expired QR code.")

    if not isinstance(payload, dict) or not isinstance(payload.get("sid"), str):
        raise InvalidQrToken("Invalid or expired QR code.")
    exp = payload.get("exp")
    if not isinstance(exp, (int, float)):
        raise InvalidQrToken("Invalid or expired QR code.")
    if now.timestamp() > exp:
        security_logger.info("QR token for session %s presented after expiry", payload["sid"])
        raise InvalidQrToken("QR code has expired.", session_id=payload["sid"])

    return payload
