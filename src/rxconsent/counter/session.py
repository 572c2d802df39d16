"""Counter session states and the transition map the controller enforces."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

__all__ = [
    "SessionStatus",
    "SessionNotice",
    "CounterSession",
    "TRANSITIONS",
    "UNIVERSAL_TRANSITIONS",
]


class SessionStatus(StrEnum):
    IDLE = "idle"
    REQUESTING = "requesting"
    AWAITING_APPROVAL = "awaiting_approval"
    VERIFYING = "verifying"
    GRANTED = "granted"
    CLOSED = "closed"


class SessionNotice(StrEnum):
    """Operator-visible outcome of the last step."""

    DENIED = "denied"
    EXPIRED = "expired"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    INVALID_OTP = "invalid_otp"
    UNKNOWN_PATIENT = "unknown_patient"
    REQUEST_FAILED = "request_failed"
    FETCH_FAILED = "fetch_failed"
    NETWORK_ERROR = "network_error"


# {current_status: {trigger: next_status}}
TRANSITIONS: dict[SessionStatus, dict[str, SessionStatus]] = {
    SessionStatus.IDLE: {
        "submit": SessionStatus.REQUESTING,
    },
    SessionStatus.REQUESTING: {
        "created": SessionStatus.AWAITING_APPROVAL,
        "failed": SessionStatus.IDLE,
    },
    SessionStatus.AWAITING_APPROVAL: {
        "granted": SessionStatus.GRANTED,
        "denied": SessionStatus.IDLE,
        "expired": SessionStatus.IDLE,
        "submit_otp": SessionStatus.VERIFYING,
    },
    SessionStatus.VERIFYING: {
        "granted": SessionStatus.GRANTED,
        "otp_invalid": SessionStatus.AWAITING_APPROVAL,
        "denied": SessionStatus.IDLE,
        "expired": SessionStatus.IDLE,
    },
    SessionStatus.GRANTED: {},
    SessionStatus.CLOSED: {
        "submit": SessionStatus.REQUESTING,
    },
}

# Explicit operator close works from anywhere.
UNIVERSAL_TRANSITIONS: dict[str, SessionStatus] = {
    "close": SessionStatus.CLOSED,
}


@dataclass
class CounterSession:
    """Client-held view of one patient lookup. Never reused across PRNs."""

    patient_prn: str = ""
    request_id: str = ""
    status: SessionStatus = SessionStatus.IDLE
    expires_at: datetime | None = None
    access_token: str = ""
    prescription: dict[str, Any] | None = None
    last_notice: SessionNotice | None = None
    notice_message: str = ""
    attempts_left: int | None = None

    def clear_identifiers(self) -> None:
        self.request_id = ""
        self.expires_at = None
        self.access_token = ""
        self.prescription = None
        self.attempts_left = None
