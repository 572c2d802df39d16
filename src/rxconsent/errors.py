"""Error taxonomy for the patient data access protocol.

Every error carries a machine-readable ``error_code`` and the HTTP status
the API answers with, so the same classes travel unchanged from the
registry up to the operator's client.
"""

from __future__ import annotations

__all__ = [
    "AccessError",
    "UnknownPatient",
    "RequestNotFound",
    "RequestExpired",
    "AlreadyResolved",
    "InvalidOtp",
    "TooManyAttempts",
    "Forbidden",
    "TokenExpired",
    "TokenMismatch",
    "NotifierUnavailable",
    "PrescriptionNotFound",
    "InvalidTransition",
    "GatewayUnavailable",
    "InvalidRequest",
    "InvalidSignature",
    "DecisionNotConfigured",
    "error_from_code",
]


class AccessError(Exception):
    """Base class for protocol errors surfaced to the operator."""

    error_code = "ACCESS_ERROR"
    http_status = 400
    default_message = "Access request failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class UnknownPatient(AccessError):
    error_code = "UNKNOWN_PATIENT"
    http_status = 404
    default_message = "No patient registered under this PRN"


class RequestNotFound(AccessError):
    error_code = "REQUEST_NOT_FOUND"
    http_status = 404
    default_message = "Access request not found"


class RequestExpired(AccessError):
    error_code = "REQUEST_EXPIRED"
    http_status = 410
    default_message = "Access request expired"


class AlreadyResolved(AccessError):
    """The other channel already approved the request; fetch its token instead."""

    error_code = "ALREADY_RESOLVED"
    http_status = 409
    default_message = "Access request already approved"


class InvalidOtp(AccessError):
    error_code = "INVALID_OTP"
    http_status = 401
    default_message = "Invalid OTP"

    def __init__(self, message: str | None = None, *, attempts_left: int | None = None) -> None:
        super().__init__(message)
        self.attempts_left = attempts_left


class TooManyAttempts(AccessError):
    error_code = "TOO_MANY_ATTEMPTS"
    http_status = 429
    default_message = "Too many OTP attempts; request denied"


class Forbidden(AccessError):
    """Token rejected by the prescription gate."""

    error_code = "FORBIDDEN"
    http_status = 403
    default_message = "Access token rejected"


class TokenExpired(Forbidden):
    error_code = "TOKEN_EXPIRED"
    http_status = 401
    default_message = "Access token expired"


class TokenMismatch(Forbidden):
    error_code = "TOKEN_MISMATCH"
    http_status = 403
    default_message = "Access token was issued for a different patient"


class NotifierUnavailable(AccessError):
    """OTP delivery failed. Logged and audited, never fatal."""

    error_code = "NOTIFIER_UNAVAILABLE"
    http_status = 503
    default_message = "Out-of-band notifier unavailable"


class PrescriptionNotFound(AccessError):
    error_code = "PRESCRIPTION_NOT_FOUND"
    http_status = 404
    default_message = "No prescription on file for this patient"


class InvalidTransition(AccessError):
    """Operator action not allowed in the current counter session state."""

    error_code = "INVALID_TRANSITION"
    http_status = 409
    default_message = "Action not allowed in the current session state"


class GatewayUnavailable(AccessError):
    """The counter client could not reach the access service."""

    error_code = "GATEWAY_UNAVAILABLE"
    http_status = 503
    default_message = "Access service unreachable"


class InvalidRequest(AccessError):
    error_code = "INVALID_REQUEST"
    http_status = 400
    default_message = "Invalid request payload"


class InvalidSignature(AccessError):
    """Decision callback signature did not verify."""

    error_code = "INVALID_SIGNATURE"
    http_status = 401
    default_message = "Invalid signature"


class DecisionNotConfigured(AccessError):
    """No decision secret configured; callbacks are refused."""

    error_code = "DECISION_NOT_CONFIGURED"
    http_status = 503
    default_message = "Decision signature verification not configured"


_BY_CODE: dict[str, type[AccessError]] = {
    cls.error_code: cls
    for cls in (
        UnknownPatient,
        RequestNotFound,
        RequestExpired,
        AlreadyResolved,
        InvalidOtp,
        TooManyAttempts,
        Forbidden,
        TokenExpired,
        TokenMismatch,
        NotifierUnavailable,
        PrescriptionNotFound,
        InvalidTransition,
        GatewayUnavailable,
        InvalidRequest,
        InvalidSignature,
        DecisionNotConfigured,
    )
}


def error_from_code(error_code: str, message: str | None = None) -> AccessError:
    """Rebuild a typed error from an API error payload."""
    cls = _BY_CODE.get(error_code, AccessError)
    return cls(message)
