"""Out-of-band OTP delivery — Twilio SMS in production, log-only in dev."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Protocol

from rxconsent.logging import mask_phone

if TYPE_CHECKING:
    from rxconsent.identity import Patient

__all__ = ["SendResult", "NotifierProtocol", "LogNotifier", "TwilioSmsNotifier", "otp_message"]

logger = logging.getLogger(__name__)


def otp_message(otp: str) -> str:
    return (
        f"Your pharmacy access code is {otp}. "
        "Share it only with the pharmacist at the counter, or approve the request in the app."
    )

@dataclass(frozen=True)
class SendResult:
    success: bool
    provider: str
    provider_message_id: str = ""
    error_code: str = ""
    error_message: str = ""

    @classmethod
    def failed(cls, provider: str, error_code: str, error_message: str) -> SendResult:
        return cls(False, provider, error_code=error_code, error_message=error_message[:200])

    def to_dict(self) -> dict[str, Any]:
        """Audit/log view; empty optional fields are left out."""
        return {k: v for k, v in asdict(self).items() if v or k in ("success", "provider")}


class NotifierProtocol(Protocol):
    """Fire-and-forget OTP delivery to the patient's registered channel."""

    def notify(self, patient: Patient, otp: str, request_id: str) -> SendResult:
        ...


class LogNotifier:
    """Dev notifier: records that a code went out, never the code itself."""

    def notify(self, patient: Patient, otp: str, request_id: str) -> SendResult:
        logger.info(
            "OTP dispatch (log only): prn=%s to=%s request=%s",
            patient.prn,
            mask_phone(patient.phone),
            request_id,
        )
        return SendResult(success=True, provider="log")


class TwilioSmsNotifier:
    """OTP by SMS through the Twilio REST API.

    Built only when RXC_TWILIO_ENABLED=true and credentials are set;
    otherwise the service falls back to LogNotifier.
    """

    provider = "twilio"

    def __init__(self, account_sid: str, auth_token: str, from_number: str) -> None:
        self._credentials = (account_sid, auth_token)
        self._from_number = from_number
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            from twilio.rest import Client  # type: ignore[import-untyped,import-not-found]

            self._client = Client(*self._credentials)
        return self._client

    def notify(self, patient: Patient, otp: str, request_id: str) -> SendResult:
        if not patient.phone:
            return SendResult.failed(self.provider, "NO_CHANNEL", "patient has no registered phone")

        try:
            sms = self._get_client().messages.create(
                to=patient.phone,
                from_=self._from_number,
                body=otp_message(otp),
            )
        except Exception as exc:  # twilio raises its own hierarchy plus transport errors
            logger.error("OTP SMS for %s failed: %s", request_id, exc)
            return SendResult.failed(self.provider, "TWILIO_ERROR", str(exc))

        logger.info("OTP SMS for %s queued as %s to %s", request_id, sms.sid, mask_phone(patient.phone))
        return SendResult(True, self.provider, provider_message_id=str(sms.sid))
