"""Consent request and access token records."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

__all__ = ["Clock", "utcnow", "RequestState", "ResolutionChannel", "ConsentRequest", "AccessToken"]

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


class RequestState(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


class ResolutionChannel(StrEnum):
    """What moved a request out of PENDING."""

    PATIENT_APP = "patient_app"
    OTP = "otp"
    ATTEMPT_CAP = "attempt_cap"
    TTL = "ttl"


@dataclass(frozen=True)
class ConsentRequest:
    """Immutable snapshot of an access request. Updates go through the store's check-and-set."""

    request_id: str
    patient_prn: str
    created_at: datetime
    expires_at: datetime
    otp_hash: str
    state: RequestState = RequestState.PENDING
    otp_attempts: int = 0
    resolved_by: ResolutionChannel | None = None

    def is_overdue(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["created_at"] = self.created_at.isoformat()
        d["expires_at"] = self.expires_at.isoformat()
        d["state"] = self.state.value
        d["resolved_by"] = self.resolved_by.value if self.resolved_by else None
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConsentRequest:
        return cls(
            request_id=data["request_id"],
            patient_prn=data["patient_prn"],
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            otp_hash=data["otp_hash"],
            state=RequestState(data["state"]),
            otp_attempts=int(data.get("otp_attempts", 0)),
            resolved_by=ResolutionChannel(data["resolved_by"]) if data.get("resolved_by") else None,
        )


@dataclass(frozen=True)
class AccessToken:
    """Short-lived bearer token bound to one PRN and one approved request."""

    token: str
    patient_prn: str
    request_id: str
    issued_at: datetime
    expires_at: datetime
    consumed: bool = False

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["issued_at"] = self.issued_at.isoformat()
        d["expires_at"] = self.expires_at.isoformat()
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AccessToken:
        return cls(
            token=data["token"],
            patient_prn=data["patient_prn"],
            request_id=data["request_id"],
            issued_at=datetime.fromisoformat(data["issued_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            consumed=bool(data.get("consumed", False)),
        )
