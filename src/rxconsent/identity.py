"""Identity store — patient records keyed by PRN. Read-only for this service."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

__all__ = ["Patient", "IdentityStoreProtocol", "InMemoryIdentityStore", "DEMO_PATIENTS"]


@dataclass(frozen=True)
class Patient:
    """Registered patient as known to the identity store."""

    prn: str
    name: str
    phone: str  # E.164, the out-of-band channel for OTP delivery


class IdentityStoreProtocol(Protocol):
    """Minimal contract for PRN resolution."""

    def resolve_prn(self, prn: str) -> Patient | None:
        """Return the patient registered under *prn*, or None."""
        ...


DEMO_PATIENTS: tuple[Patient, ...] = (
    Patient(prn="PRN-1001", name="Rahul Sharma", phone="+919876500001"),
    Patient(prn="PRN-1002", name="Priya Patel", phone="+919876500002"),
    Patient(prn="PRN-1003", name="Amit Kumar", phone="+919876500003"),
    Patient(prn="PRN-9999", name="John Doe", phone="+919999900000"),
)


class InMemoryIdentityStore:
    """Identity store for dev/test, seeded with the counter demo patients."""

    def __init__(self, patients: tuple[Patient, ...] | list[Patient] = DEMO_PATIENTS) -> None:
        self._patients: dict[str, Patient] = {p.prn: p for p in patients}

    def resolve_prn(self, prn: str) -> Patient | None:
        return self._patients.get(prn.strip())
