"""Prescription collaborator — serves clinical data only behind a valid access token."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from rxconsent.errors import Forbidden, PrescriptionNotFound
from rxconsent.storage.audit_log import record_event

if TYPE_CHECKING:
    from rxconsent.access.tokens import AccessTokenIssuer
    from rxconsent.storage.audit_log import AuditLogProtocol

__all__ = [
    "Medicine",
    "Prescription",
    "PrescriptionServiceProtocol",
    "InMemoryPrescriptionService",
    "demo_prescriptions",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Medicine:
    name: str
    dosage: str
    frequency: str
    duration: str
    salt: str


@dataclass(frozen=True)
class Prescription:
    patient_name: str
    patient_prn: str
    doctor_name: str
    doctor_phone: str
    doctor_clinic: str
    date: str  # ISO 8601
    medicines: tuple[Medicine, ...] = field(default_factory=tuple)
    notes: str = ""

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["medicines"] = [asdict(m) for m in self.medicines]
        return d


class PrescriptionServiceProtocol(Protocol):
    def fetch_latest_prescription(self, prn: str, access_token: str) -> Prescription:
        """Latest prescription for *prn*.

        Raises:
            Forbidden: token rejected (TokenMismatch / TokenExpired).
            PrescriptionNotFound: nothing on file.
        """
        ...


def demo_prescriptions() -> dict[str, Prescription]:
    """The doctor-portal extracts the counter demo runs against."""
    today = datetime.now(UTC)
    return {
        "PRN-1001": Prescription(
            patient_name="Rahul Sharma",
            patient_prn="PRN-1001",
            doctor_name="Dr. Sameer Joshi",
            doctor_phone="+91 98765 11111",
            doctor_clinic="Joshi Clinic, Andheri West",
            date=today.isoformat(),
            medicines=(
                Medicine("Amoxicillin", "500mg", "TDS (Three times a day)", "7 days", "Amoxicillin Trihydrate"),
                Medicine("Paracetamol", "650mg", "SOS (When needed)", "3 days", "Paracetamol"),
            ),
            notes="Take Amoxicillin after meals. Complete the full course.",
        ),
        "PRN-1002": Prescription(
            patient_name="Priya Patel",
            patient_prn="PRN-1002",
            doctor_name="Dr. Ananya Ray",
            doctor_phone="+91 98765 22222",
            doctor_clinic="Ray Diagnostics, Bandra",
            date=(today - timedelta(days=1)).isoformat(),
            medicines=(
                Medicine("Metformin", "500mg", "BD (Twice a day)", "30 days", "Metformin Hydrochloride"),
            ),
            notes="Monitor blood sugar levels weekly.",
        ),
        "PRN-9999": Prescription(
            patient_name="John Doe",
            patient_prn="PRN-9999",
            doctor_name="Dr. Sarah Wilson",
            doctor_phone="+91 99999 00000",
            doctor_clinic="City Health Clinic",
            date=today.isoformat(),
            medicines=(
                Medicine("Ibuprofen", "400mg", "1-0-1", "5 days", "Ibuprofen"),
                Medicine("Aspirin", "75mg", "1-1-1", "3 days", "Acetylsalicylic Acid"),
            ),
            notes="Take after meals.",
        ),
    }


class InMemoryPrescriptionService:
    """Prescription lookup for dev/test. Validates the token before any read."""

    def __init__(
        self,
        issuer: AccessTokenIssuer,
        prescriptions: dict[str, Prescription] | None = None,
        audit: AuditLogProtocol | None = None,
    ) -> None:
        self._issuer = issuer
        self._prescriptions = demo_prescriptions() if prescriptions is None else prescriptions
        self._audit = audit

    def fetch_latest_prescription(self, prn: str, access_token: str) -> Prescription:
        prn = prn.strip()
        try:
            token = self._issuer.validate(access_token, prn)
        except Forbidden as exc:
            record_event(
                self._audit, prn, "prescription_forbidden", {"error_code": exc.error_code}
            )
            raise

        prescription = self._prescriptions.get(prn)
        if prescription is None:
            raise PrescriptionNotFound(f"No prescription on file for {prn}")

        record_event(
            self._audit,
            prn,
            "prescription_served",
            {"request_id": token.request_id},
            actor="counter",
        )
        logger.info("Prescription served for %s (request=%s)", prn, token.request_id)
        return prescription
