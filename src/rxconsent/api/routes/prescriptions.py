"""Prescription lookup — gated by the counter session's access token."""

from __future__ import annotations

from fastapi import APIRouter, Header, Request
from pydantic import BaseModel

from rxconsent.api.routes.access import bearer_token

router = APIRouter()

__all__ = ["router"]


class MedicineOut(BaseModel):
    name: str
    dosage: str
    frequency: str
    duration: str
    salt: str


class PrescriptionOut(BaseModel):
    patient_name: str
    patient_prn: str
    doctor_name: str
    doctor_phone: str
    doctor_clinic: str
    date: str
    medicines: list[MedicineOut]
    notes: str


@router.get(
    "/prescriptions/latest/{prn}",
    response_model=PrescriptionOut,
    summary="Latest prescription for a patient",
    operation_id="fetch_prescription",
)
async def fetch_prescription(
    prn: str,
    request: Request,
    authorization: str = Header(default=""),
) -> PrescriptionOut:
    """Requires ``Authorization: Bearer <access token>`` issued for this PRN."""
    service = request.app.state.access_service
    prescription = service.fetch_prescription(prn, bearer_token(authorization))
    return PrescriptionOut.model_validate(prescription.to_dict())
