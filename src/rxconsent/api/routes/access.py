"""Operator-facing access endpoints plus the patient decision callback."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Header, Request, status
from pydantic import BaseModel, Field, ValidationError
from starlette.responses import Response

from rxconsent.errors import DecisionNotConfigured, Forbidden, InvalidRequest, InvalidSignature
from rxconsent.logging import bind_access_context
from rxconsent.signing.hmac import verify_body_signature
from rxconsent.storage.projections import AccessAuditProjection

if TYPE_CHECKING:
    from rxconsent.access.service import AccessService

router = APIRouter()

__all__ = ["router", "bearer_token"]

logger = logging.getLogger(__name__)


class AccessRequestIn(BaseModel):
    patient_prn: str = Field(min_length=1, max_length=64)


class AccessRequestOut(BaseModel):
    request_id: str
    expires_at: str


class StatusOut(BaseModel):
    request_id: str
    state: str
    granted: bool
    access_token: str | None = None
    expires_at: str | None = None


class VerifyOtpIn(BaseModel):
    request_id: str = Field(min_length=1)
    otp: str = Field(min_length=1, max_length=16)


class TokenOut(BaseModel):
    access_token: str
    patient_prn: str
    expires_at: str


class DecisionIn(BaseModel):
    approved: bool


class DecisionOut(BaseModel):
    request_id: str
    state: str


def _service(request: Request) -> AccessService:
    return request.app.state.access_service  # type: ignore[no-any-return]


def bearer_token(authorization: str) -> str:
    """Extract the access token from an ``Authorization: Bearer`` header."""
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        raise Forbidden("Missing access token")
    return value.strip()


@router.post(
    "/access/request",
    response_model=AccessRequestOut,
    status_code=status.HTTP_201_CREATED,
    summary="Open a consent request for a patient PRN",
    operation_id="request_access",
)
async def request_access(body: AccessRequestIn, request: Request) -> AccessRequestOut:
    """Validate the PRN, create a PENDING request and send the OTP out of band."""
    created = _service(request).request_access(body.patient_prn)
    bind_access_context(request_id=created.request_id, patient_prn=created.patient_prn)
    return AccessRequestOut(request_id=created.request_id, expires_at=created.expires_at.isoformat())


@router.get(
    "/access/check-status/{request_id}",
    response_model=StatusOut,
    summary="Poll a consent request",
    operation_id="check_status",
)
async def check_status(request_id: str, request: Request) -> StatusOut:
    result = _service(request).check_status(request_id)
    return StatusOut(**result.to_dict())


@router.post(
    "/access/verify-otp",
    response_model=TokenOut,
    summary="Resolve a consent request with the patient's OTP",
    operation_id="verify_otp",
)
async def verify_otp(body: VerifyOtpIn, request: Request) -> TokenOut:
    bind_access_context(request_id=body.request_id)
    token = _service(request).verify_otp(body.request_id, body.otp)
    return TokenOut(
        access_token=token.token,
        patient_prn=token.patient_prn,
        expires_at=token.expires_at.isoformat(),
    )


@router.post(
    "/access/{request_id}/decision",
    response_model=DecisionOut,
    summary="Patient app approval or denial (signed callback)",
    operation_id="record_decision",
)
async def record_decision(
    request_id: str,
    request: Request,
    x_signature: str = Header(default=""),
) -> Any:
    """Path A signal. Body ``{"approved": bool}`` signed with the decision secret."""
    settings = request.app.state.settings
    raw = await request.body()

    if not settings.decision_secret:
        logger.error("RXC_DECISION_SECRET not set; rejecting decision (fail-closed)")
        raise DecisionNotConfigured
    if not verify_body_signature(raw, settings.decision_secret, x_signature):
        logger.warning("Decision signature verification failed for %s", request_id)
        raise InvalidSignature

    try:
        decision = DecisionIn.model_validate_json(raw)
    except ValidationError as exc:
        raise InvalidRequest("Invalid decision payload") from exc

    bind_access_context(request_id=request_id)
    resolved = _service(request).record_decision(request_id, approved=decision.approved)
    return DecisionOut(request_id=resolved.request_id, state=resolved.state.value)


@router.post(
    "/access/release",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Release the token when a counter session closes",
    operation_id="release_token",
)
async def release_token(request: Request, authorization: str = Header(default="")) -> Response:
    released = _service(request).release(bearer_token(authorization))
    if not released:
        logger.info("Release of unknown token ignored")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/access/audit/summary",
    summary="How access requests were resolved",
    operation_id="audit_summary",
)
async def audit_summary(request: Request) -> dict[str, Any]:
    audit = request.app.state.audit_log
    return AccessAuditProjection().project(audit.list_events(limit=10000))
