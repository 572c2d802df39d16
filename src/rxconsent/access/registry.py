"""Consent request registry — creates requests and owns every state change."""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import timedelta
from typing import TYPE_CHECKING

from rxconsent import metrics
from rxconsent.access.models import (
    Clock,
    ConsentRequest,
    RequestState,
    ResolutionChannel,
    utcnow,
)
from rxconsent.errors import RequestNotFound, UnknownPatient
from rxconsent.signing.hmac import generate_otp, hash_otp
from rxconsent.storage.audit_log import record_event

if TYPE_CHECKING:
    from rxconsent.adapters.notifier import NotifierProtocol
    from rxconsent.identity import IdentityStoreProtocol, Patient
    from rxconsent.storage.audit_log import AuditLogProtocol
    from rxconsent.storage.request_store import RequestStoreProtocol

__all__ = ["ConsentRequestRegistry"]

logger = logging.getLogger(__name__)


class ConsentRequestRegistry:
    """Creates consent requests and applies check-and-set transitions.

    Reads are where TTL expiry happens: any read of an overdue PENDING
    request moves it to EXPIRED before the caller sees it.
    """

    def __init__(
        self,
        identity: IdentityStoreProtocol,
        store: RequestStoreProtocol,
        notifier: NotifierProtocol,
        *,
        otp_secret: str,
        ttl_seconds: int = 300,
        otp_length: int = 6,
        clock: Clock = utcnow,
        audit: AuditLogProtocol | None = None,
    ) -> None:
        self._identity = identity
        self._store = store
        self._notifier = notifier
        self._otp_secret = otp_secret
        self._ttl = timedelta(seconds=ttl_seconds)
        self._otp_length = otp_length
        self._clock = clock
        self._audit = audit

    def create(self, patient_prn: str) -> ConsentRequest:
        """Open a PENDING request for *patient_prn* and send its OTP out of band.

        Raises:
            UnknownPatient: PRN does not resolve in the identity store.
        """
        patient = self._identity.resolve_prn(patient_prn)
        if patient is None:
            logger.info("Access request rejected: unknown PRN %s", patient_prn)
            raise UnknownPatient(f"No patient registered under {patient_prn.strip()!r}")

        request_id = f"REQ-{uuid.uuid4().hex.upper()}"
        otp = generate_otp(self._otp_length)
        now = self._clock()
        request = ConsentRequest(
            request_id=request_id,
            patient_prn=patient.prn,
            created_at=now,
            expires_at=now + self._ttl,
            otp_hash=hash_otp(request_id, otp, self._otp_secret),
        )
        self._store.add(request)
        metrics.record_access_requested()
        record_event(
            self._audit,
            request_id,
            "access_requested",
            {"patient_prn": patient.prn, "expires_at": request.expires_at.isoformat()},
            actor="counter",
        )
        logger.info("Access requested: %s for %s", request_id, patient.prn)

        self._dispatch_otp(patient, otp, request_id)
        return request

    def _dispatch_otp(self, patient: Patient, otp: str, request_id: str) -> None:
        """Hand the OTP to the notifier. Delivery failure never fails creation."""
        try:
            result = self._notifier.notify(patient, otp, request_id)
            success, detail = result.success, result.error_code
        except Exception as exc:  # notifier is an external collaborator
            logger.warning("Notifier raised for %s", request_id, exc_info=True)
            success, detail = False, type(exc).__name__

        if success:
            record_event(self._audit, request_id, "otp_dispatched", {"patient_prn": patient.prn})
            return

        metrics.record_notifier_failure()
        logger.warning(
            "NOTIFIER_UNAVAILABLE: OTP for %s not delivered (%s); patient app approval still possible",
            request_id,
            detail,
        )
        record_event(
            self._audit,
            request_id,
            "notifier_unavailable",
            {"patient_prn": patient.prn, "error_code": detail},
        )

    def get(self, request_id: str) -> ConsentRequest:
        """Current snapshot, with lazy TTL expiry applied.

        Raises:
            RequestNotFound: no request with this id.
        """
        while True:
            current = self._store.get(request_id)
            if current is None:
                raise RequestNotFound(f"Access request {request_id!r} not found")
            if current.state is not RequestState.PENDING or not current.is_overdue(self._clock()):
                return current
            expired = replace(
                current, state=RequestState.EXPIRED, resolved_by=ResolutionChannel.TTL
            )
            if self.commit(current, expired):
                return expired

    def commit(self, current: ConsentRequest, updated: ConsentRequest) -> bool:
        """Check-and-set *current* -> *updated*; audit the transition if it won."""
        if not self._store.compare_and_set(current, updated):
            logger.debug("Lost check-and-set race on %s", current.request_id)
            return False
        if updated.state is not current.state:
            self._on_transition(updated)
        return True

    def resolve(
        self,
        request_id: str,
        state: RequestState,
        channel: ResolutionChannel,
    ) -> tuple[ConsentRequest, bool]:
        """Move a PENDING request to *state*. Returns (snapshot, won)."""
        while True:
            current = self.get(request_id)
            if current.state is not RequestState.PENDING:
                return current, False
            updated = replace(current, state=state, resolved_by=channel)
            if self.commit(current, updated):
                return updated, True

    def _on_transition(self, request: ConsentRequest) -> None:
        channel = request.resolved_by.value if request.resolved_by else "unknown"
        payload = {
            "patient_prn": request.patient_prn,
            "channel": channel,
            "otp_attempts": request.otp_attempts,
        }
        if request.state is RequestState.APPROVED:
            metrics.record_grant(channel)
            record_event(self._audit, request.request_id, "request_approved", payload)
        elif request.state is RequestState.DENIED:
            metrics.record_denial()
            record_event(self._audit, request.request_id, "request_denied", payload)
        elif request.state is RequestState.EXPIRED:
            metrics.record_expiry()
            record_event(self._audit, request.request_id, "request_expired", payload)
        logger.info("Request %s -> %s via %s", request.request_id, request.state.value, channel)
