"""Dual-channel verifier.

Path A: the patient approves or denies from their own device, and the
counter polls ``check_status``. Path B: the operator types the OTP the
patient received. Both go through the registry's check-and-set, so the
first one to leave PENDING wins and the other sees the settled state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from rxconsent import metrics
from rxconsent.access.models import AccessToken, ConsentRequest, RequestState, ResolutionChannel
from rxconsent.errors import (
    AlreadyResolved,
    InvalidOtp,
    RequestExpired,
    TooManyAttempts,
)
from rxconsent.signing.hmac import verify_otp
from rxconsent.storage.audit_log import record_event

if TYPE_CHECKING:
    from rxconsent.access.registry import ConsentRequestRegistry
    from rxconsent.access.tokens import AccessTokenIssuer
    from rxconsent.storage.audit_log import AuditLogProtocol

__all__ = ["DualChannelVerifier", "StatusResult"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusResult:
    request_id: str
    state: RequestState
    granted: bool
    access_token: AccessToken | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "request_id": self.request_id,
            "state": self.state.value,
            "granted": self.granted,
        }
        if self.access_token is not None:
            d["access_token"] = self.access_token.token
            d["expires_at"] = self.access_token.expires_at.isoformat()
        return d


def _raise_if_settled(request: ConsentRequest) -> None:
    if request.state in (RequestState.DENIED, RequestState.EXPIRED):
        raise RequestExpired(f"Access request {request.request_id} is {request.state.value}")
    if request.state is RequestState.APPROVED:
        raise AlreadyResolved


class DualChannelVerifier:
    def __init__(
        self,
        registry: ConsentRequestRegistry,
        issuer: AccessTokenIssuer,
        *,
        otp_secret: str,
        max_attempts: int = 5,
        audit: AuditLogProtocol | None = None,
    ) -> None:
        self._registry = registry
        self._issuer = issuer
        self._otp_secret = otp_secret
        self._max_attempts = max_attempts
        self._audit = audit

    # -- Path A -------------------------------------------------------------

    def check_status(self, request_id: str) -> StatusResult:
        """Polling read for the operator's client.

        Raises:
            RequestNotFound: unknown request.
            RequestExpired: TTL elapsed before anyone resolved it.
        """
        request = self._registry.get(request_id)
        if request.state is RequestState.EXPIRED:
            raise RequestExpired(f"Access request {request_id} expired")
        if request.state is RequestState.APPROVED:
            return StatusResult(
                request_id=request_id,
                state=request.state,
                granted=True,
                access_token=self._issuer.issue(request),
            )
        return StatusResult(request_id=request_id, state=request.state, granted=False)

    def record_decision(self, request_id: str, *, approved: bool) -> ConsentRequest:
        """Patient's out-of-band approval or denial.

        Raises:
            RequestNotFound, RequestExpired, AlreadyResolved: as for ``verify_otp``.
        """
        target = RequestState.APPROVED if approved else RequestState.DENIED
        request, won = self._registry.resolve(request_id, target, ResolutionChannel.PATIENT_APP)
        if not won:
            _raise_if_settled(request)
        if approved:
            self._issuer.issue(request)
        return request

    # -- Path B -------------------------------------------------------------

    def verify_otp(self, request_id: str, candidate: str) -> AccessToken:
        """Check an operator-entered OTP; mint the token on a match.

        Raises:
            RequestNotFound: unknown request.
            RequestExpired: TTL elapsed, or already denied/expired.
            AlreadyResolved: the patient approved first; read the token via check_status.
            TooManyAttempts: this attempt reached the cap; request is now DENIED.
            InvalidOtp: mismatch; request stays PENDING.
        """
        while True:
            current = self._registry.get(request_id)
            _raise_if_settled(current)

            attempts = current.otp_attempts + 1
            matched = verify_otp(request_id, candidate, self._otp_secret, current.otp_hash)
            if matched:
                updated = replace(
                    current,
                    state=RequestState.APPROVED,
                    otp_attempts=attempts,
                    resolved_by=ResolutionChannel.OTP,
                )
            elif attempts >= self._max_attempts:
                updated = replace(
                    current,
                    state=RequestState.DENIED,
                    otp_attempts=attempts,
                    resolved_by=ResolutionChannel.ATTEMPT_CAP,
                )
            else:
                updated = replace(current, otp_attempts=attempts)

            if self._registry.commit(current, updated):
                break

        if matched:
            return self._issuer.issue(updated)

        metrics.record_otp_failure()
        record_event(
            self._audit,
            request_id,
            "otp_rejected",
            {"patient_prn": updated.patient_prn, "otp_attempts": attempts},
            actor="counter",
        )
        if updated.state is RequestState.DENIED:
            logger.warning("OTP attempt cap reached for %s; request denied", request_id)
            raise TooManyAttempts
        raise InvalidOtp(attempts_left=self._max_attempts - attempts)
