"""Access token issuer — one short-lived token per approved request."""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING

from rxconsent.access.models import AccessToken, Clock, ConsentRequest, RequestState, utcnow
from rxconsent.errors import TokenExpired, TokenMismatch
from rxconsent.storage.audit_log import record_event

if TYPE_CHECKING:
    from rxconsent.storage.audit_log import AuditLogProtocol
    from rxconsent.storage.token_store import TokenStoreProtocol

__all__ = ["AccessTokenIssuer"]

logger = logging.getLogger(__name__)


class AccessTokenIssuer:
    """Mints, validates and releases access tokens."""

    def __init__(
        self,
        store: TokenStoreProtocol,
        *,
        ttl_seconds: int = 600,
        clock: Clock = utcnow,
        audit: AuditLogProtocol | None = None,
    ) -> None:
        self._store = store
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._audit = audit

    def issue(self, request: ConsentRequest) -> AccessToken:
        """Token for an APPROVED request; repeated calls return the same token."""
        if request.state is not RequestState.APPROVED:
            msg = f"Cannot issue a token for {request.request_id} in state {request.state.value}"
            raise ValueError(msg)

        existing = self._store.get_for_request(request.request_id)
        if existing is not None:
            return existing

        issued_at = self._clock()
        candidate = AccessToken(
            token=secrets.token_urlsafe(32),
            patient_prn=request.patient_prn,
            request_id=request.request_id,
            issued_at=issued_at,
            expires_at=issued_at + self._ttl,
        )
        stored = self._store.put_if_absent(candidate)
        if stored.token == candidate.token:
            logger.info("Token issued for %s (%s)", request.request_id, request.patient_prn)
            record_event(
                self._audit,
                request.request_id,
                "token_issued",
                {"patient_prn": request.patient_prn, "expires_at": stored.expires_at.isoformat()},
                idempotency_key=f"token_issued:{request.request_id}",
            )
        return stored

    def for_request(self, request_id: str) -> AccessToken | None:
        return self._store.get_for_request(request_id)

    def validate(self, token: str, patient_prn: str) -> AccessToken:
        """Sole gate in front of clinical data.

        Raises:
            TokenMismatch: unknown token, or issued for another PRN.
            TokenExpired: past its expiry, or released by its session.
        """
        record = self._store.get(token) if token else None
        if record is None:
            raise TokenMismatch("Unknown access token")
        if record.patient_prn != patient_prn.strip():
            logger.warning(
                "Token for %s presented for %s (request=%s)",
                record.patient_prn,
                patient_prn,
                record.request_id,
            )
            raise TokenMismatch
        if record.consumed:
            raise TokenExpired("Access token was released when its session closed")
        if self._clock() >= record.expires_at:
            raise TokenExpired
        return record

    def release(self, token: str) -> bool:
        """Mark the token consumed so a closed session cannot be replayed."""
        record = self._store.get(token)
        if record is None or not self._store.mark_consumed(token):
            return False
        record_event(
            self._audit,
            record.request_id,
            "token_released",
            {"patient_prn": record.patient_prn},
        )
        return True
