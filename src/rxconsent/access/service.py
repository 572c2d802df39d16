"""Access service — wires registry, verifier, issuer and prescriptions together."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from rxconsent.access.models import Clock, utcnow
from rxconsent.access.registry import ConsentRequestRegistry
from rxconsent.access.tokens import AccessTokenIssuer
from rxconsent.access.verifier import DualChannelVerifier
from rxconsent.adapters.notifier import LogNotifier, TwilioSmsNotifier
from rxconsent.identity import InMemoryIdentityStore
from rxconsent.prescriptions import InMemoryPrescriptionService
from rxconsent.storage.request_store import InMemoryRequestStore, RedisRequestStore
from rxconsent.storage.token_store import InMemoryTokenStore, RedisTokenStore

if TYPE_CHECKING:
    import redis

    from rxconsent.access.models import AccessToken, ConsentRequest
    from rxconsent.access.verifier import StatusResult
    from rxconsent.adapters.notifier import NotifierProtocol
    from rxconsent.identity import IdentityStoreProtocol
    from rxconsent.prescriptions import Prescription, PrescriptionServiceProtocol
    from rxconsent.settings import Settings
    from rxconsent.storage.audit_log import AuditLogProtocol

__all__ = ["AccessService", "build_access_service"]

logger = logging.getLogger(__name__)


@dataclass
class AccessService:
    """Everything the HTTP surface and the local counter gateway call into."""

    registry: ConsentRequestRegistry
    verifier: DualChannelVerifier
    issuer: AccessTokenIssuer
    prescriptions: PrescriptionServiceProtocol
    audit: AuditLogProtocol | None = None

    def request_access(self, patient_prn: str) -> ConsentRequest:
        return self.registry.create(patient_prn)

    def check_status(self, request_id: str) -> StatusResult:
        return self.verifier.check_status(request_id)

    def verify_otp(self, request_id: str, otp: str) -> AccessToken:
        return self.verifier.verify_otp(request_id, otp)

    def record_decision(self, request_id: str, *, approved: bool) -> ConsentRequest:
        return self.verifier.record_decision(request_id, approved=approved)

    def release(self, access_token: str) -> bool:
        return self.issuer.release(access_token)

    def fetch_prescription(self, prn: str, access_token: str) -> Prescription:
        return self.prescriptions.fetch_latest_prescription(prn, access_token)


def _build_notifier(settings: Settings) -> NotifierProtocol:
    if settings.twilio_enabled and settings.twilio_account_sid and settings.twilio_auth_token:
        return TwilioSmsNotifier(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_from_number,
        )
    if settings.twilio_enabled:
        logger.warning("Twilio enabled but credentials missing; OTPs are only logged")
    return LogNotifier()


def build_access_service(
    settings: Settings,
    *,
    redis_client: redis.Redis | None = None,  # type: ignore[type-arg]
    audit: AuditLogProtocol | None = None,
    identity: IdentityStoreProtocol | None = None,
    notifier: NotifierProtocol | None = None,
    clock: Clock = utcnow,
) -> AccessService:
    """Assemble the service from settings. Redis-backed stores when a client is given."""
    otp_secret = settings.otp_secret
    if not otp_secret:
        logger.warning("RXC_OTP_SECRET not set, using a per-process key; OTPs die with the process")
        otp_secret = secrets.token_hex(32)

    if redis_client is not None:
        request_store: Any = RedisRequestStore(redis_client)
        token_store: Any = RedisTokenStore(redis_client)
    else:
        request_store = InMemoryRequestStore()
        token_store = InMemoryTokenStore()

    registry = ConsentRequestRegistry(
        identity=identity or InMemoryIdentityStore(),
        store=request_store,
        notifier=notifier or _build_notifier(settings),
        otp_secret=otp_secret,
        ttl_seconds=settings.request_ttl_seconds,
        otp_length=settings.otp_length,
        clock=clock,
        audit=audit,
    )
    issuer = AccessTokenIssuer(
        token_store,
        ttl_seconds=settings.token_ttl_seconds,
        clock=clock,
        audit=audit,
    )
    verifier = DualChannelVerifier(
        registry,
        issuer,
        otp_secret=otp_secret,
        max_attempts=settings.otp_max_attempts,
        audit=audit,
    )
    return AccessService(
        registry=registry,
        verifier=verifier,
        issuer=issuer,
        prescriptions=InMemoryPrescriptionService(issuer, audit=audit),
        audit=audit,
    )
