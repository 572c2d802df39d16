"""Tests for the access token issuer."""

from __future__ import annotations

from typing import Any

import pytest

from rxconsent.access.models import ConsentRequest, RequestState, ResolutionChannel
from rxconsent.access.service import AccessService
from rxconsent.errors import TokenExpired, TokenMismatch
from rxconsent.storage.audit_log import InMemoryAuditLog


def _approved(service: AccessService, prn: str = "PRN-1001") -> ConsentRequest:
    request = service.registry.create(prn)
    approved, _ = service.registry.resolve(
        request.request_id, RequestState.APPROVED, ResolutionChannel.PATIENT_APP
    )
    return approved


class TestIssue:
    def test_token_fields(self, service: AccessService, clock: Any) -> None:
        token = service.issuer.issue(_approved(service))
        assert token.patient_prn == "PRN-1001"
        assert token.issued_at == clock.now
        assert (token.expires_at - token.issued_at).total_seconds() == 600
        assert token.consumed is False
        assert len(token.token) >= 40

    def test_idempotent_per_request(self, service: AccessService, audit: InMemoryAuditLog) -> None:
        request = _approved(service)
        first = service.issuer.issue(request)
        second = service.issuer.issue(request)
        assert first == second
        assert len(audit.list_events(aggregate_id=request.request_id, event_type="token_issued")) == 1

    def test_distinct_requests_get_distinct_tokens(self, service: AccessService) -> None:
        a = service.issuer.issue(_approved(service))
        b = service.issuer.issue(_approved(service))
        assert a.token != b.token

    def test_refuses_unapproved_request(self, service: AccessService) -> None:
        pending = service.registry.create("PRN-1001")
        with pytest.raises(ValueError, match="pending"):
            service.issuer.issue(pending)


class TestValidate:
    def test_valid_for_issuing_prn(self, service: AccessService) -> None:
        token = service.issuer.issue(_approved(service))
        assert service.issuer.validate(token.token, "PRN-1001").request_id == token.request_id

    def test_other_prn_is_mismatch(self, service: AccessService) -> None:
        token = service.issuer.issue(_approved(service))
        with pytest.raises(TokenMismatch):
            service.issuer.validate(token.token, "PRN-1002")

    def test_unknown_token_is_mismatch(self, service: AccessService) -> None:
        with pytest.raises(TokenMismatch):
            service.issuer.validate("not-a-token", "PRN-1001")
        with pytest.raises(TokenMismatch):
            service.issuer.validate("", "PRN-1001")

    def test_expires_after_ttl(self, service: AccessService, clock: Any) -> None:
        token = service.issuer.issue(_approved(service))
        clock.advance(599)
        service.issuer.validate(token.token, "PRN-1001")
        clock.advance(1)
        with pytest.raises(TokenExpired):
            service.issuer.validate(token.token, "PRN-1001")

    def test_mismatch_reported_before_expiry(self, service: AccessService, clock: Any) -> None:
        token = service.issuer.issue(_approved(service))
        clock.advance(3600)
        with pytest.raises(TokenMismatch):
            service.issuer.validate(token.token, "PRN-1002")

    def test_readable_many_times_within_window(self, service: AccessService) -> None:
        token = service.issuer.issue(_approved(service))
        for _ in range(5):
            service.issuer.validate(token.token, "PRN-1001")


class TestRelease:
    def test_released_token_no_longer_validates(
        self, service: AccessService, audit: InMemoryAuditLog
    ) -> None:
        token = service.issuer.issue(_approved(service))
        assert service.issuer.release(token.token) is True
        with pytest.raises(TokenExpired):
            service.issuer.validate(token.token, "PRN-1001")
        assert audit.list_events(event_type="token_released")

    def test_release_unknown_token(self, service: AccessService) -> None:
        assert service.issuer.release("nope") is False
