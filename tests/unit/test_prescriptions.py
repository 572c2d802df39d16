"""Tests for the token-gated prescription collaborator."""

from __future__ import annotations

from typing import Any

import pytest

from rxconsent.access.service import AccessService
from rxconsent.errors import Forbidden, PrescriptionNotFound, TokenExpired, TokenMismatch
from rxconsent.storage.audit_log import InMemoryAuditLog


def _token_for(service: AccessService, notifier: Any, prn: str) -> str:
    request = service.registry.create(prn)
    return service.verifier.verify_otp(request.request_id, notifier.otp_for(request.request_id)).token


class TestFetchLatestPrescription:
    def test_returns_prescription_for_token_prn(self, service: AccessService, notifier: Any) -> None:
        token = _token_for(service, notifier, "PRN-1001")
        rx = service.fetch_prescription("PRN-1001", token)
        assert rx.patient_name == "Rahul Sharma"
        assert [m.name for m in rx.medicines] == ["Amoxicillin", "Paracetamol"]

    def test_token_for_other_patient_is_forbidden(
        self, service: AccessService, notifier: Any, audit: InMemoryAuditLog
    ) -> None:
        token = _token_for(service, notifier, "PRN-1001")
        with pytest.raises(TokenMismatch) as exc_info:
            service.fetch_prescription("PRN-1002", token)
        assert isinstance(exc_info.value, Forbidden)
        events = audit.list_events(aggregate_id="PRN-1002", event_type="prescription_forbidden")
        assert events[0]["payload"]["error_code"] == "TOKEN_MISMATCH"

    def test_expired_token_is_forbidden(
        self, service: AccessService, notifier: Any, clock: Any
    ) -> None:
        token = _token_for(service, notifier, "PRN-1001")
        clock.advance(601)
        with pytest.raises(TokenExpired):
            service.fetch_prescription("PRN-1001", token)

    def test_granted_patient_without_prescription(self, service: AccessService, notifier: Any) -> None:
        token = _token_for(service, notifier, "PRN-1003")
        with pytest.raises(PrescriptionNotFound):
            service.fetch_prescription("PRN-1003", token)

    def test_serialisation(self, service: AccessService, notifier: Any) -> None:
        token = _token_for(service, notifier, "PRN-1002")
        d = service.fetch_prescription("PRN-1002", token).to_dict()
        assert d["patient_prn"] == "PRN-1002"
        assert d["medicines"][0] == {
            "name": "Metformin",
            "dosage": "500mg",
            "frequency": "BD (Twice a day)",
            "duration": "30 days",
            "salt": "Metformin Hydrochloride",
        }
