"""Shared fixtures for unit tests."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from rxconsent import metrics
from rxconsent.access.service import AccessService, build_access_service
from rxconsent.adapters.notifier import SendResult
from rxconsent.identity import Patient
from rxconsent.settings import Settings
from rxconsent.storage.audit_log import InMemoryAuditLog


class FakeClock:
    """Controllable UTC clock; advance() instead of sleeping through TTLs."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 15, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingNotifier:
    """Captures the OTPs that would have gone to the patient's phone."""

    def __init__(self, *, fail: bool = False) -> None:
        self.sent: list[tuple[Patient, str, str]] = []
        self.fail = fail

    def notify(self, patient: Patient, otp: str, request_id: str) -> SendResult:
        self.sent.append((patient, otp, request_id))
        if self.fail:
            return SendResult(success=False, provider="test", error_code="DOWN", error_message="down")
        return SendResult(success=True, provider="test")

    def otp_for(self, request_id: str) -> str:
        for _, otp, rid in reversed(self.sent):
            if rid == request_id:
                return otp
        msg = f"No OTP sent for {request_id}"
        raise KeyError(msg)


def _wrong_otp(otp: str) -> str:
    return "".join(str((int(c) + 1) % 10) for c in otp)


@pytest.fixture()
def anyio_backend() -> str:
    """The counter controller is built on asyncio; run async tests on it only."""
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_metrics() -> None:
    metrics.reset()


@pytest.fixture()
def wrong_otp() -> Callable[[str], str]:
    """A same-length code guaranteed to differ from the one given."""
    return _wrong_otp


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def audit() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        request_ttl_seconds=300,
        token_ttl_seconds=600,
        otp_length=6,
        otp_max_attempts=5,
        otp_secret="test-otp-secret-do-not-use-in-production",
        decision_secret="test-decision-secret",
        redis_url="",
        pg_dsn="",
    )


@pytest.fixture()
def service(
    test_settings: Settings,
    notifier: RecordingNotifier,
    audit: InMemoryAuditLog,
    clock: FakeClock,
) -> AccessService:
    return build_access_service(test_settings, notifier=notifier, audit=audit, clock=clock)


@pytest.fixture()
def app(test_settings: Settings, service: AccessService, audit: InMemoryAuditLog) -> Any:
    """API app wired to the in-memory service, without running the lifespan."""
    from rxconsent.api.app import create_app

    a = create_app()
    a.state.settings = test_settings
    a.state.audit_log = audit
    a.state.access_service = service
    return a
