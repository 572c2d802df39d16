"""Tests for OTP notifiers (Twilio with a mocked client, log-only)."""

from __future__ import annotations

import logging
from unittest.mock import MagicMock, patch

import pytest

from rxconsent.adapters.notifier import LogNotifier, SendResult, TwilioSmsNotifier, otp_message
from rxconsent.identity import Patient

PATIENT = Patient(prn="PRN-1001", name="Rahul Sharma", phone="+919876500001")


class TestSendResult:
    def test_to_dict_success(self) -> None:
        d = SendResult(success=True, provider="twilio", provider_message_id="SM123").to_dict()
        assert d["success"] is True
        assert d["provider_message_id"] == "SM123"
        assert "error_code" not in d

    def test_to_dict_failure(self) -> None:
        d = SendResult(
            success=False, provider="twilio", error_code="21211", error_message="Invalid phone"
        ).to_dict()
        assert d["success"] is False
        assert d["error_code"] == "21211"


class TestTwilioSmsNotifier:
    def setup_method(self) -> None:
        self.notifier = TwilioSmsNotifier(
            account_sid="ACtest",
            auth_token="token-test",
            from_number="+15005550006",
        )

    def test_notify_success(self) -> None:
        mock_message = MagicMock()
        mock_message.sid = "SM_MOCK_123"
        mock_client = MagicMock()
        mock_client.messages.create.return_value = mock_message

        with patch.object(self.notifier, "_get_client", return_value=mock_client):
            result = self.notifier.notify(PATIENT, "482913", "REQ-1")

        assert result.success is True
        assert result.provider_message_id == "SM_MOCK_123"
        kwargs = mock_client.messages.create.call_args.kwargs
        assert kwargs["to"] == "+919876500001"
        assert kwargs["from_"] == "+15005550006"
        assert "482913" in kwargs["body"]

    def test_notify_without_phone(self) -> None:
        result = self.notifier.notify(Patient(prn="PRN-X", name="X", phone=""), "1", "REQ-1")
        assert result.success is False
        assert result.error_code == "NO_CHANNEL"

    def test_notify_twilio_exception(self) -> None:
        mock_client = MagicMock()
        mock_client.messages.create.side_effect = RuntimeError("Twilio down")

        with patch.object(self.notifier, "_get_client", return_value=mock_client):
            result = self.notifier.notify(PATIENT, "482913", "REQ-1")

        assert result.success is False
        assert result.error_code == "TWILIO_ERROR"
        assert "Twilio down" in result.error_message


class TestLogNotifier:
    def test_never_logs_the_code(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="rxconsent.adapters.notifier"):
            result = LogNotifier().notify(PATIENT, "482913", "REQ-1")
        assert result.success is True
        assert result.provider == "log"
        assert "482913" not in caplog.text
        assert "+919876500001" not in caplog.text
        assert "+91987***" in caplog.text


def test_otp_message_contains_code() -> None:
    assert "123456" in otp_message("123456")
