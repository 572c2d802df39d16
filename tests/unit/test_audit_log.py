"""Tests for the audit log (in-memory, Postgres with a mocked connection) and its projection."""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

from rxconsent.storage.audit_log import InMemoryAuditLog, PostgresAuditLog, record_event
from rxconsent.storage.projections import AccessAuditProjection


class TestInMemoryAuditLog:
    def setup_method(self) -> None:
        self.log = InMemoryAuditLog()

    def test_append_and_list_newest_first(self) -> None:
        self.log.append("REQ-1", "access_requested", {"patient_prn": "PRN-1001"})
        self.log.append("REQ-1", "request_approved", {"channel": "otp"})
        events = self.log.list_events(aggregate_id="REQ-1")
        assert [e["event_type"] for e in events] == ["request_approved", "access_requested"]

    def test_filters(self) -> None:
        self.log.append("REQ-1", "access_requested", {})
        self.log.append("REQ-2", "access_requested", {})
        self.log.append("REQ-2", "request_denied", {})
        assert len(self.log.list_events(aggregate_id="REQ-2")) == 2
        assert len(self.log.list_events(event_type="access_requested")) == 2
        assert len(self.log.list_events(limit=1)) == 1

    def test_idempotency_key(self) -> None:
        eid1 = self.log.append("REQ-1", "token_issued", {"n": 1}, idempotency_key="token_issued:REQ-1")
        eid2 = self.log.append("REQ-1", "token_issued", {"n": 2}, idempotency_key="token_issued:REQ-1")
        assert eid1 == eid2
        events = self.log.list_events(event_type="token_issued")
        assert len(events) == 1
        assert events[0]["payload"] == {"n": 1}


class TestRecordEvent:
    def test_none_log_is_noop(self) -> None:
        record_event(None, "REQ-1", "access_requested", {})

    def test_failing_backend_is_swallowed(self) -> None:
        broken = MagicMock()
        broken.append.side_effect = RuntimeError("db down")
        record_event(broken, "REQ-1", "access_requested", {})
        broken.append.assert_called_once()


class TestPostgresAuditLog:
    def _conn(self, rows: list[Any] | None = None) -> tuple[MagicMock, MagicMock]:
        conn = MagicMock()
        cursor = MagicMock()
        cursor.fetchall.return_value = rows or []
        conn.cursor.return_value.__enter__.return_value = cursor
        return conn, cursor

    def test_append_inserts_and_commits(self) -> None:
        conn, cursor = self._conn()
        log = PostgresAuditLog(conn)
        event_id = log.append("REQ-1", "request_denied", {"channel": "attempt_cap"})
        sql, params = cursor.execute.call_args.args
        assert "INSERT INTO access_events" in sql
        assert params[0] == event_id
        assert params[1:3] == ("REQ-1", "request_denied")
        conn.commit.assert_called_once()

    def test_list_events_builds_filters(self) -> None:
        rows = [("e1", "REQ-1", "request_denied", '{"channel": "otp"}', "system", "2026-03-15")]
        conn, cursor = self._conn(rows)
        events = PostgresAuditLog(conn).list_events(aggregate_id="REQ-1", limit=5)
        sql, params = cursor.execute.call_args.args
        assert "WHERE aggregate_id = %s" in sql
        assert params == ["REQ-1", 5]
        assert events[0]["payload"] == {"channel": "otp"}

    def test_ensure_schema_creates_table(self) -> None:
        conn, cursor = self._conn()
        PostgresAuditLog(conn).ensure_schema()
        assert "CREATE TABLE IF NOT EXISTS access_events" in cursor.execute.call_args.args[0]
        conn.commit.assert_called_once()


class TestAccessAuditProjection:
    def test_empty(self) -> None:
        result = AccessAuditProjection().project([])
        assert result["requests"] == 0
        assert result["grant_rate"] == 0.0

    def test_summary(self) -> None:
        events = [
            {"event_type": "access_requested"},
            {"event_type": "access_requested"},
            {"event_type": "access_requested"},
            {"event_type": "access_requested"},
            {"event_type": "request_approved", "payload": {"channel": "otp"}},
            {"event_type": "request_approved", "payload": {"channel": "patient_app"}},
            {"event_type": "request_denied"},
            {"event_type": "request_expired"},
            {"event_type": "otp_rejected"},
            {"event_type": "notifier_unavailable"},
        ]
        result = AccessAuditProjection().project(events)
        assert result["granted"] == 2
        assert result["grants_by_channel"] == {"otp": 1, "patient_app": 1}
        assert result["denied"] == 1
        assert result["expired"] == 1
        assert result["otp_failures"] == 1
        assert result["notifier_failures"] == 1
        assert result["grant_rate"] == 0.5
