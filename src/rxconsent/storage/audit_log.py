"""Audit log of access protocol events.

Payloads describe what happened to a request (state, channel, attempts).
OTPs and tokens never reach this log. Events are append-only; an
``idempotency_key`` makes a repeated append return the first event's id.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    import psycopg

__all__ = ["AuditEvent", "AuditLogProtocol", "InMemoryAuditLog", "PostgresAuditLog", "record_event"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    aggregate_id: str  # request id, or PRN for prescription reads
    event_type: str
    payload: dict[str, Any]
    actor: str = "system"
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AuditLogProtocol(Protocol):
    def append(
        self,
        aggregate_id: str,
        event_type: str,
        payload: dict[str, Any],
        actor: str = "system",
        idempotency_key: str | None = None,
    ) -> str:
        """Append an event. Returns the event_id."""
        ...

    def list_events(
        self,
        aggregate_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Newest first, optionally filtered."""
        ...


class InMemoryAuditLog:
    """List-backed log for dev and tests."""

    def __init__(self) -> None:
        self._events: list[AuditEvent] = []
        self._by_key: dict[str, str] = {}

    def append(
        self,
        aggregate_id: str,
        event_type: str,
        payload: dict[str, Any],
        actor: str = "system",
        idempotency_key: str | None = None,
    ) -> str:
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]  # type: ignore[index]
        event = AuditEvent(aggregate_id, event_type, payload, actor)
        self._events.append(event)
        if idempotency_key:
            self._by_key[idempotency_key] = event.event_id
        return event.event_id

    def list_events(
        self,
        aggregate_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        matches = (
            e
            for e in reversed(self._events)
            if aggregate_id in (None, e.aggregate_id) and event_type in (None, e.event_type)
        )
        return [e.to_dict() for _, e in zip(range(limit), matches)]


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS access_events (
    event_id        TEXT PRIMARY KEY,
    aggregate_id    TEXT NOT NULL,
    event_type      TEXT NOT NULL,
    payload         JSONB NOT NULL,
    actor           TEXT NOT NULL,
    created_at      TIMESTAMPTZ NOT NULL,
    idempotency_key TEXT UNIQUE
)
"""

_INSERT_SQL = """
INSERT INTO access_events
    (event_id, aggregate_id, event_type, payload, actor, created_at, idempotency_key)
VALUES (%s, %s, %s, %s, %s, %s, %s)
ON CONFLICT (idempotency_key) DO NOTHING
"""

_COLUMNS = ("event_id", "aggregate_id", "event_type", "payload", "actor", "created_at")


class PostgresAuditLog:
    """Audit events in the ``access_events`` table."""

    def __init__(self, conn: psycopg.Connection[Any]) -> None:
        self._conn = conn

    @classmethod
    def from_dsn(cls, dsn: str) -> PostgresAuditLog:
        import psycopg as _pg

        log = cls(_pg.connect(dsn, autocommit=False))
        log.ensure_schema()
        return log

    def ensure_schema(self) -> None:
        with self._conn.cursor() as cur:
            cur.execute(_SCHEMA_SQL)
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def append(
        self,
        aggregate_id: str,
        event_type: str,
        payload: dict[str, Any],
        actor: str = "system",
        idempotency_key: str | None = None,
    ) -> str:
        event = AuditEvent(aggregate_id, event_type, payload, actor)
        row = (
            event.event_id,
            event.aggregate_id,
            event.event_type,
            json.dumps(event.payload),
            event.actor,
            event.created_at,
            idempotency_key,
        )
        with self._conn.cursor() as cur:
            cur.execute(_INSERT_SQL, row)
        self._conn.commit()
        return event.event_id

    def list_events(
        self,
        aggregate_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        filters = {"aggregate_id": aggregate_id, "event_type": event_type}
        active = {col: value for col, value in filters.items() if value}
        where = " AND ".join(f"{col} = %s" for col in active)
        sql = (
            f"SELECT {', '.join(_COLUMNS)} FROM access_events "  # noqa: S608
            f"{'WHERE ' + where + ' ' if where else ''}ORDER BY created_at DESC LIMIT %s"
        )
        with self._conn.cursor() as cur:
            cur.execute(sql, [*active.values(), limit])
            rows = cur.fetchall()

        events = [dict(zip(_COLUMNS, row)) for row in rows]
        for event in events:
            if isinstance(event["payload"], str):
                event["payload"] = json.loads(event["payload"])
        return events


def record_event(
    audit: AuditLogProtocol | None,
    aggregate_id: str,
    event_type: str,
    payload: dict[str, Any],
    actor: str = "system",
    idempotency_key: str | None = None,
) -> None:
    """Fire-and-forget append; a failing audit backend never blocks the protocol."""
    if audit is None:
        return
    try:
        audit.append(
            aggregate_id=aggregate_id,
            event_type=event_type,
            payload=payload,
            actor=actor,
            idempotency_key=idempotency_key,
        )
    except Exception:
        logger.warning("Audit append failed for %s", event_type, exc_info=True)
