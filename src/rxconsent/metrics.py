"""In-process counters, rendered by the /metrics endpoint."""

from __future__ import annotations

import time
from typing import Any

__all__ = [
    "record_request",
    "record_access_requested",
    "record_grant",
    "record_denial",
    "record_expiry",
    "record_otp_failure",
    "record_notifier_failure",
    "snapshot",
    "reset",
]

# Zero-dep baseline; swap for prometheus_client when the service is scraped in prod.
_metrics: dict[str, Any] = {}


def reset() -> None:
    _metrics.clear()
    _metrics.update(
        {
            "requests_total": 0,
            "requests_by_status": {},
            "access_requests": 0,
            "grants_by_channel": {},
            "denials": 0,
            "expiries": 0,
            "otp_failures": 0,
            "notifier_failures": 0,
            "start_time": time.time(),
        }
    )


reset()


def record_request(status: int) -> None:
    """Call from middleware to track request counts."""
    _metrics["requests_total"] += 1
    key = str(status)
    _metrics["requests_by_status"][key] = _metrics["requests_by_status"].get(key, 0) + 1


def record_access_requested() -> None:
    _metrics["access_requests"] += 1


def record_grant(channel: str) -> None:
    _metrics["grants_by_channel"][channel] = _metrics["grants_by_channel"].get(channel, 0) + 1


def record_denial() -> None:
    _metrics["denials"] += 1


def record_expiry() -> None:
    _metrics["expiries"] += 1


def record_otp_failure() -> None:
    _metrics["otp_failures"] += 1


def record_notifier_failure() -> None:
    _metrics["notifier_failures"] += 1


def snapshot() -> dict[str, Any]:
    return {
        **_metrics,
        "requests_by_status": dict(_metrics["requests_by_status"]),
        "grants_by_channel": dict(_metrics["grants_by_channel"]),
    }
