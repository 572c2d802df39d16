"""Read-model projections from the audit log."""

from __future__ import annotations

from typing import Any

__all__ = ["AccessAuditProjection"]


class AccessAuditProjection:
    """Summarises how access requests were resolved."""

    def project(self, events: list[dict[str, Any]]) -> dict[str, Any]:
        """Build a summary from audit events.

        Returns:
            Dict with requests, grants per channel, denials, expiries,
            otp_failures, notifier_failures and grant_rate.
        """
        requests = 0
        grants: dict[str, int] = {}
        denied = 0
        expired = 0
        otp_failures = 0
        notifier_failures = 0

        for event in events:
            etype = event.get("event_type", "")
            if etype == "access_requested":
                requests += 1
            elif etype == "request_approved":
                channel = event.get("payload", {}).get("channel", "unknown")
                grants[channel] = grants.get(channel, 0) + 1
            elif etype == "request_denied":
                denied += 1
            elif etype == "request_expired":
                expired += 1
            elif etype == "otp_rejected":
                otp_failures += 1
            elif etype == "notifier_unavailable":
                notifier_failures += 1

        granted = sum(grants.values())
        rate = granted / requests if requests > 0 else 0.0

        return {
            "requests": requests,
            "granted": granted,
            "grants_by_channel": grants,
            "denied": denied,
            "expired": expired,
            "otp_failures": otp_failures,
            "notifier_failures": notifier_failures,
            "grant_rate": round(rate, 4),
        }
