"""Health, readiness, and metrics endpoints."""

from __future__ import annotations

import time

from fastapi import APIRouter, Request, Response
from starlette.responses import JSONResponse

from rxconsent import metrics
from rxconsent.healthchecks import check_postgres, check_redis

router = APIRouter()

__all__ = ["router"]


@router.get("/health", summary="Liveness probe", operation_id="health")
async def health() -> dict[str, str]:
    """Liveness: app process is running."""
    return {"status": "ok"}


@router.get("/ready", summary="Readiness probe", operation_id="ready")
async def ready(request: Request) -> JSONResponse:
    """Readiness: configured backends reachable.

    In-memory backends (no DSN / URL set) are not probed.
    Returns 200 when every probed backend answers, 503 otherwise.
    """
    settings = request.app.state.settings
    checks: dict[str, bool] = {}
    if settings.redis_url:
        checks["redis"] = await check_redis(settings.redis_url)
    if settings.pg_dsn:
        checks["postgres"] = await check_postgres(settings.pg_dsn)

    all_ok = all(checks.values())
    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={"ready": all_ok, "checks": checks},
    )


@router.get("/metrics", summary="Prometheus metrics", operation_id="metrics")
async def metrics_endpoint() -> Response:
    """Prometheus text exposition format."""
    m = metrics.snapshot()
    uptime = time.time() - m["start_time"]

    lines = [
        "# HELP rxc_up Access service is up",
        "# TYPE rxc_up gauge",
        "rxc_up 1",
        "",
        "# HELP rxc_uptime_seconds Seconds since process start",
        "# TYPE rxc_uptime_seconds gauge",
        f"rxc_uptime_seconds {uptime:.1f}",
        "",
        "# HELP rxc_requests_total Total HTTP requests",
        "# TYPE rxc_requests_total counter",
        f"rxc_requests_total {m['requests_total']}",
    ]
    for status, count in sorted(m["requests_by_status"].items()):
        lines.append(f'rxc_requests_total{{status="{status}"}} {count}')

    lines += [
        "",
        "# HELP rxc_access_requests_total Consent requests created",
        "# TYPE rxc_access_requests_total counter",
        f"rxc_access_requests_total {m['access_requests']}",
        "",
        "# HELP rxc_access_grants_total Requests approved, by resolving channel",
        "# TYPE rxc_access_grants_total counter",
    ]
    for channel, count in sorted(m["grants_by_channel"].items()):
        lines.append(f'rxc_access_grants_total{{channel="{channel}"}} {count}')

    lines += [
        "",
        "# HELP rxc_access_denials_total Requests denied (patient or attempt cap)",
        "# TYPE rxc_access_denials_total counter",
        f"rxc_access_denials_total {m['denials']}",
        "",
        "# HELP rxc_access_expiries_total Requests that reached their TTL",
        "# TYPE rxc_access_expiries_total counter",
        f"rxc_access_expiries_total {m['expiries']}",
        "",
        "# HELP rxc_otp_failures_total Rejected OTP submissions",
        "# TYPE rxc_otp_failures_total counter",
        f"rxc_otp_failures_total {m['otp_failures']}",
        "",
        "# HELP rxc_notifier_failures_total OTP deliveries that failed",
        "# TYPE rxc_notifier_failures_total counter",
        f"rxc_notifier_failures_total {m['notifier_failures']}",
        "",
    ]

    return Response(content="\n".join(lines), media_type="text/plain; charset=utf-8")
