"""Structured logging: correlation ids, consent request context, secret redaction.

Modules log through the standard library (``logging.getLogger(__name__)``);
``configure_logging`` routes those records through the same structlog
processor chain as native structlog loggers, so every line carries the
bound request context and no line can carry an OTP or token.
"""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from typing import Any

import structlog

__all__ = [
    "configure_logging",
    "correlation_id_var",
    "new_correlation_id",
    "bind_access_context",
    "mask_phone",
]

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

_REDACTED_KEYS = frozenset({"otp", "candidate", "otp_hash", "access_token", "token"})


def new_correlation_id() -> str:
    """Generate and set a new correlation ID for the current context."""
    cid = str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_access_context(*, request_id: str = "", patient_prn: str = "") -> None:
    """Attach the consent request being worked on to every following log line."""
    context = {"request_id": request_id, "patient_prn": patient_prn}
    structlog.contextvars.bind_contextvars(**{k: v for k, v in context.items() if v})


def mask_phone(phone: str) -> str:
    """Keep the country prefix, hide the subscriber number."""
    return phone[:6] + "***" if len(phone) > 6 else "***"


def _add_correlation_id(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_secrets(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in _REDACTED_KEYS & event_dict.keys():
        event_dict[key] = "[redacted]"
    return event_dict


def configure_logging(*, json_output: bool = True, level: str = "INFO") -> None:
    """Install the processor chain for structlog and stdlib loggers alike.

    Args:
        json_output: JSON lines (deployed service) or console rendering (counter dev box).
        level: Root log level name.
    """
    level_no = logging.getLevelNamesMapping()[level.upper()]
    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        _add_correlation_id,
        _redact_secrets,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    final: list[Any] = (
        [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        if json_output
        else [structlog.dev.ConsoleRenderer()]
    )

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                *final,
            ],
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level_no)
