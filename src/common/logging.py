"""structlog setup with secret redaction."""

from __future__ import annotations

import logging
import sys
from typing import Any, MutableMapping

import structlog
from pydantic import SecretStr

REDACTED = "**********"
_SENSITIVE_KEYS = ("value", "password", "token", "secret_value", "api_key", "plaintext")


def redact_secrets(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Mask secret material before any renderer sees the event."""

    for key in list(event_dict):
        item = event_dict[key]
        if isinstance(item, SecretStr):
            event_dict[key] = REDACTED
        elif key.lower() in _SENSITIVE_KEYS or key.lower().endswith("_password"):
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = False) -> None:
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    renderer: Any
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_secrets,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


__all__ = ["REDACTED", "configure_logging", "redact_secrets"]
