from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, MutableMapping, Optional

import structlog

# Per-request correlation id, echoed back in X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Never logged, not even partially
_SECRET_KEYS = ("password", "secret", "token", "api_key", "apikey", "authorization", "cookie")
# Logged with the local part masked
_ADDRESS_KEYS = ("email",)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid) to the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    cid = get_correlation_id()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_credentials(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Strip secrets and mask email addresses before rendering.

    Keys naming a token, password or cookie are replaced outright. Email-like
    keys keep their domain.
    """
    for key, value in list(event_dict.items()):
        if key == "event" or value is None:
            continue
        lower_key = key.lower()
        if any(marker in lower_key for marker in _SECRET_KEYS):
            event_dict[key] = "[redacted]"
        elif any(marker in lower_key for marker in _ADDRESS_KEYS) and isinstance(value, str):
            event_dict[key] = mask_email(value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline for the process.

    Args:
        log_level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_output: Render one JSON object per line
        development_mode: Use the coloured console renderer instead of JSON
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


__all__ = [
    "configure_logging",
    "get_correlation_id",
    "get_logger",
    "mask_email",
    "set_correlation_id",
]
