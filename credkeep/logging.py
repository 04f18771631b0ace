from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# client supplied ids are echoed in headers and logs, so keep them short and inert
_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._\-]{1,64}$")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request's correlation id, generating one if the client sent none.

    Ids that are too long or contain anything beyond ``[A-Za-z0-9._-]`` are
    replaced with a fresh UUID.
    """
    if correlation_id and _CORRELATION_ID_RE.match(correlation_id):
        cid = correlation_id
    else:
        cid = str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def redact_email(email: str) -> str:
    """Mask the local part of an address: ``alice@example.com`` -> ``al***@example.com``."""
    if not isinstance(email, str) or "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


# values under these keys are credentials and are never partially shown
_SECRET_KEYS = ("password", "secret", "token", "authorization", "cookie", "tfa_code", "hash")
_EMAIL_KEYS = ("email", "recipient")
_SAFE_KEYS = frozenset({"event", "error_code", "token_type"})


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor that masks credential material and email addresses."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if lower_key in _SAFE_KEYS:
            continue
        value = event_dict[key]
        if not isinstance(value, str):
            continue
        if any(part in lower_key for part in _SECRET_KEYS):
            event_dict[key] = "***"
        elif any(part in lower_key for part in _EMAIL_KEYS) and "***" not in value:
            event_dict[key] = redact_email(value)
    return event_dict


_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def _configure_structlog(level: str, *, json_output: bool, pretty: bool) -> None:
    """JSON lines in production; a console renderer when ``pretty`` or not JSON."""
    if json_output and not pretty:
        tail = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        tail = [structlog.dev.ConsoleRenderer(colors=pretty)]

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _add_correlation_id,
            # before any renderer so nothing secret reaches output
            _redact_credentials,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            *tail,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper()) if level.upper() in _LEVELS else logging.INFO
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    pretty=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
