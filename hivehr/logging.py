from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_PII_KEYS = frozenset(
    {"password", "secret", "token", "cookie", "authorization", "email", "phone"}
)
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def begin_request(correlation_id: Optional[str] = None, host: Optional[str] = None) -> str:
    """Start a fresh log context for one HTTP request.

    Clears anything bound by a previous request on the same task, records the
    correlation id and the host the request arrived on, and returns the id.
    """
    structlog.contextvars.clear_contextvars()
    cid = set_correlation_id(correlation_id)
    if host:
        structlog.contextvars.bind_contextvars(host=host)
    return cid


def bind_tenant(tenant_id: Optional[str], user_id: Optional[str] = None) -> None:
    """Attach the authenticated tenant (and user) to every later log entry."""
    values = {"tenant_id": tenant_id}
    if user_id:
        values["actor_id"] = user_id
    structlog.contextvars.bind_contextvars(**values)


def hash_identifier(value: str) -> str:
    """Stable, non-reversible identifier for logging emails and usernames."""
    return hashlib.sha256(value.strip().lower().encode()).hexdigest()[:16]


def mask_value(key: str, value: Any) -> Any:
    """Mask one log value if its key names a credential or contact detail.

    Emails keep their domain, which is what tells tenants apart when reading
    logs; other values keep their first and last two characters.
    """
    lower_key = key.lower()
    if lower_key.endswith("_hash") or not isinstance(value, str):
        return value
    if not any(pii in lower_key for pii in _PII_KEYS):
        return value
    if "email" in lower_key and "@" in value:
        local, _, domain = value.rpartition("@")
        return f"{local[:1]}***@{domain}"
    if len(value) > 4:
        return value[:2] + "***" + value[-2:]
    return "***"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        event_dict[key] = mask_value(key, value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog for the service.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: Emit one JSON object per line
        development_mode: Pretty console output, overrides ``json_output``
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
