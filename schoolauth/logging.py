from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request tracking id, echoed back in X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_SECRET_KEYS = ("password", "secret", "token", "authorization")
_EMAIL_KEYS = ("email", "identifier")
# Derived values that are safe to log as-is
_SAFE_SUFFIXES = ("_prefix", "_hash", "_kind", "_count")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt the caller's correlation id, or mint one, for the current request."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_request_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Tag entries with the correlation id and the active tenant, when set."""
    # Imported lazily: tenancy imports this module for its own logger.
    from schoolauth.tenancy import get_current_tenant

    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    tenant_id = get_current_tenant()
    if tenant_id:
        event_dict.setdefault("tenant_id", tenant_id)
    return event_dict


def _mask_address(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return value[:2] + "***"
    return f"{local[:2]}***@{domain}"


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop secrets and mask addresses before an entry is rendered.

    Passwords, tokens and authorization headers are replaced outright;
    email addresses keep their domain so tenant-level issues stay traceable.
    """
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if not isinstance(value, str) or lower_key.endswith(_SAFE_SUFFIXES):
            continue
        if any(marker in lower_key for marker in _SECRET_KEYS):
            event_dict[key] = "[redacted]"
        elif any(marker in lower_key for marker in _EMAIL_KEYS) or key == "to":
            event_dict[key] = _mask_address(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_request_context,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_SENSITIVE_ERROR_PATTERNS = [
    # Connection strings carrying credentials
    r"(?i)\b(postgres(?:ql)?|redis|rediss|smtp)://\S+",
    # SQL fragments from psycopg errors
    r"(?i)\b(select|insert|update|delete)\b\s+.{0,80}",
    r"(?i)\bapp_identity\b|\btenant\b\s+table",
    # Filesystem paths
    r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+",
    # key=value credentials
    r"(?i)(password|secret|token|credential)\s*[:=]\s*\S+",
    r"(?i)traceback\s*\(most recent call last\)",
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]

_MAX_ERROR_LENGTH = 300


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip connection strings, SQL, paths and credentials from an error message."""
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > _MAX_ERROR_LENGTH:
        result = result[: _MAX_ERROR_LENGTH - 3] + "..."
    return result
