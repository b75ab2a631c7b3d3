from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request id shared by log lines and response envelopes
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Credentials are dropped outright; emails keep their domain, which names the tenant
_CREDENTIAL_KEYS = ("password", "token", "secret", "authorization")
REDACTED = "[redacted]"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt the caller's X-Request-ID, or mint one, for the current request."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    structlog.contextvars.bind_contextvars(request_id=cid)
    return cid


def bind_principal(tenant_id: str, user_id: str) -> None:
    """Attach the authenticated tenant/user to every later log line of this request."""
    structlog.contextvars.bind_contextvars(tenant_id=tenant_id, user_id=user_id)


def clear_request_context() -> None:
    correlation_id_var.set(None)
    structlog.contextvars.clear_contextvars()


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return REDACTED
    return f"{local[:1]}***@{domain}"


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Strip bearer tokens, password material and signing secrets; mask emails."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if any(marker in lower_key for marker in _CREDENTIAL_KEYS):
            event_dict[key] = REDACTED
        elif "email" in lower_key:
            event_dict[key] = _mask_email(value)
    return event_dict


def configure_logging(level: str = "INFO", dev_mode: bool = False) -> None:
    """JSON lines in production, coloured console output when ``dev_mode``."""
    renderer: Any
    if dev_mode:
        renderer = structlog.dev.ConsoleRenderer(colors=True)
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _redact_credentials,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    dev_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
