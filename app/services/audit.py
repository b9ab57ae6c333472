"""Security event logging.

Events are written as single-line JSON on the ``app.security`` logger so they
can be shipped to an audit sink without further parsing.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fastapi import Request

from app.core.config import settings
from app.core.security import now_utc

logger = logging.getLogger("app.security")
error_logger = logging.getLogger("app.errors")

SENSITIVE_KEYS = ("password", "token", "secret", "key", "auth", "credential")
MAX_VALUE_LENGTH = 100

LOGIN_FAILED = "LOGIN_FAILED"
LOGIN_SUCCESS = "LOGIN_SUCCESS"
ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
USER_REGISTERED = "USER_REGISTERED"
REGISTRATION_FAILED = "REGISTRATION_FAILED"
PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"


def sanitize_context(context: dict[str, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in context.items():
        if any(marker in key.lower() for marker in SENSITIVE_KEYS):
            sanitized[key] = "[REDACTED]"
        elif isinstance(value, str) and len(value) > MAX_VALUE_LENGTH:
            sanitized[key] = f"{value[:MAX_VALUE_LENGTH]}... [TRUNCATED]"
        else:
            sanitized[key] = value
    return sanitized


def request_context(request: Optional[Request]) -> dict[str, Optional[str]]:
    if request is None:
        return {}
    return {
        "ip": request.client.host if request.client else None,
        "request_id": getattr(request.state, "request_id", None),
        "user_agent": request.headers.get("user-agent"),
    }


def log_event(
    *,
    event_type: str,
    email: Optional[str] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    request_id: Optional[str] = None,
    meta: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "level": "security",
        "event": event_type,
        "timestamp": now_utc().isoformat(),
    }
    for name, value in (("email", email), ("ip", ip), ("user_agent", user_agent), ("request_id", request_id)):
        if value is not None:
            entry[name] = value
    if meta:
        entry["details"] = sanitize_context(meta)
    logger.info(json.dumps(entry, default=str))
    return entry


def log_request_event(
    request: Request,
    event_type: str,
    *,
    email: Optional[str] = None,
    meta: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    return log_event(event_type=event_type, email=email, meta=meta, **request_context(request))


def log_security_event(request: Request, event: str, meta: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    return log_request_event(request, f"SECURITY_{event}", meta=meta)


def log_error(exc: BaseException, request: Optional[Request] = None, context: Optional[dict[str, Any]] = None) -> None:
    info: dict[str, Any] = {
        "level": "error",
        "timestamp": now_utc().isoformat(),
        "name": type(exc).__name__,
        "message": str(exc),
    }
    if request is not None:
        info.update(request_context(request))
        info["method"] = request.method
        info["url"] = request.url.path
    code = getattr(exc, "code", None)
    if code:
        info["error_code"] = code
    if context:
        info["context"] = sanitize_context(context)
    # tracebacks only outside production
    error_logger.error(json.dumps(info, default=str), exc_info=exc if not settings.is_production else None)
