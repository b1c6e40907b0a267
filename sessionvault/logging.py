from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, MutableMapping, Optional

import structlog

# Request id of the HTTP call being served, if any
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _bind_correlation_id(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    cid = correlation_id_var.get()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


# Values under these keys never reach the log output
_SECRET_KEYS = (
    "password",
    "secret",
    "authorization",
    "fingerprint",
    "access_token",
    "refresh_token",
    "id_token",
)
# Values under these keys are partially shown
_PERSONAL_KEYS = ("email",)


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return value[:1] + "***"
    return f"{local[:1]}***@{domain}"


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Drop credential values and mask addresses before rendering."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lowered = key.lower()
        if any(marker in lowered for marker in _SECRET_KEYS):
            event_dict[key] = "[redacted]"
        elif any(marker in lowered for marker in _PERSONAL_KEYS):
            event_dict[key] = _mask_email(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    """Install the structlog pipeline.

    JSON lines for deployments, colored console output when ``json_output`` is
    false. Called once on import from ``LOG_LEVEL``/``LOG_JSON``; tests may call
    it again.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _bind_correlation_id,
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    level_no = logging.getLevelName(level.upper())
    if not isinstance(level_no, int):
        level_no = logging.INFO
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", True) and not _env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


__all__ = [
    "configure_logging",
    "correlation_id_var",
    "get_correlation_id",
    "get_logger",
    "set_correlation_id",
]
