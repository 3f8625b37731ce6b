"""Structured logging with per-attempt correlation IDs.

Each generation attempt binds a short correlation ID in a context variable, so
every record emitted while the attempt runs (orchestrator, moderation, credit
settlement) can be grouped. `StructuredLogger` attaches keyword context as
`record.structured_data` after masking credentials and user identifiers.

`setup_logging()` is for host applications; the library itself only logs
through `logging.getLogger(__name__)`.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any

from pythonjsonlogger.json import JsonFormatter

from aigen.core.config import Settings, get_settings
from aigen.core.security_config import is_sensitive_key


REDACTED = "[REDACTED]"
HEADER_VALUE_KEYS = frozenset({"value", "val", "v"})
QUIET_LOGGERS = ("apscheduler", "httpx")

_correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def new_correlation_id() -> str:
    return uuid.uuid4().hex[:12]


def get_correlation_id() -> str:
    """Return the current attempt's correlation ID, binding a new one if unset."""
    correlation_id = _correlation_id_var.get()
    if not correlation_id:
        correlation_id = new_correlation_id()
        _correlation_id_var.set(correlation_id)
    return correlation_id


def set_correlation_id(correlation_id: str | None) -> None:
    _correlation_id_var.set(correlation_id)


def _header_name(data: dict[str, Any]) -> str | None:
    if "value" not in data:
        return None
    name = data.get("name") or data.get("key")
    return name if isinstance(name, str) else None


def redact(data: dict[str, Any]) -> dict[str, Any]:
    """Copy `data` with sensitive keys masked, recursing into dicts and lists.

    A `{"name": ..., "value": ...}` pair (request headers, provider params)
    is masked by its name: `{"name": "Authorization", "value": "Key ..."}`
    keeps the name and hides the value.
    """
    if not isinstance(data, dict):
        return {}

    header_name = _header_name(data)
    mask_value = header_name is not None and is_sensitive_key(header_name)

    masked: dict[str, Any] = {}
    for key, value in data.items():
        if header_name is not None and key in ("name", "key"):
            masked[key] = value
        elif mask_value and str(key).lower() in HEADER_VALUE_KEYS:
            masked[key] = REDACTED
        else:
            masked[key] = _redact_value(key, value)
    return masked


def _redact_value(key: Any, value: Any) -> Any:
    if is_sensitive_key(str(key)):
        return REDACTED
    if isinstance(value, dict):
        return redact(value)
    if isinstance(value, list):
        return [redact(item) if isinstance(item, dict) else item for item in value]
    return value


class StructuredLogger:
    """Logger facade adding the correlation ID and redacted keyword context."""

    def __init__(self, logger_name: str):
        self.logger = logging.getLogger(logger_name)

    def _emit(
        self, level: int, message: str, context: dict[str, Any], exc_info: Any = False
    ) -> None:
        if not self.logger.isEnabledFor(level):
            return
        correlation_id = get_correlation_id()
        structured = {"correlation_id": correlation_id, "message": message, **redact(context)}

        # JsonFormatter merges `extra` into the emitted object; plain text needs the prefix
        if get_settings().ENVIRONMENT != "production":
            message = f"[{correlation_id}] {message}"
        self.logger.log(
            level, message, extra={"structured_data": structured}, exc_info=exc_info
        )

    def debug(self, message: str, **context: Any) -> None:
        self._emit(logging.DEBUG, message, context)

    def info(self, message: str, **context: Any) -> None:
        self._emit(logging.INFO, message, context)

    def warning(self, message: str, **context: Any) -> None:
        self._emit(logging.WARNING, message, context)

    def error(
        self, message: str, exc: BaseException | None = None, **context: Any
    ) -> None:
        """Log at ERROR, attaching `exc` (usually not the active exception) as traceback."""
        exc_info: Any = (type(exc), exc, exc.__traceback__) if exc else False
        self._emit(logging.ERROR, message, context, exc_info=exc_info)

    def exception(self, message: str, **context: Any) -> None:
        self._emit(logging.ERROR, message, context, exc_info=True)


def _resolve_level(settings: Settings) -> int:
    if settings.LOG_LEVEL:
        level = logging.getLevelName(settings.LOG_LEVEL.upper())
        return level if isinstance(level, int) else logging.INFO
    return logging.DEBUG if settings.ENVIRONMENT == "development" else logging.INFO


def _build_formatter(settings: Settings) -> logging.Formatter:
    if settings.ENVIRONMENT == "production":
        return JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        )
    return logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")


def setup_logging() -> None:
    """Install one stdout handler on the root logger; later calls are no-ops."""
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return

    settings = get_settings()
    level = _resolve_level(settings)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_build_formatter(settings))
    handler.setLevel(level)
    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    if settings.ENVIRONMENT != "development":
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
