"""Error classification for generation attempts.

Maps arbitrary raised values onto the closed `ErrorKind` taxonomy. Rules are
applied in priority order:

1. Values that already carry a kind (`GenerationError`) pass through.
2. Content-policy vocabulary in the exception name or message, or an HTTP
   422 status, classifies as `policy`.
3. Network vocabulary (when a pattern set is configured) classifies as
   `network`.
4. Everything else is `unknown`, keeping the original message and wrapping
   the source exception for diagnostics.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import Any

from aigen.core.config import get_settings
from aigen.services.generation.exceptions import (
    ErrorKind,
    GenerationError,
    create_generation_error,
)
from aigen.services.generation.models import AlertMessages


logger = logging.getLogger(__name__)

POLICY_STATUS_CODES = frozenset({422})
DEFAULT_ERROR_MESSAGE = "Generation failed"


def matches_patterns(message: str, patterns: Iterable[str]) -> bool:
    lower_message = message.lower()
    return any(pattern in lower_message for pattern in patterns)


_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def _exception_words(error: object) -> str:
    """`ContentPolicyViolation` -> `Content Policy Violation`."""
    if not isinstance(error, BaseException):
        return ""
    return _CAMEL_BOUNDARY.sub(" ", error.__class__.__name__)


def get_status_code(error: object) -> int | None:
    """Read an HTTP status from common exception/response shapes."""
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(error, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
    return None


def get_error_message(error: object) -> str:
    if isinstance(error, BaseException):
        return str(error) or error.__class__.__name__
    if isinstance(error, str):
        return error
    if isinstance(error, dict) and "message" in error:
        return str(error["message"])
    return "An unknown error occurred"


class ErrorClassifier:
    """Configurable classifier; `parse_error` uses one built from settings."""

    def __init__(
        self,
        policy_patterns: Iterable[str] | None = None,
        network_patterns: Iterable[str] | None = None,
    ) -> None:
        settings = get_settings()
        self.policy_patterns = tuple(
            p.lower()
            for p in (
                settings.policy_patterns if policy_patterns is None else policy_patterns
            )
        )
        self.network_patterns = tuple(
            p.lower()
            for p in (
                settings.network_patterns
                if network_patterns is None
                else network_patterns
            )
        )

    def classify(self, raw: object) -> GenerationError:
        if isinstance(raw, GenerationError):
            return raw

        message = get_error_message(raw)
        name = _exception_words(raw)
        original = raw if isinstance(raw, BaseException) else None

        if get_status_code(raw) in POLICY_STATUS_CODES or matches_patterns(
            f"{name} {message}", self.policy_patterns
        ):
            kind = ErrorKind.POLICY
        elif self.network_patterns and matches_patterns(
            message, self.network_patterns
        ):
            kind = ErrorKind.NETWORK
        else:
            kind = ErrorKind.UNKNOWN

        logger.debug(f"Classified error as {kind.value}: {message[:100]}")
        return create_generation_error(kind, message, original)


_default_classifier: ErrorClassifier | None = None


def _get_default_classifier() -> ErrorClassifier:
    global _default_classifier
    if _default_classifier is None:
        _default_classifier = ErrorClassifier()
    return _default_classifier


def parse_error(raw: object) -> GenerationError:
    """Classify `raw` with the settings-driven default classifier."""
    return _get_default_classifier().classify(raw)


def get_alert_message(error: GenerationError, messages: AlertMessages) -> str:
    return messages.for_kind(error.kind)


def _first_detail_msg(detail: Any) -> str | None:
    if isinstance(detail, list) and detail:
        first = detail[0]
        if isinstance(first, dict) and first.get("msg"):
            return str(first["msg"])
    return None


def extract_error_message(err: object) -> str:
    """Best human-readable message from a provider failure.

    Provider clients raise validation errors whose own message is empty and
    whose detail lives in `.body["detail"]` or `.detail`.
    """
    if not err:
        return DEFAULT_ERROR_MESSAGE

    body = getattr(err, "body", None)
    if isinstance(body, dict):
        msg = _first_detail_msg(body.get("detail"))
        if msg:
            return msg

    if isinstance(err, BaseException) and str(err):
        return str(err)

    detail = err.get("detail") if isinstance(err, dict) else getattr(err, "detail", None)
    msg = _first_detail_msg(detail)
    if msg:
        return msg

    text = str(err)
    return text if text and not isinstance(err, dict) else DEFAULT_ERROR_MESSAGE
