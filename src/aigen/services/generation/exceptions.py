"""Error taxonomy for generation attempts.

Every failure surfaced by the orchestrator is a `GenerationError` carrying one
of five kinds. The kind drives which alert message the caller shows; the
original exception is kept only for diagnostics.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    NETWORK = "network"
    CREDITS = "credits"
    POLICY = "policy"
    SAVE = "save"
    UNKNOWN = "unknown"


@dataclass(slots=True, eq=False)
class GenerationError(Exception):
    """Classified failure of a generation attempt.

    Treated as immutable once constructed; the orchestrator hands the same
    instance to state, alerts and callbacks.
    """

    kind: ErrorKind
    message: str
    original_error: BaseException | None = None

    @property
    def error_code(self) -> str:
        return self.kind.value

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.error_code}: {self.message}"


def create_generation_error(
    kind: ErrorKind | str,
    message: str,
    original_error: BaseException | None = None,
) -> GenerationError:
    return GenerationError(ErrorKind(kind), message, original_error)


@dataclass(eq=False)
class ProviderError(Exception):
    """HTTP-level failure reported by a concrete provider client."""

    code: str
    message: str
    status_code: int | None = None
    body: Any = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"
