"""Domain models for generation orchestration.

This module holds the typed contract objects shared by the orchestrator, the
moderation handler, credit settlement and the queue poller:

* GenerationPhase / GenerationState - observable state of one orchestrator.
* AttemptOutcome                    - tagged result of `generate()`; either the
  attempt resolved, it is waiting on a moderation confirmation, or it was
  skipped because another attempt was in flight.
* ModerationResult, CreditTransaction, QueueJob - per-attempt records.
* AlertMessages, GenerationUrls, QueueSubmission, ProcessingCreation -
  pydantic models validated at the boundary with caller/provider supplied data.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from aigen.services.generation.exceptions import ErrorKind, GenerationError


ResultT = TypeVar("ResultT")


class GenerationPhase(StrEnum):
    IDLE = "idle"
    CHECKING = "checking"
    MODERATING = "moderating"
    GENERATING = "generating"
    SAVING = "saving"
    SUCCESS = "success"
    ERROR = "error"


TERMINAL_PHASES = frozenset({GenerationPhase.SUCCESS, GenerationPhase.ERROR})

CREATION_PROCESSING = "processing"


@dataclass(frozen=True, slots=True)
class GenerationState(Generic[ResultT]):  # noqa: UP046
    """Snapshot of an orchestrator's observable state."""

    status: GenerationPhase = GenerationPhase.IDLE
    is_generating: bool = False
    progress: int = 0
    result: ResultT | None = None
    error: GenerationError | None = None


INITIAL_STATE: GenerationState[Any] = GenerationState()


@dataclass(frozen=True, slots=True)
class ModerationResult:
    allowed: bool
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CreditTransaction:
    cost: float
    deducted: bool = False


class AlertMessages(BaseModel):
    """User-facing alert strings, one per error kind."""

    network_error: str = Field(..., alias="networkError")
    policy_violation: str = Field(..., alias="policyViolation")
    save_failed: str = Field(..., alias="saveFailed")
    credit_failed: str = Field(..., alias="creditFailed")
    unknown: str
    success: str | None = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def for_kind(self, kind: ErrorKind) -> str:
        return {
            ErrorKind.NETWORK: self.network_error,
            ErrorKind.POLICY: self.policy_violation,
            ErrorKind.SAVE: self.save_failed,
            ErrorKind.CREDITS: self.credit_failed,
        }.get(kind, self.unknown)


class GenerationUrls(BaseModel):
    """Media URLs extracted from a provider result."""

    image_url: str | None = None
    video_url: str | None = None
    thumbnail_url: str | None = None

    model_config = ConfigDict(frozen=True)

    @property
    def primary_url(self) -> str | None:
        return self.video_url or self.image_url

    def to_creation_record(self) -> dict[str, str | None]:
        """Fields stored on a completed creation; `uri` is the primary output."""
        return {
            "uri": self.primary_url or "",
            "image_url": self.image_url,
            "video_url": self.video_url,
            "thumbnail_url": self.thumbnail_url,
        }


class ProcessingCreation(BaseModel):
    """A stored creation as listed by the host app, e.g. a user's gallery."""

    id: str
    status: str = CREATION_PROCESSING
    request_id: str | None = Field(default=None, alias="requestId")
    model: str | None = None

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=(), extra="ignore")

    @property
    def resumable(self) -> bool:
        """Still processing with a queued provider job that can be polled."""
        return self.status == CREATION_PROCESSING and bool(self.request_id and self.model)


class QueueSubmission(BaseModel):
    """Result of handing a job to a queue-mode provider."""

    success: bool
    request_id: str | None = Field(default=None, alias="requestId")
    model: str | None = None
    error: str | None = None

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())


@dataclass(slots=True)
class QueueJob:
    """A submitted provider job tracked by the queue poller.

    Owned by exactly one poller; `timer_id` names its single scheduler job.
    """

    request_id: str
    model: str
    timer_id: str
    started_at: float
    status: str | None = None
    last_status: str | None = None
    consecutive_errors: int = 0
    in_flight: bool = False
    active: bool = True


@dataclass(frozen=True, slots=True)
class JobStatusCheck:
    status: str
    has_error: bool
    error_message: str | None
    should_stop: bool


# -- attempt outcomes -------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Resolved(Generic[ResultT]):  # noqa: UP046
    """The attempt reached a terminal phase."""

    status: Literal["success", "error"]
    result: ResultT | None = None
    error: GenerationError | None = None
    kind: Literal["resolved"] = "resolved"

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


@dataclass(frozen=True, slots=True)
class NeedsConfirmation(Generic[ResultT]):  # noqa: UP046
    """Moderation flagged the input; the caller decides how to continue.

    `proceed()` runs the rest of the attempt and returns its `Resolved`
    outcome; `cancel()` returns the orchestrator to idle.
    """

    warnings: list[str]
    proceed: Callable[[], Awaitable[Resolved[ResultT] | None]]
    cancel: Callable[[], None]
    kind: Literal["needs-confirmation"] = "needs-confirmation"


@dataclass(frozen=True, slots=True)
class Skipped:
    """`generate()` was called while an attempt was already in flight."""

    reason: str = "already_generating"
    kind: Literal["skipped"] = "skipped"


AttemptOutcome = Resolved[Any] | NeedsConfirmation[Any] | Skipped
