"""Collaborator interfaces for generation orchestration.

This module defines the protocols the engine depends on so concrete
providers, ledgers, persistence backends and UI presenters can be injected
without the engine knowing their implementation.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal, Protocol, TypeVar, runtime_checkable

from aigen.services.generation.exceptions import GenerationError
from aigen.services.generation.models import (
    AlertMessages,
    GenerationUrls,
    ModerationResult,
    QueueSubmission,
)


InputT = TypeVar("InputT", contravariant=True)
ResultT = TypeVar("ResultT")

ProgressCallback = Callable[[int], None]
QueueUpdateCallback = Callable[[dict[str, Any]], None]


class GenerationStrategy(Protocol[InputT, ResultT]):
    """Per-feature execution contract supplied by the caller.

    `save` and `submit_to_queue` are optional; the engine probes for them with
    `getattr` so a strategy may simply not define them.
    """

    async def execute(
        self, input: InputT, on_progress: ProgressCallback | None = None
    ) -> ResultT:
        """Run the generation; raise on failure."""
        ...

    def get_credit_cost(self) -> float:
        """Credit cost charged for one successful attempt."""
        ...


@runtime_checkable
class SavingStrategy(Protocol[ResultT]):
    async def save(self, result: ResultT, user_id: str) -> None: ...


@runtime_checkable
class QueueStrategy(Protocol):
    async def submit_to_queue(self, input: Any) -> QueueSubmission | dict[str, Any]:
        ...


class AIProvider(Protocol):
    """External AI execution collaborator."""

    def is_initialized(self) -> bool: ...

    async def run(
        self,
        model: str,
        input: dict[str, Any],
        *,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        """Blocking execution."""
        ...

    async def subscribe(
        self,
        model: str,
        input: dict[str, Any],
        *,
        timeout_s: float | None = None,
        on_queue_update: QueueUpdateCallback | None = None,
    ) -> dict[str, Any]:
        """Blocking execution with queue status callbacks."""
        ...

    async def submit_job(self, model: str, input: dict[str, Any]) -> str:
        """Non-blocking submission; returns the provider request id."""
        ...

    async def get_job_status(self, model: str, request_id: str) -> dict[str, Any]:
        ...

    async def get_job_result(self, model: str, request_id: str) -> dict[str, Any]:
        ...


class CreationPersistence(Protocol):
    """Storage of user creations across the generation lifecycle."""

    async def save_as_processing(self, user_id: str, meta: dict[str, Any]) -> str:
        ...

    async def update_to_completed(
        self, user_id: str, creation_id: str, result: dict[str, Any]
    ) -> None: ...

    async def update_to_failed(
        self, user_id: str, creation_id: str, message: str
    ) -> None: ...

    async def update_request_id(
        self, user_id: str, creation_id: str, request_id: str, model: str
    ) -> None: ...


class CreditLedger(Protocol):
    """Two-method credit contract; the ledger itself lives in the host app."""

    async def check(self, cost: float) -> bool:
        """Return True when the balance covers `cost`."""
        ...

    async def deduct(self, cost: float) -> bool:
        """Return False when the deduction was declined."""
        ...


class ConnectivityProbe(Protocol):
    async def is_online(self) -> bool: ...


class ModerationService(Protocol):
    async def check_content(self, input: Any) -> ModerationResult: ...


class AlertPresenter(Protocol):
    def show_error(self, title: str, message: str) -> None: ...

    def show_success(self, title: str, message: str) -> None: ...


WarningPresenter = Callable[
    [list[str], Callable[[], None], Callable[[], Awaitable[Any]]], None
]
"""Receives moderation warnings plus `on_cancel` and `on_proceed` continuations."""

LifecycleCallback = Callable[
    [Literal["success", "error"], Any, GenerationError | None], None
]


@dataclass(slots=True)
class ModerationConfig:
    check_content: Callable[[Any], Awaitable[ModerationResult]]
    on_show_warning: WarningPresenter | None = None

    @classmethod
    def from_service(
        cls, service: ModerationService, on_show_warning: WarningPresenter | None = None
    ) -> ModerationConfig:
        return cls(check_content=service.check_content, on_show_warning=on_show_warning)


@dataclass(slots=True)
class AuthConfig:
    """Optional sign-in gate checked before anything else in an attempt."""

    is_authenticated: Callable[[], bool | Awaitable[bool]]
    on_auth_required: Callable[[], Any] | None = None


@dataclass(slots=True)
class LifecycleConfig:
    on_complete: LifecycleCallback | None = None
    complete_delay: float | None = None
    auto_reset: bool = False
    reset_delay: float | None = None


@dataclass(slots=True)
class GenerationConfig:
    """Per-orchestrator configuration supplied by the feature."""

    alert_messages: AlertMessages
    user_id: str | None = None
    on_credits_exhausted: Callable[[], None] | None = None
    on_success: Callable[[Any], Any] | None = None
    on_error: Callable[[GenerationError], Any] | None = None
    on_cancel: Callable[[], None] | None = None  # moderation warning dismissed
    moderation: ModerationConfig | None = None
    credits: CreditLedger | None = None
    lifecycle: LifecycleConfig | None = None
    auth: AuthConfig | None = None


OnComplete = Callable[[GenerationUrls], Awaitable[None] | None]
OnError = Callable[[str], Awaitable[None] | None]
