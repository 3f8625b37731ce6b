"""Generation orchestrator.

Drives one attempt at a time through

    checking -> (auth gate) -> (connectivity) -> (credit pre-check)
    -> (moderating) -> generating -> (saving) -> credit settlement
    -> success | error

Every collaborator is injected: the feature's strategy, the connectivity
probe, the credit ledger, the moderation service and the alert presenter.
The orchestrator owns only sequencing, the in-flight guard and the
observable state.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import replace
from typing import Any, Generic, Literal, TypeVar

from aigen.core.config import Settings, get_settings
from aigen.core.structured_logging import (
    StructuredLogger,
    new_correlation_id,
    set_correlation_id,
)
from aigen.services.generation.callbacks import notify
from aigen.services.generation.classifier import ErrorClassifier, get_alert_message
from aigen.services.generation.credits import CreditSettlement
from aigen.services.generation.exceptions import (
    ErrorKind,
    GenerationError,
    create_generation_error,
)
from aigen.services.generation.interfaces import (
    AlertPresenter,
    ConnectivityProbe,
    GenerationConfig,
    GenerationStrategy,
)
from aigen.services.generation.models import (
    INITIAL_STATE,
    TERMINAL_PHASES,
    AttemptOutcome,
    GenerationPhase,
    GenerationState,
    NeedsConfirmation,
    Resolved,
    Skipped,
)
from aigen.services.generation.moderation import ModerationHandler


logger = logging.getLogger(__name__)
structured_logger = StructuredLogger(__name__)

InputT = TypeVar("InputT")
ResultT = TypeVar("ResultT")

StateListener = Callable[[GenerationState[Any]], None]

PROGRESS_STARTED = 10
PROGRESS_EXECUTED = 70
PROGRESS_SAVED = 90
PROGRESS_DONE = 100


class GenerationSession:
    """In-flight guard, consumer liveness and the id of the current attempt.

    Attempt ids let late results from an abandoned attempt (after `reset()`)
    be recognised and kept out of the observable state.
    """

    def __init__(self) -> None:
        self.in_flight = False
        self.alive = True
        self.attempt_id = 0

    def begin(self) -> int | None:
        if self.in_flight or not self.alive:
            return None
        self.in_flight = True
        self.attempt_id += 1
        return self.attempt_id

    def is_current(self, attempt_id: int) -> bool:
        return self.alive and self.attempt_id == attempt_id

    def release(self, attempt_id: int) -> None:
        if self.attempt_id == attempt_id:
            self.in_flight = False

    def invalidate(self) -> None:
        self.attempt_id += 1
        self.in_flight = False

    def close(self) -> None:
        self.alive = False
        self.in_flight = False


class GenerationOrchestrator(Generic[InputT, ResultT]):  # noqa: UP046
    """Run generation attempts for one feature.

    `generate()` never raises for attempt failures; it returns an
    `AttemptOutcome` and reports failures through the alert presenter and
    `config.on_error`. With no connectivity probe the device is assumed
    online.
    """

    def __init__(
        self,
        strategy: GenerationStrategy[InputT, ResultT],
        config: GenerationConfig,
        *,
        connectivity: ConnectivityProbe | None = None,
        alerts: AlertPresenter | None = None,
        classifier: ErrorClassifier | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.strategy = strategy
        self.config = config
        self.connectivity = connectivity
        self.alerts = alerts
        self.classifier = classifier or ErrorClassifier()
        self.settings = settings or get_settings()
        self.moderation = ModerationHandler(config.moderation)

        self._session = GenerationSession()
        self._state: GenerationState[ResultT] = INITIAL_STATE
        self._listeners: list[StateListener] = []
        self._complete_handle: asyncio.TimerHandle | None = None
        self._reset_handle: asyncio.TimerHandle | None = None

    # -- observable state ---------------------------------------------------

    @property
    def state(self) -> GenerationState[ResultT]:
        return self._state

    @property
    def status(self) -> GenerationPhase:
        return self._state.status

    @property
    def is_generating(self) -> bool:
        return self._state.is_generating

    @property
    def progress(self) -> int:
        return self._state.progress

    @property
    def result(self) -> ResultT | None:
        return self._state.result

    @property
    def error(self) -> GenerationError | None:
        return self._state.error

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a state listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, state: GenerationState[ResultT]) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener raised")

    def _set(self, attempt_id: int, state: GenerationState[ResultT]) -> None:
        if self._session.is_current(attempt_id):
            self._publish(state)

    def _update(self, attempt_id: int, **changes: Any) -> None:
        if self._session.is_current(attempt_id):
            self._publish(replace(self._state, **changes))

    # -- public operations --------------------------------------------------

    async def generate(self, input: InputT) -> AttemptOutcome:
        attempt_id = self._session.begin()
        if attempt_id is None:
            logger.debug("generate() called while an attempt is in flight; skipping")
            return Skipped()

        set_correlation_id(new_correlation_id())
        logger.debug(f"Attempt {attempt_id} started")
        settlement = CreditSettlement(
            self.config.credits,
            self.config.on_credits_exhausted,
            failure_message=self.config.alert_messages.credit_failed,
        )
        self._set(
            attempt_id,
            replace(INITIAL_STATE, status=GenerationPhase.CHECKING, is_generating=True),
        )

        suspended = False
        try:
            if not await self._authenticated():
                self._set(attempt_id, INITIAL_STATE)
                return Skipped(reason="auth_required")

            if self.connectivity is not None and not await self.connectivity.is_online():
                raise create_generation_error(ErrorKind.NETWORK, "No internet connection")

            if not await settlement.precheck(self.strategy.get_credit_cost()):
                self._set(attempt_id, INITIAL_STATE)
                return Skipped(reason="insufficient_credits")

            outcome = await self.moderation.handle(
                input,
                execute=lambda: self._proceed(attempt_id, input, settlement),
                cancel=lambda: self._cancel(attempt_id),
                on_moderating=lambda: self._update(
                    attempt_id, status=GenerationPhase.MODERATING
                ),
            )
            if outcome is None:
                return Skipped(reason="abandoned")
            suspended = isinstance(outcome, NeedsConfirmation)
            return outcome
        except Exception as e:
            return await self._fail(attempt_id, e)
        finally:
            if not suspended:
                self._session.release(attempt_id)

    def reset(self) -> None:
        """Return to idle and abandon any attempt in flight."""
        self._cancel_timers()
        self._session.invalidate()
        self._publish(INITIAL_STATE)

    def close(self) -> None:
        """Consumer is gone: drop timers and stop publishing state."""
        self._cancel_timers()
        self._session.close()
        self._listeners.clear()

    # -- attempt internals --------------------------------------------------

    async def _authenticated(self) -> bool:
        auth = self.config.auth
        if auth is None:
            return True
        authenticated = auth.is_authenticated()
        if inspect.isawaitable(authenticated):
            authenticated = await authenticated
        if not authenticated:
            logger.info("Generation requires authentication")
            await notify(auth.on_auth_required)
        return bool(authenticated)

    def _cancel(self, attempt_id: int) -> None:
        logger.info("Generation cancelled after moderation warning")
        current = self._session.is_current(attempt_id)
        self._set(attempt_id, INITIAL_STATE)
        self._session.release(attempt_id)
        if current and self.config.on_cancel is not None:
            try:
                self.config.on_cancel()
            except Exception:
                logger.exception("on_cancel raised")

    async def _proceed(
        self, attempt_id: int, input: InputT, settlement: CreditSettlement
    ) -> Resolved[ResultT] | None:
        """Run the attempt to completion unless `reset()`/`close()` abandoned it."""
        if not self._session.is_current(attempt_id):
            logger.info(f"Attempt {attempt_id} was abandoned; not executing")
            return None
        return await self._complete(attempt_id, input, settlement)

    async def _complete(
        self, attempt_id: int, input: InputT, settlement: CreditSettlement
    ) -> Resolved[ResultT]:
        """Execution through terminal state; shared by the direct and proceed paths."""
        try:
            try:
                result = await self._execute(attempt_id, input, settlement)
            except Exception as e:
                return await self._fail(attempt_id, e)
            return await self._succeed(attempt_id, result)
        finally:
            self._session.release(attempt_id)

    async def _execute(
        self, attempt_id: int, input: InputT, settlement: CreditSettlement
    ) -> ResultT:
        self._update(
            attempt_id, status=GenerationPhase.GENERATING, progress=PROGRESS_STARTED
        )

        def on_progress(progress: int) -> None:
            if self._state.status in TERMINAL_PHASES:
                return
            self._update(attempt_id, progress=max(0, min(PROGRESS_DONE, int(progress))))

        result = await self.strategy.execute(input, on_progress)
        self._update(attempt_id, progress=PROGRESS_EXECUTED)

        save = getattr(self.strategy, "save", None)
        if save is not None and self.config.user_id:
            self._update(attempt_id, status=GenerationPhase.SAVING)
            try:
                await save(result, self.config.user_id)
            except Exception as e:
                raise create_generation_error(ErrorKind.SAVE, "Failed to save", e) from e

        self._update(attempt_id, progress=PROGRESS_SAVED)
        await settlement.settle(self.strategy.get_credit_cost())
        return result

    async def _succeed(self, attempt_id: int, result: ResultT) -> Resolved[ResultT]:
        self._set(
            attempt_id,
            GenerationState(
                status=GenerationPhase.SUCCESS,
                is_generating=False,
                progress=PROGRESS_DONE,
                result=result,
            ),
        )
        logger.info(f"Attempt {attempt_id} succeeded")
        if not self._session.is_current(attempt_id):
            logger.debug(f"Attempt {attempt_id} was abandoned; skipping callbacks")
            return Resolved(status="success", result=result)

        success_message = self.config.alert_messages.success
        if success_message and self.alerts is not None:
            await notify(self.alerts.show_success, "Success", success_message)
        if self.config.on_success is not None:
            await notify(self.config.on_success, result)
        self._schedule_lifecycle(attempt_id, "success", result, None)
        return Resolved(status="success", result=result)

    async def _fail(self, attempt_id: int, raw: BaseException) -> Resolved[ResultT]:
        error = self.classifier.classify(raw)
        structured_logger.error(
            f"Generation attempt failed: {error.message}",
            exc=error.original_error,
            error_kind=error.kind.value,
            attempt_id=attempt_id,
            user_id=self.config.user_id,
        )
        self._set(
            attempt_id,
            GenerationState(status=GenerationPhase.ERROR, is_generating=False, error=error),
        )
        if not self._session.is_current(attempt_id):
            return Resolved(status="error", error=error)

        if self.alerts is not None:
            await notify(
                self.alerts.show_error,
                "Error",
                get_alert_message(error, self.config.alert_messages),
            )
        if self.config.on_error is not None:
            await notify(self.config.on_error, error)
        self._schedule_lifecycle(attempt_id, "error", None, error)
        return Resolved(status="error", error=error)

    # -- lifecycle timers ---------------------------------------------------

    def _cancel_timers(self) -> None:
        for handle in (self._complete_handle, self._reset_handle):
            if handle is not None:
                handle.cancel()
        self._complete_handle = None
        self._reset_handle = None

    def _schedule_lifecycle(
        self,
        attempt_id: int,
        status: Literal["success", "error"],
        result: ResultT | None,
        error: GenerationError | None,
    ) -> None:
        lifecycle = self.config.lifecycle
        if lifecycle is None or lifecycle.on_complete is None:
            return
        if not self._session.is_current(attempt_id):
            return

        delay = (
            lifecycle.complete_delay
            if lifecycle.complete_delay is not None
            else self.settings.LIFECYCLE_COMPLETE_DELAY_SECONDS
        )
        if self._complete_handle is not None:
            self._complete_handle.cancel()

        loop = asyncio.get_running_loop()
        self._complete_handle = loop.call_later(
            delay, self._fire_lifecycle, status, result, error
        )

    def _fire_lifecycle(
        self,
        status: Literal["success", "error"],
        result: ResultT | None,
        error: GenerationError | None,
    ) -> None:
        self._complete_handle = None
        lifecycle = self.config.lifecycle
        if not self._session.alive or lifecycle is None or lifecycle.on_complete is None:
            return

        try:
            lifecycle.on_complete(status, result, error)
        except Exception:
            logger.exception("lifecycle.on_complete raised")

        if lifecycle.auto_reset:
            reset_delay = (
                lifecycle.reset_delay
                if lifecycle.reset_delay is not None
                else self.settings.LIFECYCLE_RESET_DELAY_SECONDS
            )
            if self._reset_handle is not None:
                self._reset_handle.cancel()
            loop = asyncio.get_running_loop()
            self._reset_handle = loop.call_later(reset_delay, self._auto_reset)

    def _auto_reset(self) -> None:
        self._reset_handle = None
        if not self._session.alive or self._session.in_flight:
            return
        logger.debug("Auto-reset to idle")
        self._publish(INITIAL_STATE)

