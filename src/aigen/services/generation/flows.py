"""Creation-tracking generation flows.

`BlockingGenerationFlow` wraps the orchestrator with creation bookkeeping for
features that wait on the provider. `WizardGenerationRunner` drives the
explicit phase reducer around either the blocking flow or the queue runner.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import replace
from typing import Any, Literal

from aigen.services.generation.callbacks import notify
from aigen.services.generation.exceptions import GenerationError
from aigen.services.generation.interfaces import (
    AlertPresenter,
    ConnectivityProbe,
    CreationPersistence,
    GenerationConfig,
    GenerationStrategy,
    QueueStrategy,
)
from aigen.services.generation.models import (
    AttemptOutcome,
    GenerationUrls,
    NeedsConfirmation,
    Skipped,
)
from aigen.services.generation.orchestrator import GenerationOrchestrator
from aigen.services.generation.phase_machine import (
    INITIAL_FLOW_STATE,
    FlowAction,
    FlowActionType,
    FlowState,
    FlowStatus,
    generation_reducer,
)
from aigen.services.generation.queue_generation import QueueGenerationRunner


logger = logging.getLogger(__name__)

PREPARATION_FAILED_MESSAGE = "Failed to prepare generation input"
CANCELLED_MESSAGE = "Generation cancelled after moderation warning"


def _completed_record(result: Any) -> dict[str, Any]:
    if isinstance(result, GenerationUrls):
        urls = result
    elif isinstance(result, Mapping):
        urls = GenerationUrls(
            image_url=result.get("image_url") or result.get("imageUrl"),
            video_url=result.get("video_url") or result.get("videoUrl"),
            thumbnail_url=result.get("thumbnail_url") or result.get("thumbnailUrl"),
        )
    else:
        urls = GenerationUrls(
            image_url=getattr(result, "image_url", None),
            video_url=getattr(result, "video_url", None),
        )
    return urls.to_creation_record()


class BlockingGenerationFlow:
    """Record a processing creation, run the orchestrator, finalise the record."""

    def __init__(
        self,
        strategy: GenerationStrategy[Any, Any],
        config: GenerationConfig,
        *,
        persistence: CreationPersistence | None = None,
        creation_meta: Mapping[str, Any] | None = None,
        connectivity: ConnectivityProbe | None = None,
        alerts: AlertPresenter | None = None,
        on_success: Callable[[Any], Awaitable[None] | None] | None = None,
        on_error: Callable[[str], Awaitable[None] | None] | None = None,
        on_cancel: Callable[[], None] | None = None,
    ) -> None:
        self.persistence = persistence
        self.user_id = config.user_id
        self.creation_meta = dict(creation_meta or {})
        self.on_success = on_success
        self.on_error = on_error
        self.on_cancel = on_cancel
        self.creation_id: str | None = None
        self._bookkeeping: set[asyncio.Task[None]] = set()
        self.orchestrator: GenerationOrchestrator[Any, Any] = GenerationOrchestrator(
            strategy,
            replace(
                config,
                on_success=self._handle_success,
                on_error=self._handle_error,
                on_cancel=self._handle_cancel,
            ),
            connectivity=connectivity,
            alerts=alerts,
        )

    @property
    def is_generating(self) -> bool:
        return self.orchestrator.is_generating

    async def start_generation(
        self, input: Any, prompt: str | None = None
    ) -> AttemptOutcome:
        if self.orchestrator.is_generating:
            return Skipped()

        if self.persistence is not None and self.user_id and prompt:
            try:
                self.creation_id = await self.persistence.save_as_processing(
                    self.user_id, {**self.creation_meta, "prompt": prompt}
                )
                logger.debug(f"Saved creation {self.creation_id} as processing")
            except Exception as e:
                logger.error(f"Failed to save processing creation: {e}")

        outcome = await self.orchestrator.generate(input)
        if isinstance(outcome, Skipped) and self.creation_id:
            await self._mark_failed(
                self.creation_id, f"Generation skipped: {outcome.reason}"
            )
            self.creation_id = None
        return outcome

    async def _mark_failed(self, creation_id: str | None, message: str) -> None:
        if not (creation_id and self.persistence is not None and self.user_id):
            return
        try:
            await self.persistence.update_to_failed(self.user_id, creation_id, message)
        except Exception as e:
            logger.error(f"Failed to update error status: {e}")

    async def _handle_success(self, result: Any) -> None:
        if self.creation_id and self.persistence is not None and self.user_id:
            try:
                await self.persistence.update_to_completed(
                    self.user_id, self.creation_id, _completed_record(result)
                )
            except Exception as e:
                logger.error(f"Failed to update completion status: {e}")
        self.creation_id = None
        await notify(self.on_success, result)

    async def _handle_error(self, error: GenerationError) -> None:
        await self._mark_failed(self.creation_id, error.message)
        self.creation_id = None
        await notify(self.on_error, error.message)

    def _handle_cancel(self) -> None:
        creation_id, self.creation_id = self.creation_id, None
        if creation_id:
            task = asyncio.get_running_loop().create_task(
                self._mark_failed(creation_id, CANCELLED_MESSAGE)
            )
            self._bookkeeping.add(task)
            task.add_done_callback(self._bookkeeping.discard)
        if self.on_cancel is not None:
            self.on_cancel()

    async def wait_for_bookkeeping(self) -> None:
        """Wait for creation updates scheduled by a moderation cancel."""
        if self._bookkeeping:
            await asyncio.gather(*self._bookkeeping)

    def close(self) -> None:
        self.orchestrator.close()


InputBuilder = Callable[
    [], tuple[Any, str | None] | Awaitable[tuple[Any, str | None]]
]


class WizardGenerationRunner:
    """Pick queue or blocking mode and track the attempt in a `FlowState`.

    Video output goes through the queue runner when its strategy can submit
    to a queue; everything else uses the blocking flow. A moderation warning
    keeps the wizard in GENERATING with the pending `confirmation` exposed;
    cancelling it returns the wizard to IDLE.
    """

    def __init__(
        self,
        *,
        blocking: BlockingGenerationFlow | None = None,
        queue: QueueGenerationRunner | None = None,
        output_type: Literal["image", "video"] = "image",
        on_error: Callable[[str], Awaitable[None] | None] | None = None,
    ) -> None:
        if blocking is None and queue is None:
            raise ValueError("WizardGenerationRunner needs a blocking flow or a queue runner")
        self.blocking = blocking
        self.queue = queue
        self.output_type = output_type
        self.on_error = on_error
        self.state: FlowState = INITIAL_FLOW_STATE
        self.confirmation: NeedsConfirmation[Any] | None = None
        for flow in (blocking, queue):
            if flow is not None:
                self._chain_callbacks(flow)

    def _chain_callbacks(self, flow: BlockingGenerationFlow | QueueGenerationRunner) -> None:
        user_success = flow.on_success
        user_error = flow.on_error

        async def on_success(result: Any) -> None:
            self.dispatch(FlowAction(FlowActionType.COMPLETE))
            await notify(user_success, result)

        async def on_error(message: str) -> None:
            self.dispatch(FlowAction(FlowActionType.ERROR, error=message))
            await notify(user_error, message)

        flow.on_success = on_success
        flow.on_error = on_error

        if isinstance(flow, BlockingGenerationFlow):
            user_cancel = flow.on_cancel

            def on_cancel() -> None:
                self.confirmation = None
                self.dispatch(FlowAction(FlowActionType.RESET))
                if user_cancel is not None:
                    user_cancel()

            flow.on_cancel = on_cancel

    @property
    def is_video_mode(self) -> bool:
        return (
            self.output_type == "video"
            and self.queue is not None
            and isinstance(self.queue.strategy, QueueStrategy)
        )

    @property
    def is_generating(self) -> bool:
        return bool(
            (self.queue is not None and self.queue.is_generating)
            or (self.blocking is not None and self.blocking.is_generating)
        )

    def dispatch(self, action: FlowAction) -> FlowState:
        new_state = generation_reducer(self.state, action)
        if new_state is self.state and action.type is not FlowActionType.RESET:
            logger.debug(f"Ignored {action.type} in {self.state.status}")
        self.state = new_state
        return new_state

    async def run(self, build_input: InputBuilder) -> FlowState:
        """Prepare input with `build_input` and start generation in the selected mode."""
        if self.state.status is not FlowStatus.IDLE or self.is_generating:
            return self.state

        self.dispatch(FlowAction(FlowActionType.START_PREPARATION))
        try:
            built = build_input()
            if inspect.isawaitable(built):
                built = await built
            input, prompt = built
        except Exception as e:
            logger.error(f"Generation input preparation failed: {e}")
            await self._fail(str(e) or PREPARATION_FAILED_MESSAGE)
            return self.state

        self.dispatch(FlowAction(FlowActionType.START_GENERATION))
        try:
            if self.blocking is not None and not self.is_video_mode:
                outcome = await self.blocking.start_generation(input, prompt)
                if isinstance(outcome, Skipped):
                    self.dispatch(FlowAction(FlowActionType.RESET))
                elif isinstance(outcome, NeedsConfirmation):
                    self.confirmation = outcome
            elif self.queue is not None:
                await self.queue.start_generation(input, prompt)
        except Exception as e:
            logger.exception("Wizard generation failed")
            await self._fail(str(e) or "Generation failed")
        return self.state

    async def _fail(self, message: str) -> None:
        self.dispatch(FlowAction(FlowActionType.ERROR, error=message))
        await notify(self.on_error, message)

    def reset(self) -> None:
        """Return to idle, dismissing a moderation warning that is still pending."""
        confirmation, self.confirmation = self.confirmation, None
        if confirmation is not None:
            confirmation.cancel()
        self.dispatch(FlowAction(FlowActionType.RESET))

    def close(self) -> None:
        if self.queue is not None:
            self.queue.close()
        if self.blocking is not None:
            self.blocking.close()
        self.reset()
