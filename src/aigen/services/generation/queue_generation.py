"""Submit-then-poll generation for queue-mode providers.

The runner records the creation as processing, submits the job, stores the
provider request id on the creation and hands the job to the `QueuePoller`.
On completion the output is persisted first and only then charged for; a
result without an output URL, or a completion that cannot be persisted, fails
the attempt without a charge. Other bookkeeping failures are logged and never
mask the generation outcome reported to the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from aigen.services.generation.callbacks import notify
from aigen.services.generation.credits import CreditSettlement
from aigen.services.generation.exceptions import GenerationError
from aigen.services.generation.interfaces import (
    CreationPersistence,
    CreditLedger,
    OnComplete,
    OnError,
    QueueStrategy,
)
from aigen.services.generation.models import GenerationUrls, QueueSubmission
from aigen.services.generation.queue_poller import QueuePoller


logger = logging.getLogger(__name__)

QUEUE_UNAVAILABLE_MESSAGE = "Queue submission not available"
QUEUE_SUBMISSION_FAILED_MESSAGE = "Queue submission failed"
NO_OUTPUT_MESSAGE = "Generation finished without an output"
SAVE_FAILED_MESSAGE = "Failed to save the generated output"


def _as_submission(raw: QueueSubmission | Mapping[str, Any]) -> QueueSubmission:
    if isinstance(raw, QueueSubmission):
        return raw
    return QueueSubmission.model_validate(raw)


class QueueGenerationRunner:
    """Run one queue-mode generation at a time for a feature."""

    def __init__(
        self,
        strategy: Any,
        poller: QueuePoller,
        *,
        persistence: CreationPersistence | None = None,
        user_id: str | None = None,
        credits: CreditLedger | None = None,
        credit_cost: float = 0,
        creation_meta: Mapping[str, Any] | None = None,
        on_success: OnComplete | None = None,
        on_error: OnError | None = None,
        on_credits_exhausted: Callable[[], None] | None = None,
    ) -> None:
        self.strategy = strategy
        self.poller = poller
        self.persistence = persistence
        self.user_id = user_id
        self.credits = credits
        self.credit_cost = credit_cost
        self.creation_meta = dict(creation_meta or {})
        self.on_success = on_success
        self.on_error = on_error
        self.on_credits_exhausted = on_credits_exhausted

        self.is_generating = False
        self.creation_id: str | None = None
        self.request_id: str | None = None
        self.model: str | None = None

    def _reset(self) -> None:
        self.creation_id = None
        self.request_id = None
        self.model = None
        self.is_generating = False

    async def start_generation(self, input: Any, prompt: str | None = None) -> bool:
        """Submit `input`; return True when a job was handed to the poller."""
        if not isinstance(self.strategy, QueueStrategy):
            await notify(self.on_error, QUEUE_UNAVAILABLE_MESSAGE)
            return False
        if self.is_generating:
            logger.debug("Queue generation already in flight; skipping")
            return False

        self.is_generating = True
        try:
            return await self._submit(input, prompt)
        except BaseException:
            self._reset()
            raise

    async def _submit(self, input: Any, prompt: str | None) -> bool:
        creation_id: str | None = None
        if self.persistence is not None and self.user_id and prompt:
            try:
                creation_id = await self.persistence.save_as_processing(
                    self.user_id, {**self.creation_meta, "prompt": prompt}
                )
                self.creation_id = creation_id
            except Exception as e:
                logger.error(f"Failed to save processing creation: {e}")

        try:
            submission = _as_submission(await self.strategy.submit_to_queue(input))
        except Exception as e:
            logger.error(f"Queue submission raised: {e}")
            submission = QueueSubmission(success=False, error=str(e) or None)

        if not (submission.success and submission.request_id and submission.model):
            message = submission.error or QUEUE_SUBMISSION_FAILED_MESSAGE
            await self._mark_failed(creation_id, message)
            self._reset()
            await notify(self.on_error, message)
            return False

        self.request_id = submission.request_id
        self.model = submission.model

        if creation_id and self.persistence is not None and self.user_id:
            try:
                await self.persistence.update_request_id(
                    self.user_id, creation_id, submission.request_id, submission.model
                )
            except Exception as e:
                logger.error(f"Failed to update request id: {e}")

        self.poller.start_polling(
            submission.request_id,
            submission.model,
            on_complete=self._handle_complete,
            on_error=self._handle_error,
        )
        return True

    async def _mark_failed(self, creation_id: str | None, message: str) -> None:
        if not (creation_id and self.persistence is not None and self.user_id):
            return
        try:
            await self.persistence.update_to_failed(self.user_id, creation_id, message)
        except Exception as e:
            logger.error(f"Failed to update error status: {e}")

    async def _handle_complete(self, urls: GenerationUrls) -> None:
        """Persist the output, then charge for it; no output or no record means no charge."""
        if not urls.primary_url:
            logger.error(f"Request {self.request_id} completed without an output URL")
            await self._handle_error(NO_OUTPUT_MESSAGE)
            return

        creation_id = self.creation_id
        if creation_id and self.persistence is not None and self.user_id:
            try:
                await self.persistence.update_to_completed(
                    self.user_id, creation_id, urls.to_creation_record()
                )
            except Exception as e:
                logger.error(f"Failed to update completion status: {e}")
                await self._handle_error(SAVE_FAILED_MESSAGE)
                return

        settlement = CreditSettlement(self.credits, self.on_credits_exhausted)
        try:
            await settlement.settle(self.credit_cost)
        except GenerationError as e:
            await self._handle_error(e.message)
            return

        self._reset()
        await notify(self.on_success, urls)

    async def _handle_error(self, message: str) -> None:
        await self._mark_failed(self.creation_id, message)
        self._reset()
        await notify(self.on_error, message)

    def close(self) -> None:
        """Consumer gone: stop polling the current job."""
        if self.request_id:
            self.poller.stop_polling(self.request_id)
        self._reset()
