"""Resume polling for creations left in "processing".

A queue-mode generation stores its provider request id on the creation
record. When the flow that submitted it is gone (the wizard was dismissed,
the process restarted), `ProcessingJobsPoller` picks those records up from
the host app's listing and polls them to completed or failed.

Usage:
    resumer = ProcessingJobsPoller(persistence, user_id, provider=provider)
    resumer.sync(gallery_creations)   # call again whenever the listing changes
    ...
    resumer.close()
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from aigen.core.config import Settings, get_settings
from aigen.services.generation.interfaces import AIProvider, CreationPersistence
from aigen.services.generation.models import GenerationUrls, ProcessingCreation
from aigen.services.generation.queue_poller import QueuePoller


logger = logging.getLogger(__name__)

NO_OUTPUT_MESSAGE = "Generation finished without an output"


def _as_creation(raw: ProcessingCreation | Mapping[str, Any]) -> ProcessingCreation:
    if isinstance(raw, ProcessingCreation):
        return raw
    return ProcessingCreation.model_validate(raw)


class ProcessingJobsPoller:
    """Poll stored processing creations through a `QueuePoller`.

    Each resumable creation is polled at most once at a time; the poller's
    own bounds (timeout, consecutive errors) count from when polling resumed.
    """

    def __init__(
        self,
        persistence: CreationPersistence,
        user_id: str | None,
        *,
        provider: AIProvider | None = None,
        poller: QueuePoller | None = None,
        settings: Settings | None = None,
    ) -> None:
        if poller is None:
            if provider is None:
                raise ValueError("ProcessingJobsPoller needs a provider or a poller")
            settings = settings or get_settings()
            poller = QueuePoller(
                provider,
                interval_seconds=settings.RESUME_POLL_INTERVAL_SECONDS,
                settings=settings,
            )
        self.persistence = persistence
        self.user_id = user_id
        self.poller = poller
        # request id -> creation id
        self._tracked: dict[str, str] = {}

    @property
    def processing_count(self) -> int:
        return len(self._tracked)

    def sync(self, creations: Iterable[ProcessingCreation | Mapping[str, Any]]) -> int:
        """Poll every resumable creation in `creations`; drop ones no longer listed.

        Must be called from a running event loop. Returns the number of
        creations being polled.
        """
        if not self.user_id:
            self.close()
            return 0
        if not self.poller.provider.is_initialized():
            logger.warning("Provider not initialized; processing creations not resumed")
            return self.processing_count

        resumable = {
            c.request_id: c for c in map(_as_creation, creations) if c.resumable
        }
        for request_id in list(self._tracked):
            if request_id not in resumable:
                self._untrack(request_id)

        for request_id, creation in resumable.items():
            if request_id in self._tracked:
                continue
            self._tracked[request_id] = creation.id
            self.poller.start_polling(
                request_id,
                creation.model or "",
                on_complete=self._completion_handler(request_id),
                on_error=self._error_handler(request_id),
            )
            logger.info(f"Resumed polling for creation {creation.id}")
        return self.processing_count

    def _untrack(self, request_id: str) -> None:
        self._tracked.pop(request_id, None)
        self.poller.stop_polling(request_id)

    def _completion_handler(self, request_id: str):
        async def on_complete(urls: GenerationUrls) -> None:
            creation_id = self._tracked.pop(request_id, None)
            if creation_id is None or not self.user_id:
                return
            if not urls.primary_url:
                await self._mark_failed(creation_id, NO_OUTPUT_MESSAGE)
                return
            try:
                await self.persistence.update_to_completed(
                    self.user_id, creation_id, urls.to_creation_record()
                )
                logger.info(f"Creation {creation_id} completed")
            except Exception as e:
                logger.error(f"Failed to update completion status: {e}")

        return on_complete

    def _error_handler(self, request_id: str):
        async def on_error(message: str) -> None:
            creation_id = self._tracked.pop(request_id, None)
            if creation_id is not None:
                await self._mark_failed(creation_id, message)

        return on_error

    async def _mark_failed(self, creation_id: str, message: str) -> None:
        if not self.user_id:
            return
        try:
            await self.persistence.update_to_failed(self.user_id, creation_id, message)
            logger.info(f"Creation {creation_id} failed: {message}")
        except Exception as e:
            logger.error(f"Failed to update error status: {e}")

    def close(self) -> None:
        """Stop polling every tracked creation."""
        for request_id in list(self._tracked):
            self._untrack(request_id)
