"""Interval polling of queue-mode provider jobs.

Each submitted job gets exactly one APScheduler interval job whose first run
is immediate. Every tick issues at most one status query; a tick that finds
the previous query still outstanding is skipped. The poller enforces its own
bounds (`max_poll_seconds`, `max_consecutive_errors`) so a stuck provider
can never poll forever.

Usage:
    poller = QueuePoller(provider)
    poller.start_polling(request_id, model, on_complete=..., on_error=...)
    ...
    poller.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from apscheduler.jobstores.base import JobLookupError  # type: ignore[import-untyped]
from apscheduler.schedulers.asyncio import (  # type: ignore[import-untyped]
    AsyncIOScheduler,
)
from apscheduler.triggers.interval import (  # type: ignore[import-untyped]
    IntervalTrigger,
)

from aigen.core.config import Settings, get_settings
from aigen.services.generation.callbacks import notify
from aigen.services.generation.classifier import (
    DEFAULT_ERROR_MESSAGE,
    extract_error_message,
)
from aigen.services.generation.exceptions import GenerationError
from aigen.services.generation.interfaces import AIProvider, OnComplete, OnError
from aigen.services.generation.models import GenerationUrls, QueueJob
from aigen.services.generation.result_extraction import (
    check_status_for_errors,
    extract_result_urls,
    is_job_complete,
)


logger = logging.getLogger(__name__)

StatusListener = Callable[[QueueJob, str], Awaitable[None] | None]


def _failure_message(err: BaseException) -> str:
    if isinstance(err, GenerationError):
        return err.message
    return extract_error_message(err)


class QueuePoller:
    """Poll submitted provider jobs until they complete, fail or time out.

    Callbacks fire at most once per job and never after `stop_polling()` for
    that job, `stop()` or `shutdown()`.
    """

    def __init__(
        self,
        provider: AIProvider,
        *,
        scheduler: AsyncIOScheduler | None = None,
        interval_seconds: float | None = None,
        max_poll_seconds: float | None = None,
        max_consecutive_errors: int | None = None,
        on_status: StatusListener | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = settings or get_settings()
        self.provider = provider
        self.interval_seconds = interval_seconds or settings.POLL_INTERVAL_SECONDS
        self.max_poll_seconds = max_poll_seconds or settings.MAX_POLL_SECONDS
        self.max_consecutive_errors = (
            max_consecutive_errors or settings.MAX_CONSECUTIVE_POLL_ERRORS
        )
        self.on_status = on_status
        self._clock = clock
        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None
        self._jobs: dict[str, QueueJob] = {}
        self._callbacks: dict[str, tuple[OnComplete, OnError]] = {}

    @property
    def jobs(self) -> dict[str, QueueJob]:
        return dict(self._jobs)

    def is_polling(self, request_id: str) -> bool:
        return request_id in self._jobs

    def _get_scheduler(self) -> AsyncIOScheduler:
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(
                timezone="UTC", event_loop=asyncio.get_running_loop()
            )
        if self._owns_scheduler and not self._scheduler.running:
            self._scheduler.start()
            logger.debug("Queue poller scheduler started")
        return self._scheduler

    def start_polling(
        self,
        request_id: str,
        model: str,
        on_complete: OnComplete,
        on_error: OnError,
    ) -> QueueJob:
        """Begin polling `request_id`; must be called from a running event loop.

        Starting a request id that is already being polled replaces the
        previous job and its callbacks.
        """
        if request_id in self._jobs:
            self.stop_polling(request_id)

        job = QueueJob(
            request_id=request_id,
            model=model,
            timer_id=f"queue-poll:{request_id}",
            started_at=self._clock(),
        )
        self._jobs[request_id] = job
        self._callbacks[request_id] = (on_complete, on_error)

        self._get_scheduler().add_job(
            self.poll_once,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            args=[job],
            id=job.timer_id,
            name=f"Queue poll {model}",
            next_run_time=datetime.now(UTC),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info(
            f"Polling {model} request {request_id} every {self.interval_seconds}s"
        )
        return job

    def _remove_timer(self, job: QueueJob) -> None:
        if self._scheduler is None:
            return
        try:
            self._scheduler.remove_job(job.timer_id)
        except JobLookupError:
            logger.debug(f"Poll timer {job.timer_id} already removed")

    def stop_polling(self, request_id: str) -> None:
        """Clear the job's timer and suppress any later callback for it."""
        job = self._jobs.pop(request_id, None)
        self._callbacks.pop(request_id, None)
        if job is None:
            return
        job.active = False
        self._remove_timer(job)
        logger.debug(f"Stopped polling request {request_id}")

    def stop(self) -> None:
        for request_id in list(self._jobs):
            self.stop_polling(request_id)

    def shutdown(self) -> None:
        self.stop()
        if self._owns_scheduler and self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
                logger.debug("Queue poller scheduler shut down")

    async def poll_once(self, job: QueueJob) -> None:
        """Run one tick for `job`; the scheduler calls this on every interval."""
        if not job.active or job.in_flight:
            return
        job.in_flight = True
        try:
            await self._tick(job)
        finally:
            job.in_flight = False

    async def _tick(self, job: QueueJob) -> None:
        elapsed = self._clock() - job.started_at
        if elapsed >= self.max_poll_seconds:
            logger.warning(
                f"Request {job.request_id} exceeded {self.max_poll_seconds}s; aborting"
            )
            await self._finish_error(
                job,
                f"Generation timed out after {int(self.max_poll_seconds)} seconds",
            )
            return

        try:
            status = await self.provider.get_job_status(job.model, job.request_id)
        except Exception as e:
            job.consecutive_errors += 1
            message = _failure_message(e)
            if job.consecutive_errors >= self.max_consecutive_errors:
                logger.error(
                    f"Max consecutive poll errors reached for {job.request_id}, "
                    f"aborting: {message}"
                )
                await self._finish_error(job, message)
            else:
                logger.warning(
                    f"Transient poll error ({job.consecutive_errors}/"
                    f"{self.max_consecutive_errors}) for {job.request_id}: {message}"
                )
            return

        job.consecutive_errors = 0
        if not job.active:
            return

        check = check_status_for_errors(status)
        job.status = check.status
        logger.debug(f"Poll {job.request_id}: {check.status}")

        if is_job_complete(check.status):
            await self._finish_complete(job)
            return

        if check.should_stop:
            await self._finish_error(job, check.error_message or DEFAULT_ERROR_MESSAGE)
            return

        if check.status != job.last_status:
            job.last_status = check.status
            await notify(self.on_status, job, check.status)

    async def _finish_complete(self, job: QueueJob) -> None:
        self._remove_timer(job)
        try:
            result = await self.provider.get_job_result(job.model, job.request_id)
            urls = extract_result_urls(result)
        except Exception as e:
            logger.error(f"Result fetch failed for {job.request_id}: {e}")
            await self._finish_error(job, _failure_message(e))
            return
        await self._deliver(job, urls=urls)

    async def _finish_error(self, job: QueueJob, message: str) -> None:
        self._remove_timer(job)
        await self._deliver(job, error=message)

    async def _deliver(
        self,
        job: QueueJob,
        *,
        urls: GenerationUrls | None = None,
        error: str | None = None,
    ) -> None:
        if not job.active:
            return
        job.active = False
        self._jobs.pop(job.request_id, None)
        callbacks = self._callbacks.pop(job.request_id, None)
        if callbacks is None:
            return

        on_complete, on_error = callbacks
        if error is not None:
            await notify(on_error, error)
        else:
            await notify(on_complete, urls)
