"""Fal REST client implementing the `AIProvider` contract.

Endpoints:
    run        POST {run_base}/{model}
    submit     POST {queue_base}/{model}                       -> request_id
    status     GET  {queue_base}/{app}/requests/{id}/status?logs=1
    result     GET  {queue_base}/{app}/requests/{id}

`app` is the first two path segments of the model id
(`fal-ai/kling-video/v2/master` -> `fal-ai/kling-video`).
"""

from __future__ import annotations

import asyncio
import logging
from types import TracebackType
from typing import Any

import httpx

from aigen.core.config import Settings, get_settings
from aigen.services.generation.classifier import extract_error_message
from aigen.services.generation.exceptions import ProviderError
from aigen.services.generation.interfaces import ProgressCallback, QueueUpdateCallback
from aigen.services.generation.result_extraction import (
    check_status_for_errors,
    is_job_complete,
)


logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIBE_POLL_SECONDS = 1.0


def app_id(model: str) -> str:
    parts = [p for p in model.strip("/").split("/") if p]
    return "/".join(parts[:2])


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        detail = body.get("detail")
        if isinstance(detail, list):
            return extract_error_message({"detail": detail})
        return str(detail or body.get("error") or body.get("message") or fallback)
    return str(body or fallback)


class FalQueueProvider:
    """Async Fal client; owns its `httpx.AsyncClient` unless one is injected."""

    def __init__(
        self,
        *,
        fal_key: str | None = None,
        run_base_url: str | None = None,
        queue_base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
        subscribe_poll_seconds: float = DEFAULT_SUBSCRIBE_POLL_SECONDS,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.fal_key = fal_key if fal_key is not None else settings.FAL_KEY
        self.run_base_url = (run_base_url or settings.FAL_RUN_BASE_URL).rstrip("/")
        self.queue_base_url = (queue_base_url or settings.FAL_QUEUE_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.GENERATION_TIMEOUT_SECONDS
        self.subscribe_poll_seconds = subscribe_poll_seconds
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> FalQueueProvider:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def is_initialized(self) -> bool:
        return bool(self.fal_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Key {self.fal_key}"}

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not self.is_initialized():
            raise ProviderError(
                "not_initialized", "Fal provider is not initialized; set FAL_KEY"
            )

        try:
            response = await self._get_client().request(
                method, url, headers=self._headers(), json=json, params=params
            )
        except httpx.TimeoutException as e:
            raise ProviderError("timeout", f"Request timeout: {e}") from e
        except httpx.TransportError as e:
            raise ProviderError("network_error", f"Network error: {e}") from e

        if response.is_error:
            try:
                body: Any = response.json()
            except ValueError:
                body = response.text
            message = _error_message(body, response.reason_phrase)
            logger.warning(f"Fal {method} {url} failed with {response.status_code}")
            raise ProviderError(
                f"http_{response.status_code}",
                message,
                status_code=response.status_code,
                body=body,
            )

        data = response.json()
        if not isinstance(data, dict):
            raise ProviderError("invalid_response", "Fal response is not an object")
        return data

    async def run(
        self,
        model: str,
        input: dict[str, Any],
        *,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        return await self._request("POST", f"{self.run_base_url}/{model}", json=input)

    async def submit_job(self, model: str, input: dict[str, Any]) -> str:
        data = await self._request("POST", f"{self.queue_base_url}/{model}", json=input)
        request_id = data.get("request_id")
        if not request_id:
            raise ProviderError(
                "invalid_response",
                f"Fal submit response missing request_id: keys={sorted(data)}",
            )
        logger.info(f"Submitted {model} job {request_id}")
        return str(request_id)

    async def get_job_status(self, model: str, request_id: str) -> dict[str, Any]:
        url = f"{self.queue_base_url}/{app_id(model)}/requests/{request_id}/status"
        return await self._request("GET", url, params={"logs": 1})

    async def get_job_result(self, model: str, request_id: str) -> dict[str, Any]:
        url = f"{self.queue_base_url}/{app_id(model)}/requests/{request_id}"
        return await self._request("GET", url)

    async def subscribe(
        self,
        model: str,
        input: dict[str, Any],
        *,
        timeout_s: float | None = None,
        on_queue_update: QueueUpdateCallback | None = None,
    ) -> dict[str, Any]:
        """Submit and wait for the result, reporting each status to `on_queue_update`."""
        timeout_s = timeout_s or self.timeout
        request_id = await self.submit_job(model, input)
        try:
            async with asyncio.timeout(timeout_s):
                while True:
                    status = await self.get_job_status(model, request_id)
                    if on_queue_update is not None:
                        on_queue_update(status)
                    check = check_status_for_errors(status)
                    if is_job_complete(check.status):
                        return await self.get_job_result(model, request_id)
                    if check.should_stop:
                        raise ProviderError(
                            "job_failed",
                            check.error_message or "Generation failed",
                            body=status,
                        )
                    await asyncio.sleep(self.subscribe_poll_seconds)
        except TimeoutError as e:
            raise ProviderError(
                "timeout", f"Generation timeout after {timeout_s:g}s"
            ) from e
