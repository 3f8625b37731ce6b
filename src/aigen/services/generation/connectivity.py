"""HTTP connectivity probe."""

import logging

import httpx

from aigen.core.config import Settings, get_settings


logger = logging.getLogger(__name__)


class HttpConnectivityProbe:
    """Report the device online when a lightweight HTTP request gets an answer.

    Any HTTP response below 500 counts as online; transport failures and
    timeouts count as offline.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.url = url or settings.CONNECTIVITY_CHECK_URL
        self.timeout = timeout or settings.CONNECTIVITY_TIMEOUT_SECONDS
        self._client = client

    async def is_online(self) -> bool:
        try:
            if self._client is not None:
                response = await self._client.get(self.url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.url)
        except httpx.HTTPError as e:
            logger.info(f"Connectivity check failed: {e.__class__.__name__}: {e}")
            return False
        return response.status_code < 500
