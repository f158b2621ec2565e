"""Continuation dispatch: how the next batch of an import gets triggered."""
from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from etl.importer.errors import DispatchError

LOGGER = logging.getLogger(__name__)

SECRET_HEADER = "X-Import-Secret"
TRIGGER_PATH = "/api/trigger-import"


class ContinuationDispatcher(Protocol):
    async def dispatch(self, job_id: int) -> None:
        """Request that `advance(job_id)` runs again, out of the current call."""
        ...


class NullDispatcher:
    """Leaves continuation to an external poller (see ImportPoller)."""

    async def dispatch(self, job_id: int) -> None:
        LOGGER.debug("Import %d left for the poller", job_id)


class HttpContinuationDispatcher:
    """Self-invocation over HTTP for time-boxed request handlers.

    The receiving endpoint only schedules the next batch and answers right
    away, so the chain of calls never nests deeper than one request.
    """

    def __init__(
        self,
        base_url: str,
        secret: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required for HTTP continuation")
        if not base_url.startswith(("http://", "https://")):
            base_url = f"https://{base_url}"
        self.url = base_url.rstrip("/") + TRIGGER_PATH
        self.secret = secret
        self.timeout = timeout
        self._client = client

    async def dispatch(self, job_id: int) -> None:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers[SECRET_HEADER] = self.secret

        try:
            if self._client is not None:
                response = await self._client.post(
                    self.url, json={"importId": job_id}, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json={"importId": job_id}, headers=headers)
        except httpx.HTTPError as exc:
            raise DispatchError(f"continuation request failed: {exc!r}") from exc

        if response.status_code >= 300:
            raise DispatchError(
                f"continuation rejected with HTTP {response.status_code}: {response.text[:200]}"
            )
        LOGGER.info("Dispatched continuation for import %d -> %s", job_id, self.url)
