"""Bounded-retry HTTP client.

Every remote interaction of the engine (pipeline host reads, artifact
downloads, bus uploads) goes through :class:`ResilientClient`.  Failed
attempts are retried up to ``max_retries`` times with a *fixed*
``retry_delay`` between them; exhaustion raises :class:`TransportError`,
which is fatal to the run.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable

import httpx

from runrelay.utils.exceptions import ConfigurationError, TransportError
from runrelay.utils.logging import get_logger

logger = get_logger("host.client")

DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_DELAY = 2.0


class ResilientClient:
    """Thin retrying wrapper around :class:`httpx.AsyncClient`.

    Parameters
    ----------
    token:
        Credential sent in *token_header* on every request.  Leave empty for
        unauthenticated calls.
    token_header:
        ``JOB-TOKEN`` inside CI jobs, ``PRIVATE-TOKEN`` for personal tokens.
    max_retries:
        Total number of attempts per call.
    retry_delay:
        Seconds to wait between attempts.  Constant, not exponential.
    timeout:
        Per-attempt timeout in seconds.
    transport:
        Optional httpx transport, used by tests to fake the remote side.
    """

    def __init__(
        self,
        token: str = "",
        token_header: str = "JOB-TOKEN",
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_retries < 1:
            raise ConfigurationError("max_retries must be at least 1")
        if retry_delay < 0:
            raise ConfigurationError("retry_delay must not be negative")

        headers = {token_header: token} if token else {}
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(self, url: str) -> bytes:
        """Return the response body of ``GET url``."""
        response = await self._request("GET", url)
        return response.content

    async def get_json(self, url: str) -> Any:
        body = await self.get(url)
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise TransportError("GET", url, 1, f"invalid JSON response: {exc}") from exc

    async def put(self, url: str, data: bytes) -> None:
        """Upload *data* as the request body of ``PUT url``."""
        await self._request("PUT", url, content=data)

    async def post(self, url: str, data: dict[str, str] | None = None) -> Any:
        """Form-encoded ``POST url``; returns the decoded JSON body."""
        response = await self._request("POST", url, data=data or {})
        if not response.content:
            return None
        try:
            return response.json()
        except json.JSONDecodeError as exc:
            raise TransportError("POST", url, 1, f"invalid JSON response: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ResilientClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        attempt = 0
        last_error = ""

        while attempt < self.max_retries:
            try:
                response = await self._client.request(method, url, **kwargs)
                response.raise_for_status()
                return response
            except httpx.HTTPStatusError as exc:
                last_error = f"HTTP {exc.response.status_code}"
            except httpx.HTTPError as exc:
                last_error = f"{type(exc).__name__}: {exc}"

            attempt += 1
            will_retry = attempt < self.max_retries
            logger.warning(
                "http_retry",
                method=method,
                url=url,
                attempt=attempt,
                max_retries=self.max_retries,
                error=last_error,
                retry_in=self.retry_delay if will_retry else None,
            )
            if will_retry:
                await self._sleep(self.retry_delay)

        logger.error(
            "http_retries_exhausted",
            method=method,
            url=url,
            attempts=self.max_retries,
            error=last_error,
        )
        raise TransportError(method, url, self.max_retries, last_error)
