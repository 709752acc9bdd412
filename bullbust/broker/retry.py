"""Shared async HTTP plumbing for the brokerage and market-data clients.

Wraps every request with a per-call timeout and exponential-backoff retry on
transport errors, rate limits and server errors.
"""

import asyncio
import logging
from typing import Optional

import httpx

logger = logging.getLogger("bullbust.http")

# Retry settings
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds; doubles each attempt
REQUEST_TIMEOUT = 10.0
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class RetryingClient:
    """Base for async REST clients with bounded exponential-backoff retry.

    Args:
        headers: Headers sent with every request.
        timeout: Per-call timeout in seconds.
        max_retries: Total attempts before the last error is raised.
        base_delay: Delay before the first retry; doubles each attempt.
    """

    _label = "HTTP"

    def __init__(
        self,
        headers: dict[str, str],
        timeout: float = REQUEST_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        base_delay: float = RETRY_BASE_DELAY,
    ) -> None:
        self._headers = headers
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._base_delay = base_delay

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        attempts: Optional[int] = None,
        **kwargs,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential-backoff retry.

        Retries on transient server errors (500, 502, 503, 504) and
        rate-limits (429).  Non-retryable errors are raised immediately.
        *attempts* overrides the client-wide retry budget for this call.
        """
        last_exc: Optional[Exception] = None
        max_attempts = attempts or self._max_retries

        for attempt in range(max_attempts):
            delay = self._base_delay * (2 ** attempt)
            try:
                async with httpx.AsyncClient() as client:
                    resp = await getattr(client, method)(
                        url,
                        headers=self._headers,
                        timeout=self._timeout,
                        **kwargs,
                    )

                if resp.status_code in RETRYABLE_STATUS_CODES:
                    logger.warning(
                        "%s %s %s returned %d — retry %d/%d in %.1fs",
                        self._label, method.upper(), url, resp.status_code,
                        attempt + 1, max_attempts, delay,
                    )
                    last_exc = httpx.HTTPStatusError(
                        f"Server error '{resp.status_code}'",
                        request=resp.request,
                        response=resp,
                    )
                    if attempt + 1 < max_attempts:
                        await asyncio.sleep(delay)
                    continue

                resp.raise_for_status()
                return resp

            except httpx.TransportError as exc:
                logger.warning(
                    "%s %s %s transport error (%s) — retry %d/%d in %.1fs",
                    self._label, method.upper(), url, exc,
                    attempt + 1, max_attempts, delay,
                )
                last_exc = exc
                if attempt + 1 < max_attempts:
                    await asyncio.sleep(delay)

        # All retries exhausted; raise the last error
        raise last_exc  # type: ignore[misc]
