"""
Async HTTP helper with exponential backoff for provider calls.

Retries 429 / 5xx responses and transport errors with
base_delay * 2^attempt + jitter, honouring a numeric Retry-After header.
Non-retryable error responses and exhausted retries raise ProviderError.
URLs are never logged since some providers authenticate through the query.
"""

import random
import asyncio
import logging

import httpx

from .pipeline.errors import ProviderError

logger = logging.getLogger(__name__)

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 2.0       # seconds, doubles each retry: 2, 4, 8
JITTER_MAX = 1.0       # random jitter 0-1s added to each delay
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def _retry_delay(attempt: int, response: httpx.Response | None = None) -> float:
    if response is not None:
        retry_after = response.headers.get("Retry-After")
        if retry_after and retry_after.isdigit():
            return float(retry_after)
    return BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)


async def request_with_backoff(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    provider: str,
    max_retries: int = MAX_RETRIES,
    **kwargs,
) -> httpx.Response:
    """
    Make an HTTP request, retrying retryable failures.

    Args:
        client:      Shared AsyncClient.
        method:      HTTP method.
        url:         Absolute URL.
        provider:    Provider name used in logs and errors.
        max_retries: Retries after the first attempt.

    Returns:
        The successful (2xx/3xx) response.

    Raises:
        ProviderError: on a non-retryable status, or once retries run out.
    """
    for attempt in range(max_retries + 1):
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            if attempt >= max_retries:
                raise ProviderError(provider, f"request failed: {e}") from e
            delay = _retry_delay(attempt)
            logger.warning(
                f"{provider} request error on attempt {attempt + 1}/{max_retries + 1}: {e} "
                f"- retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
            continue

        if response.status_code < 400:
            return response

        if response.status_code not in RETRYABLE_STATUS_CODES or attempt >= max_retries:
            raise ProviderError(
                provider,
                f"HTTP {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )

        delay = _retry_delay(attempt, response)
        logger.warning(
            f"{provider} {response.status_code} on attempt {attempt + 1}/{max_retries + 1} "
            f"- retrying in {delay:.1f}s"
        )
        await asyncio.sleep(delay)

    raise ProviderError(provider, f"request failed after {max_retries + 1} attempts")
