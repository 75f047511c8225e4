"""
Shared HTTP plumbing for OpenAI calls.

  - One pooled httpx.AsyncClient for the whole process
  - Retry with exponential backoff + jitter (429, 500, 502, 503, 504, timeouts)
  - Callers choose how many retries: creating requests are not replayed
"""

import asyncio
import logging
import random
from typing import Optional

import httpx

from ..core.config import get_settings

logger = logging.getLogger(__name__)

# ── Reusable client (connection pool) ────────────────────────────────

_client: Optional[httpx.AsyncClient] = None


def get_client() -> httpx.AsyncClient:
    global _client
    if _client is None or _client.is_closed:
        _client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10, read=60, write=30, pool=10),
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
        )
    return _client


async def close_client():
    """Close the shared HTTP client. Call on app shutdown."""
    global _client
    if _client and not _client.is_closed:
        await _client.aclose()
        _client = None


def auth_headers(api_key: Optional[str] = None, extra: Optional[dict] = None) -> dict[str, str]:
    headers = {
        "Authorization": f"Bearer {api_key if api_key is not None else get_settings().openai_api_key}",
        "Content-Type": "application/json",
    }
    if extra:
        headers.update(extra)
    return headers


# ── Retry logic ──────────────────────────────────────────────────────

RETRYABLE_STATUS = {429, 500, 502, 503, 504}
MAX_RETRIES = 3
BASE_DELAY = 1.0
MAX_DELAY = 16.0


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    max_retries: int = MAX_RETRIES,
    **kwargs,
) -> httpx.Response:
    """Execute request with exponential backoff + jitter."""
    last_exc: Optional[Exception] = None

    for attempt in range(max_retries + 1):
        try:
            resp = await client.request(method, url, **kwargs)

            if resp.status_code not in RETRYABLE_STATUS:
                if resp.status_code >= 400:
                    # Log the actual error body from the API before raising
                    logger.error("OpenAI API error %d: %s", resp.status_code, resp.text[:500])
                resp.raise_for_status()
                return resp

            # Retryable error
            last_exc = httpx.HTTPStatusError(
                f"{resp.status_code}", request=resp.request, response=resp
            )
            if attempt >= max_retries:
                break
            retry_after = resp.headers.get("retry-after")
            delay = float(retry_after) if retry_after else min(
                MAX_DELAY, BASE_DELAY * (2 ** attempt) + random.uniform(0, 1)
            )
            logger.warning(
                "OpenAI %d (attempt %d/%d) — retrying in %.1fs",
                resp.status_code, attempt + 1, max_retries + 1, delay,
            )
            await asyncio.sleep(delay)

        except httpx.TimeoutException as e:
            last_exc = e
            if attempt >= max_retries:
                break
            delay = min(MAX_DELAY, BASE_DELAY * (2 ** attempt) + random.uniform(0, 1))
            logger.warning(
                "OpenAI timeout (attempt %d/%d) — retrying in %.1fs",
                attempt + 1, max_retries + 1, delay,
            )
            await asyncio.sleep(delay)

        except httpx.HTTPStatusError:
            raise  # Non-retryable HTTP errors

    raise last_exc or RuntimeError("OpenAI request failed after retries")
