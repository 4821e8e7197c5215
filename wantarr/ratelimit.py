"""
Retry-once handling for rate-limited HTTP APIs.

Trakt answers HTTP 429 with either a ``Retry-After`` header (seconds) or an
``X-Ratelimit`` JSON header whose ``until`` field is an ISO timestamp.
"""
import asyncio
import json
import logging
from datetime import datetime, timezone

import httpx

logger = logging.getLogger(__name__)

DEFAULT_WAIT_SECONDS = 1.0


def retry_delay(response: httpx.Response, now: datetime | None = None) -> float:
    """Compute how long to wait before retrying a 429 response."""
    retry_after = response.headers.get("retry-after")
    if retry_after:
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            pass

    rate_limit = response.headers.get("x-ratelimit")
    if rate_limit:
        try:
            until = datetime.fromisoformat(json.loads(rate_limit)["until"].replace("Z", "+00:00"))
            now = now or datetime.now(timezone.utc)
            return max(0.0, (until - now).total_seconds())
        except (ValueError, KeyError, TypeError, AttributeError):
            pass

    return DEFAULT_WAIT_SECONDS


async def send_with_retry(client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
    """Send a request, honouring one rate-limit retry directive."""
    response = await client.request(method, url, **kwargs)
    if response.status_code != 429:
        return response

    delay = retry_delay(response)
    logger.warning(f"Rate limited on {method} {url}, retrying in {delay:.1f}s")
    await asyncio.sleep(delay)
    return await client.request(method, url, **kwargs)
