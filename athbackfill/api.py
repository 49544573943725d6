"""Asynchronous HTTP helpers for the market-data providers.

Every request goes through :func:`api_get`, which applies per-host rate
limiting, a short timeout and a small fixed retry budget for HTTP 429. Any
failure is reported as ``None`` so callers can treat it as "no data".
"""

import asyncio
import time
from collections import deque
from typing import Any, Deque, Dict, Optional, Tuple

import aiohttp
from aiolimiter import AsyncLimiter

from . import config

GECKOTERMINAL_LIMITER = AsyncLimiter(30, 60)
DEXSCREENER_LIMITER = AsyncLimiter(300, 60)
BIRDEYE_LIMITER = AsyncLimiter(100, 1)
STATUS_HISTORY: Deque[Tuple[float, int]] = deque(maxlen=500)
STATUS_WINDOW = 3600


def status_counts() -> Dict[int, int]:
    """Return HTTP status occurrences seen during the last ``STATUS_WINDOW``.

    Network errors and timeouts are recorded with status ``0``.
    """
    cutoff = time.time() - STATUS_WINDOW
    counts: Dict[int, int] = {}
    for ts, status in STATUS_HISTORY:
        if ts < cutoff:
            continue
        counts[status] = counts.get(status, 0) + 1
    return counts


def limiter_for(url: str) -> Optional[AsyncLimiter]:
    """Return the rate limiter guarding the host of ``url``."""
    if "geckoterminal.com" in url:
        return GECKOTERMINAL_LIMITER
    if "dexscreener.com" in url:
        return DEXSCREENER_LIMITER
    if "birdeye.so" in url:
        return BIRDEYE_LIMITER
    return None


async def api_get(
    url: str,
    session: aiohttp.ClientSession,
    *,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    timeout: Optional[float] = None,
) -> Optional[Any]:
    """Perform an HTTP GET request and return the decoded JSON body.

    Parameters
    ----------
    url:
        Endpoint to request.
    session:
        Shared ``ClientSession`` of the current backfill run.
    params:
        Optional query string parameters.
    headers:
        Optional headers to include in the request.
    timeout:
        Total timeout in seconds, defaults to ``config.REQUEST_TIMEOUT``.

    Returns
    -------
    Optional[Any]
        Parsed JSON on HTTP 200, ``None`` on any other status, on network
        errors, timeouts or an undecodable body.
    """
    client_timeout = aiohttp.ClientTimeout(total=timeout or config.REQUEST_TIMEOUT)
    limiter = limiter_for(url)
    attempts = max(1, config.RATE_LIMIT_ATTEMPTS)
    for attempt in range(attempts):
        try:
            if limiter:
                await limiter.acquire()
            async with session.get(
                url, params=params, headers=headers, timeout=client_timeout
            ) as resp:
                STATUS_HISTORY.append((time.time(), resp.status))
                config.logger.debug(
                    "api_request url=%s params=%s status=%s", url, params, resp.status
                )
                if resp.status == 200:
                    return await resp.json(content_type=None)
                if resp.status != 429:
                    return None
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            STATUS_HISTORY.append((time.time(), 0))
            config.logger.debug("api request failed url=%s: %r", url, exc)
            return None
        if attempt < attempts - 1:
            config.logger.debug(
                "rate limited url=%s attempt=%s/%s, retrying in %ss",
                url,
                attempt + 1,
                attempts,
                config.RATE_LIMIT_DELAY,
            )
            await asyncio.sleep(config.RATE_LIMIT_DELAY)
    config.logger.debug("giving up on %s after %s rate-limited attempts", url, attempts)
    return None
