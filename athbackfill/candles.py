"""Tiered candle assembly.

Fine candles are used close to the entry, where they decide whether a high
happened before or after the call, and coarse candles for older history:

* minute candles from the entry up to the next full hour,
* hour candles from that hour boundary on,
* day candles from the following day boundary on, once the token is older
  than two days.

The tiers are merged, deduplicated per minute and sorted. One source
supplies the whole series of a mint: sources are tried in priority order
and the first that returns any candle wins, so real and synthetic candles
never end up in the same series.
"""

import time
from typing import Dict, Iterable, List, Optional

from . import config
from .models import DAY_MS, HOUR_MS, MINUTE_MS, Candle, Granularity

MINUTE_TIER_MAX_GAP = HOUR_MS
DAY_TIER_MIN_AGE = 2 * DAY_MS


def ceil_to(ts: int, step: int) -> int:
    """Round ``ts`` up to the next multiple of ``step``."""
    return -(-ts // step) * step


def merge_candles(*tiers: Iterable[Candle]) -> List[Candle]:
    """Merge candle lists, keeping the last one seen per rounded minute."""
    unique: Dict[int, Candle] = {}
    for tier in tiers:
        for candle in tier:
            key = round(candle.start_time / MINUTE_MS) * MINUTE_MS
            unique[key] = candle
    return sorted(unique.values(), key=lambda c: c.start_time)


async def fetch_tiers(source, mint: str, entry_time: int, now: int) -> List[Candle]:
    """Return the merged minute, hour and day tiers of ``source``."""
    next_hour = ceil_to(entry_time, HOUR_MS)
    next_day = ceil_to(next_hour, DAY_MS)

    minute: List[Candle] = []
    hour: List[Candle] = []
    day: List[Candle] = []

    if next_hour < now and 0 < next_hour - entry_time <= MINUTE_TIER_MAX_GAP:
        fetched = await source.fetch_candles(
            mint, Granularity.MINUTE, entry_time, next_hour
        )
        minute = [c for c in fetched if c.start_time >= entry_time]

    if next_hour < now:
        fetched = await source.fetch_candles(mint, Granularity.HOUR, next_hour)
        hour = [c for c in fetched if c.start_time >= next_hour]

    if now - entry_time > DAY_TIER_MIN_AGE:
        fetched = await source.fetch_candles(mint, Granularity.DAY, next_day)
        day = [c for c in fetched if c.start_time >= next_day]

    candles = merge_candles(minute, hour, day)
    if candles:
        config.logger.debug(
            "%s: %s candles from %s (%s minute, %s hour, %s day)",
            mint[:8],
            len(candles),
            getattr(source, "name", "source"),
            len(minute),
            len(hour),
            len(day),
        )
    return candles


async def fetch_snapshot(source, mint: str, entry_time: int, now: int) -> List[Candle]:
    """Return the points of a snapshot source, fetched once per mint.

    A snapshot source answers every granularity with the same current
    snapshot, so asking it once per tier would only repeat the request.
    """
    if ceil_to(entry_time, HOUR_MS) >= now:
        return []
    fetched = await source.fetch_candles(mint, Granularity.HOUR, entry_time)
    return merge_candles(c for c in fetched if c.start_time >= entry_time)


async def assemble_candles(
    chain, mint: str, entry_time: int, now: Optional[int] = None
) -> List[Candle]:
    """Return the deduplicated, ascending candle series of ``mint`` since
    ``entry_time``.

    ``chain`` is an iterable of sources in priority order, normally a
    :class:`~athbackfill.providers.ProviderChain`. Each source needs a
    ``fetch_candles(mint, granularity, since, until)`` coroutine; sources
    with a true ``snapshot`` attribute are queried once instead of per tier.
    """
    if now is None:
        now = int(time.time() * 1000)
    for source in chain:
        if getattr(source, "snapshot", False):
            candles = await fetch_snapshot(source, mint, entry_time, now)
        else:
            candles = await fetch_tiers(source, mint, entry_time, now)
        if candles:
            return candles
    config.logger.debug("%s: no candles from any source", mint[:8])
    return []
