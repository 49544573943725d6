"""Candle sources for the supported market-data providers.

Each source turns one provider's JSON into a list of :class:`Candle` objects
sorted by start time. Sources never raise: unavailable providers, rate
limits and malformed payloads all come back as an empty list, and the
:class:`ProviderChain` moves on to the next source.
"""

import asyncio
import math
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Optional

import aiohttp

from . import api, config
from .models import MINUTE_MS, Candle, Granularity

MAX_CANDLES = 1000
PARSE_ERRORS = (
    ValueError,
    TypeError,
    KeyError,
    IndexError,
    AttributeError,
    OverflowError,
)


def now_ms() -> int:
    return int(time.time() * 1000)


def to_price(value: Any) -> float:
    """Return ``value`` as a finite float or raise ``ValueError``."""
    if value is None or isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"not finite: {value!r}")
    return number


def candle_limit(since: int, until: int, granularity: Granularity) -> int:
    """Return how many candles cover ``since``..``until`` plus a small margin."""
    span = max(0, until - since)
    return max(1, min(MAX_CANDLES, math.ceil(span / granularity.millis) + 5))


class PoolAddressCache:
    """Memo of ``mint -> pool address`` (``None`` when no pool was found).

    Concurrent lookups for the same mint share a single request.
    """

    def __init__(self) -> None:
        self._pools: Dict[str, Optional[str]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def __contains__(self, mint: str) -> bool:
        return mint in self._pools

    def __len__(self) -> int:
        return len(self._pools)

    def get(self, mint: str) -> Optional[str]:
        return self._pools.get(mint)

    async def resolve(
        self, mint: str, lookup: Callable[[str], Awaitable[Optional[str]]]
    ) -> Optional[str]:
        if mint in self._pools:
            return self._pools[mint]
        lock = self._locks.setdefault(mint, asyncio.Lock())
        async with lock:
            if mint not in self._pools:
                self._pools[mint] = await lookup(mint)
        self._locks.pop(mint, None)
        return self._pools[mint]


class CandleSource:
    """Base class for candle sources.

    Subclasses implement :meth:`_fetch`; this class clips the result to the
    requested window, sorts it and converts parse errors into an empty list.
    """

    name = "base"
    snapshot = False

    def __init__(self, session: aiohttp.ClientSession) -> None:
        self.session = session
        self.enabled = True

    async def fetch_candles(
        self,
        mint: str,
        granularity: Granularity,
        since: int,
        until: Optional[int] = None,
    ) -> List[Candle]:
        """Return candles for ``mint`` starting at or after ``since``.

        ``until`` optionally bounds the window (exclusive).
        """
        if not self.enabled:
            return []
        try:
            candles = await self._fetch(mint, granularity, since, until)
        except PARSE_ERRORS as exc:
            config.logger.debug(
                "%s returned malformed %s candles for %s: %r",
                self.name,
                granularity.value,
                mint[:8],
                exc,
            )
            return []
        window = [
            c
            for c in candles
            if c.start_time >= since and (until is None or c.start_time < until)
        ]
        window.sort(key=lambda c: c.start_time)
        if not window:
            config.logger.debug(
                "%s has no %s candles for %s", self.name, granularity.value, mint[:8]
            )
        return window

    async def _fetch(
        self,
        mint: str,
        granularity: Granularity,
        since: int,
        until: Optional[int],
    ) -> List[Candle]:
        raise NotImplementedError


class BirdeyeSource(CandleSource):
    """Paid OHLCV history; only enabled when an API key is configured."""

    name = "birdeye"
    INTERVALS = {
        Granularity.MINUTE: "1m",
        Granularity.HOUR: "1H",
        Granularity.DAY: "1D",
    }

    def __init__(
        self, session: aiohttp.ClientSession, api_key: Optional[str] = None
    ) -> None:
        super().__init__(session)
        self.api_key = api_key if api_key is not None else config.BIRDEYE_API_KEY
        self.enabled = bool(self.api_key)

    async def _fetch(self, mint, granularity, since, until):
        params = {
            "address": mint,
            "type": self.INTERVALS[granularity],
            "time_from": since // 1000,
            "time_to": (until or now_ms()) // 1000,
        }
        headers = {
            "X-API-KEY": self.api_key,
            "x-chain": config.NETWORK,
            "Accept": "application/json",
        }
        data = await api.api_get(
            f"{config.BIRDEYE_BASE_URL}/defi/ohlcv",
            self.session,
            params=params,
            headers=headers,
        )
        if not data:
            return []
        return self.parse(data, granularity)

    @classmethod
    def parse(cls, data: dict, granularity: Granularity) -> List[Candle]:
        items = data["data"]["items"]
        if not isinstance(items, list):
            raise TypeError("items is not a list")
        return [
            Candle(
                start_time=int(item["unixTime"]) * 1000,
                open=to_price(item["o"]),
                high=to_price(item["h"]),
                low=to_price(item["l"]),
                close=to_price(item["c"]),
                volume=to_price(item.get("v", 0)),
                granularity=granularity,
                source=cls.name,
            )
            for item in items
        ]


class GeckoTerminalSource(CandleSource):
    """Free pool-level OHLCV history from GeckoTerminal.

    Candles are requested per trading pool, so the token's top pool is
    resolved first and memoised in a :class:`PoolAddressCache`.
    """

    name = "geckoterminal"

    def __init__(
        self,
        session: aiohttp.ClientSession,
        pool_cache: Optional[PoolAddressCache] = None,
    ) -> None:
        super().__init__(session)
        self.pool_cache = pool_cache if pool_cache is not None else PoolAddressCache()
        self.base_url = f"{config.GECKOTERMINAL_BASE_URL}/networks/{config.NETWORK}"

    async def lookup_pool(self, mint: str) -> Optional[str]:
        data = await api.api_get(
            f"{self.base_url}/tokens/{mint}/pools",
            self.session,
            params={"page": 1},
            timeout=5,
        )
        try:
            address = data["data"][0]["attributes"]["address"] if data else None
        except PARSE_ERRORS:
            address = None
        if not address:
            config.logger.debug("no %s pool found for %s", self.name, mint[:8])
            return None
        return str(address)

    async def _fetch(self, mint, granularity, since, until):
        pool = await self.pool_cache.resolve(mint, self.lookup_pool)
        if not pool:
            return []
        params = {
            "limit": candle_limit(since, until or now_ms(), granularity),
            "currency": "usd",
            "token": "base",
        }
        if until is not None:
            params["before_timestamp"] = until // 1000
        data = await api.api_get(
            f"{self.base_url}/pools/{pool}/ohlcv/{granularity.value}",
            self.session,
            params=params,
        )
        if not data:
            return []
        return self.parse(data, granularity)

    @classmethod
    def parse(cls, data: dict, granularity: Granularity) -> List[Candle]:
        rows = data["data"]["attributes"]["ohlcv_list"]
        if not isinstance(rows, list):
            raise TypeError("ohlcv_list is not a list")
        candles = [
            Candle(
                start_time=int(row[0]) * 1000,
                open=to_price(row[1]),
                high=to_price(row[2]),
                low=to_price(row[3]),
                close=to_price(row[4]),
                volume=to_price(row[5]),
                granularity=granularity,
                source=cls.name,
            )
            for row in rows
        ]
        # newest first on the wire
        candles.reverse()
        return candles


class DexScreenerSource(CandleSource):
    """Last-resort approximation built from DexScreener's pair snapshot.

    DexScreener exposes no candle history, only the current price and its
    24h change. Two ``synthetic`` candles are derived from those: one for
    the current minute and one 24 hours earlier.
    """

    name = "dexscreener"
    snapshot = True

    def __init__(
        self, session: aiohttp.ClientSession, enabled: Optional[bool] = None
    ) -> None:
        super().__init__(session)
        self.enabled = config.ENABLE_SYNTHETIC_CANDLES if enabled is None else enabled

    async def _fetch(self, mint, granularity, since, until):
        data = await api.api_get(
            f"{config.DEXSCREENER_BASE_URL}/tokens/{mint}",
            self.session,
            headers={"Accept": "application/json"},
        )
        if not data:
            return []
        return self.parse(data, granularity, now_ms())

    @classmethod
    def parse(cls, data: dict, granularity: Granularity, now: int) -> List[Candle]:
        pairs = data.get("pairs") or []
        if not isinstance(pairs, list):
            raise TypeError("pairs is not a list")
        if not pairs:
            return []
        pair = max(pairs, key=lambda p: float((p.get("liquidity") or {}).get("usd") or 0))
        price = to_price(pair["priceUsd"])
        change = to_price((pair.get("priceChange") or {}).get("h24") or 0)
        if price <= 0 or change <= -100:
            return []
        price_24h_ago = price / (1 + change / 100)
        anchor = now - now % MINUTE_MS
        return [
            cls._point(anchor - 24 * 60 * MINUTE_MS, price_24h_ago, granularity),
            cls._point(anchor, price, granularity),
        ]

    @classmethod
    def _point(cls, ts: int, price: float, granularity: Granularity) -> Candle:
        return Candle(
            start_time=ts,
            open=price,
            high=price,
            low=price,
            close=price,
            volume=0.0,
            granularity=granularity,
            source=cls.name,
            synthetic=True,
        )


class ProviderChain:
    """Priority-ordered list of candle sources.

    Iterating the chain yields its enabled sources in priority order, which
    is how :func:`~athbackfill.candles.assemble_candles` picks one source
    per mint. :meth:`fetch_candles` returns the first non-empty result for
    a single granularity; results from different sources are never merged.
    """

    def __init__(self, sources: Iterable[CandleSource]) -> None:
        self.sources = [s for s in sources if getattr(s, "enabled", True)]

    def __iter__(self) -> Iterator[CandleSource]:
        return iter(self.sources)

    @property
    def names(self) -> List[str]:
        return [s.name for s in self.sources]

    async def fetch_candles(
        self,
        mint: str,
        granularity: Granularity,
        since: int,
        until: Optional[int] = None,
    ) -> List[Candle]:
        for source in self.sources:
            candles = await source.fetch_candles(mint, granularity, since, until)
            if candles:
                config.logger.debug(
                    "%s: %s %s candles from %s",
                    mint[:8],
                    len(candles),
                    granularity.value,
                    source.name,
                )
                return candles
        return []


def build_chain(
    session: aiohttp.ClientSession, pool_cache: Optional[PoolAddressCache] = None
) -> ProviderChain:
    """Return the default chain: Birdeye, GeckoTerminal, then DexScreener."""
    chain = ProviderChain(
        [
            BirdeyeSource(session),
            GeckoTerminalSource(session, pool_cache),
            DexScreenerSource(session),
        ]
    )
    config.logger.info("candle sources: %s", ", ".join(chain.names))
    return chain
