"""Per-entry ATH, drawdown and milestone calculation.

Everything here is pure: the same entry and candle series always produce
the same :class:`ExtremumRecord`.
"""

from typing import Dict, List, Optional, Sequence

from .models import CallEntry, Candle, ExtremumRecord

MILESTONES = (2, 3, 5, 10)


def degenerate_record(entry: CallEntry) -> ExtremumRecord:
    """Return the record of an entry without any post-entry price data."""
    market_cap = entry.resolved_market_cap()
    return ExtremumRecord(
        entry_id=entry.id,
        current_price=entry.entry_price,
        current_multiple=1.0,
        current_market_cap=market_cap,
        ath_price=entry.entry_price,
        ath_multiple=1.0,
        ath_market_cap=market_cap,
        ath_at=entry.entry_time,
        time_to_ath=0,
        max_drawdown=0.0,
        min_low_price=entry.entry_price,
        min_low_at=entry.entry_time,
        time_to_2x=None,
        time_to_3x=None,
        time_to_5x=None,
        time_to_10x=None,
        last_observed_at=entry.entry_time,
    )


def compute_extremum(entry: CallEntry, candles: Sequence[Candle]) -> ExtremumRecord:
    """Compute the metrics of ``entry`` from its mint's candle series.

    Only candles starting at or after the entry time are considered. The ATH
    starts at the entry price and only moves up; milestone times record the
    first candle whose high reaches ``entry_price * N``.
    """
    entry_price = entry.entry_price
    entry_time = entry.entry_time
    valid: List[Candle] = [c for c in candles if c.start_time >= entry_time]
    if not valid:
        return degenerate_record(entry)

    ath_price, ath_at = entry_price, entry_time
    min_low, min_low_at = entry_price, entry_time
    crossed: Dict[int, Optional[int]] = {n: None for n in MILESTONES}

    for candle in valid:
        if candle.high > ath_price:
            ath_price = candle.high
            ath_at = max(candle.start_time, entry_time)
        if 0 < candle.low < min_low:
            min_low = candle.low
            min_low_at = max(candle.start_time, entry_time)
        elapsed = candle.start_time - entry_time
        for n in MILESTONES:
            if crossed[n] is None and candle.high >= entry_price * n:
                crossed[n] = elapsed

    if ath_price < entry_price:
        ath_price, ath_at = entry_price, entry_time
    ath_at = max(ath_at, entry_time)

    supply = entry.resolved_supply()
    last = valid[-1]
    current_price = last.close
    max_drawdown = (
        (min_low - entry_price) / entry_price * 100 if min_low < entry_price else 0.0
    )
    return ExtremumRecord(
        entry_id=entry.id,
        current_price=current_price,
        current_multiple=current_price / entry_price,
        current_market_cap=current_price * supply if supply else None,
        ath_price=ath_price,
        ath_multiple=ath_price / entry_price,
        ath_market_cap=ath_price * supply if supply else None,
        ath_at=ath_at,
        time_to_ath=max(0, ath_at - entry_time),
        max_drawdown=max_drawdown,
        min_low_price=min_low,
        min_low_at=min_low_at,
        time_to_2x=crossed[2],
        time_to_3x=crossed[3],
        time_to_5x=crossed[5],
        time_to_10x=crossed[10],
        last_observed_at=last.start_time,
    )
