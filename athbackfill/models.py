"""Data structures shared by the backfill pipeline.

All timestamps are epoch milliseconds and all durations are milliseconds.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import List, Optional

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


class Granularity(Enum):
    """Candle bucket sizes understood by every candle source."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"

    @property
    def millis(self) -> int:
        return {"minute": MINUTE_MS, "hour": HOUR_MS, "day": DAY_MS}[self.value]


@dataclass(frozen=True)
class Candle:
    """One OHLC sample produced by a candle source."""

    start_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    granularity: Granularity
    source: str
    synthetic: bool = False


@dataclass(frozen=True)
class CallEntry:
    """A recorded call: someone referenced ``mint`` at ``entry_price``."""

    id: int
    mint: str
    entry_price: float
    entry_time: int
    entry_supply: Optional[float] = None
    entry_market_cap: Optional[float] = None

    def resolved_supply(self) -> Optional[float]:
        """Return the token supply, derived from the market cap if needed."""
        if self.entry_supply:
            return self.entry_supply
        if self.entry_market_cap and self.entry_price > 0:
            return self.entry_market_cap / self.entry_price
        return None

    def resolved_market_cap(self) -> Optional[float]:
        if self.entry_market_cap:
            return self.entry_market_cap
        supply = self.resolved_supply()
        return self.entry_price * supply if supply else None


@dataclass(frozen=True)
class ExtremumRecord:
    """Computed performance metrics for one call entry."""

    entry_id: int
    current_price: float
    current_multiple: float
    current_market_cap: Optional[float]
    ath_price: float
    ath_multiple: float
    ath_market_cap: Optional[float]
    ath_at: int
    time_to_ath: int
    max_drawdown: float
    min_low_price: float
    min_low_at: int
    time_to_2x: Optional[int]
    time_to_3x: Optional[int]
    time_to_5x: Optional[int]
    time_to_10x: Optional[int]
    last_observed_at: int

    def as_row(self) -> dict:
        """Return the record as a plain mapping of column values."""
        return asdict(self)


@dataclass
class MintWorkUnit:
    """All call entries sharing one token, fetched with a single candle pass."""

    mint: str
    entries: List[CallEntry] = field(default_factory=list)
    earliest_entry_time: int = 0

    def add(self, entry: CallEntry) -> None:
        if not self.entries or entry.entry_time < self.earliest_entry_time:
            self.earliest_entry_time = entry.entry_time
        self.entries.append(entry)


class JobStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class JobProgress:
    """Immutable snapshot of :class:`JobState` handed to callers."""

    status: JobStatus
    total_mints: int
    processed_mints: int
    total_entries: int
    processed_entries: int
    updated_count: int
    error_count: int
    skipped_count: int
    current_mint: Optional[str]
    started_at: Optional[float]
    updated_at: Optional[float]
    eta_millis: Optional[int]
    avg_millis_per_mint: float
    last_error: Optional[str]

    @property
    def percent(self) -> float:
        if not self.total_mints:
            return 0.0
        return self.processed_mints / self.total_mints * 100


@dataclass
class JobState:
    """Mutable progress of one backfill run, owned by a single job."""

    status: JobStatus = JobStatus.IDLE
    total_mints: int = 0
    processed_mints: int = 0
    total_entries: int = 0
    processed_entries: int = 0
    updated_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    current_mint: Optional[str] = None
    started_at: Optional[float] = None
    updated_at: Optional[float] = None
    eta_millis: Optional[int] = None
    avg_millis_per_mint: float = 0.0
    last_error: Optional[str] = None

    def reset(self, now: float) -> None:
        fresh = JobState(status=JobStatus.RUNNING)
        for name, value in asdict(fresh).items():
            setattr(self, name, value)
        self.started_at = now
        self.updated_at = now

    def snapshot(self) -> JobProgress:
        return JobProgress(**asdict(self))
