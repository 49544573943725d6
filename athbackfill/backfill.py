"""ATH backfill job: work queue, worker pool and progress tracking.

Call entries are grouped by mint so each token's candle history is fetched
once, then a fixed number of workers drain the queue of mints. Progress is
kept on a :class:`JobState` owned by the :class:`BackfillJob` instance.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Protocol

import aiohttp

from . import api, config, db
from .candles import assemble_candles
from .metrics import compute_extremum
from .models import (
    CallEntry,
    ExtremumRecord,
    JobProgress,
    JobState,
    JobStatus,
    MintWorkUnit,
)
from .providers import PoolAddressCache, ProviderChain, build_chain

PROGRESS_LOG_EVERY = 50
SLOW_MINT_MS = 2000


class MetricsStore(Protocol):
    async def load_call_entries(self, force_refresh: bool = False) -> List[CallEntry]:
        ...

    async def upsert_metrics(self, record: ExtremumRecord) -> None:
        ...


ChainFactory = Callable[[aiohttp.ClientSession, PoolAddressCache], ProviderChain]


@dataclass
class MintResult:
    updated: int = 0
    errors: int = 0


def group_entries(entries: Iterable[CallEntry]) -> List[MintWorkUnit]:
    """Group entries by mint, keeping first-seen order.

    Entries without a positive entry price are dropped.
    """
    units: Dict[str, MintWorkUnit] = {}
    for entry in entries:
        if not entry.entry_price or entry.entry_price <= 0:
            continue
        unit = units.get(entry.mint)
        if unit is None:
            unit = units[entry.mint] = MintWorkUnit(mint=entry.mint)
        unit.add(entry)
    return list(units.values())


async def process_mint(unit: MintWorkUnit, chain, store) -> MintResult:
    """Fetch one candle series for ``unit`` and store every entry's metrics.

    Entries without post-entry candles get the degenerate 1x record and
    still count as updated. A failed write counts as an error and does not
    stop the remaining entries.
    """
    result = MintResult()
    candles = await assemble_candles(chain, unit.mint, unit.earliest_entry_time)
    if not candles:
        config.logger.debug("%s: no candles, storing entry values", unit.mint[:8])
    records = [compute_extremum(entry, candles) for entry in unit.entries]
    for record in records:
        result.updated += 1
        try:
            await store.upsert_metrics(record)
        except Exception as exc:
            result.updated -= 1
            result.errors += 1
            config.logger.warning(
                "failed to store metrics for call %s (%s): %s",
                record.entry_id,
                unit.mint[:8],
                exc,
            )
    return result


def format_progress(progress: JobProgress) -> str:
    """Return a short human readable summary of ``progress``."""
    lines = [
        f"Backfill: {progress.status.value} {progress.percent:.1f}% "
        f"({progress.processed_mints}/{progress.total_mints} mints)",
        f"Entries: {progress.processed_entries}/{progress.total_entries} | "
        f"updated {progress.updated_count} | errors {progress.error_count} | "
        f"skipped {progress.skipped_count}",
    ]
    if progress.eta_millis is not None and progress.status is JobStatus.RUNNING:
        eta_min = max(1, round(progress.eta_millis / 60000))
        lines.append(
            f"ETA: {config.format_interval(eta_min * 60)} | "
            f"avg {progress.avg_millis_per_mint:.0f}ms/mint"
        )
    if progress.current_mint:
        lines.append(f"Current: {progress.current_mint[:8]}")
    if progress.last_error:
        lines.append(f"Last error: {progress.last_error}")
    counts = api.status_counts()
    if counts:
        parts = " ".join(f"{code}×{n}" for code, n in sorted(counts.items()))
        lines.append(f"API: {parts}")
    return "\n".join(lines)


class BackfillJob:
    """Start, stop and observe ATH backfill runs.

    Only one run per instance can be active at a time. ``store`` provides
    ``load_call_entries`` and ``upsert_metrics`` (the :mod:`athbackfill.db`
    module by default) and ``chain_factory`` builds the provider chain for
    each run's HTTP session.
    """

    def __init__(
        self,
        store: Optional[MetricsStore] = None,
        chain_factory: Optional[ChainFactory] = None,
    ) -> None:
        self.store = store if store is not None else db
        self.chain_factory = chain_factory or build_chain
        self.state = JobState()
        self._cancel = asyncio.Event()

    @property
    def running(self) -> bool:
        return self.state.status is JobStatus.RUNNING

    def get_progress(self) -> JobProgress:
        return self.state.snapshot()

    def stop(self) -> None:
        """Ask workers to stop after their current mint."""
        if not self.running:
            return
        config.logger.info("%s stop requested", config.JOB_NAME)
        self._cancel.set()

    async def start(
        self,
        concurrency: Optional[int] = None,
        force_refresh: Optional[bool] = None,
    ) -> JobProgress:
        """Run a backfill to completion or cancellation.

        Returns the final progress snapshot. Calling this while a run is in
        progress logs a warning and returns the current snapshot.
        """
        if self.running:
            config.logger.warning("%s already running", config.JOB_NAME)
            return self.get_progress()
        concurrency = max(1, concurrency or config.BACKFILL_CONCURRENCY)
        if force_refresh is None:
            force_refresh = config.BACKFILL_FORCE_REFRESH

        self._cancel = asyncio.Event()
        self.state.reset(time.time())
        config.logger.info(
            "%s starting concurrency=%s force_refresh=%s",
            config.JOB_NAME,
            concurrency,
            force_refresh,
        )
        try:
            entries = await self.store.load_call_entries(force_refresh)
        except Exception as exc:
            self.state.status = JobStatus.ERROR
            self.state.last_error = str(exc)
            self.state.updated_at = time.time()
            config.logger.exception("%s could not load call entries", config.JOB_NAME)
            return self.get_progress()

        units = group_entries(entries)
        queue: "asyncio.Queue[MintWorkUnit]" = asyncio.Queue()
        for unit in units:
            queue.put_nowait(unit)
        self.state.total_mints = len(units)
        self.state.total_entries = sum(len(u.entries) for u in units)
        self.state.skipped_count = len(entries) - self.state.total_entries
        config.logger.info(
            "%s processing %s entries across %s mints",
            config.JOB_NAME,
            self.state.total_entries,
            self.state.total_mints,
        )

        started = time.monotonic()
        pool_cache = PoolAddressCache()
        async with aiohttp.ClientSession() as session:
            chain = self.chain_factory(session, pool_cache)
            workers = [
                asyncio.create_task(self._worker(queue, chain, started))
                for _ in range(concurrency)
            ]
            await asyncio.gather(*workers)

        self.state.status = (
            JobStatus.PAUSED if self._cancel.is_set() else JobStatus.COMPLETE
        )
        self.state.current_mint = None
        self.state.updated_at = time.time()
        total_ms = (time.monotonic() - started) * 1000
        config.logger.info(
            "%s %s in %s: %s updated, %s errors, %s skipped, %s pools cached",
            config.JOB_NAME,
            self.state.status.value,
            config.format_interval(int(total_ms // 1000)),
            self.state.updated_count,
            self.state.error_count,
            self.state.skipped_count,
            len(pool_cache),
        )
        return self.get_progress()

    async def _worker(
        self, queue: "asyncio.Queue[MintWorkUnit]", chain, started: float
    ) -> None:
        while not self._cancel.is_set():
            try:
                unit = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self.state.current_mint = unit.mint
            mint_start = time.monotonic()
            try:
                result = await process_mint(unit, chain, self.store)
            except Exception as exc:
                result = MintResult(errors=len(unit.entries))
                self.state.last_error = str(exc) or type(exc).__name__
                config.logger.debug(
                    "error processing %s: %r", unit.mint[:8], exc, exc_info=True
                )
            self._record(unit, result, started, mint_start)
            queue.task_done()
            await asyncio.sleep(config.WORKER_DELAY_MS / 1000)

    def _record(
        self,
        unit: MintWorkUnit,
        result: MintResult,
        started: float,
        mint_start: float,
    ) -> None:
        state = self.state
        state.processed_mints += 1
        state.processed_entries += len(unit.entries)
        state.updated_count += result.updated
        state.error_count += result.errors
        now = time.monotonic()
        state.avg_millis_per_mint = (now - started) * 1000 / state.processed_mints
        state.eta_millis = int(
            state.avg_millis_per_mint * (state.total_mints - state.processed_mints)
        )
        state.updated_at = time.time()

        mint_ms = (now - mint_start) * 1000
        if state.processed_mints % PROGRESS_LOG_EVERY == 0 or mint_ms > SLOW_MINT_MS:
            snapshot = state.snapshot()
            config.logger.info(
                "%s progress %.1f%% (%s/%s) eta=%sm avg=%.0fms/mint",
                config.JOB_NAME,
                snapshot.percent,
                state.processed_mints,
                state.total_mints,
                round(state.eta_millis / 60000),
                state.avg_millis_per_mint,
            )
