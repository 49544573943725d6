import asyncio

import pytest

import athbackfill.backfill as backfill
import athbackfill.config as config
import athbackfill.db as db
from athbackfill.models import (
    HOUR_MS,
    MINUTE_MS,
    CallEntry,
    Candle,
    Granularity,
    JobStatus,
)
from athbackfill.providers import ProviderChain

T0 = 1_700_000_000_000


@pytest.fixture(autouse=True)
def no_worker_delay(monkeypatch):
    monkeypatch.setattr(config, "WORKER_DELAY_MS", 0)


def call(id, mint, entry_time=T0, price=1.0, **kwargs):
    return CallEntry(id=id, mint=mint, entry_price=price, entry_time=entry_time, **kwargs)


class MemoryStore:
    def __init__(self, entries=(), fail_ids=(), load_error=None):
        self.entries = list(entries)
        self.fail_ids = set(fail_ids)
        self.load_error = load_error
        self.records = {}
        self.force_refresh = None

    async def load_call_entries(self, force_refresh=False):
        self.force_refresh = force_refresh
        if self.load_error:
            raise self.load_error
        return list(self.entries)

    async def upsert_metrics(self, record):
        if record.entry_id in self.fail_ids:
            raise RuntimeError("disk full")
        self.records[record.entry_id] = record


class FakeChain:
    name = "fake"

    def __init__(self, series=None, delay=0.0, error=None):
        self.series = series or {}
        self.delay = delay
        self.error = error
        self.requested = []

    async def fetch_candles(self, mint, granularity, since, until=None):
        self.requested.append((mint, granularity))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return list(self.series.get((mint, granularity), []))


def factory(chain):
    return lambda session, pool_cache: ProviderChain([chain])


def test_group_entries_by_mint():
    entries = [
        call(1, "A", T0 + HOUR_MS),
        call(2, "B"),
        call(3, "A", T0),
        call(4, "C", price=0.0),
    ]
    units = backfill.group_entries(entries)
    assert [u.mint for u in units] == ["A", "B"]
    assert [e.id for e in units[0].entries] == [1, 3]
    assert units[0].earliest_entry_time == T0


@pytest.mark.asyncio
async def test_process_mint_without_candles_stores_entry_values():
    store = MemoryStore()
    unit = backfill.group_entries([call(1, "A"), call(2, "A", T0 + MINUTE_MS)])[0]
    result = await backfill.process_mint(unit, [FakeChain()], store)
    assert (result.updated, result.errors) == (2, 0)
    assert store.records[1].ath_multiple == 1.0
    assert store.records[2].time_to_ath == 0


@pytest.mark.asyncio
async def test_process_mint_write_failure_is_counted():
    store = MemoryStore(fail_ids={2})
    unit = backfill.group_entries([call(1, "A"), call(2, "A"), call(3, "A")])[0]
    result = await backfill.process_mint(unit, [FakeChain()], store)
    assert (result.updated, result.errors) == (2, 1)
    assert sorted(store.records) == [1, 3]


@pytest.mark.asyncio
async def test_process_mint_fetches_once_for_shared_mint(monkeypatch):
    requested = []

    async def fake_assemble(chain, mint, entry_time, now=None):
        requested.append((mint, entry_time))
        return [Candle(T0 + HOUR_MS, 1, 4.0, 1, 2, 0, Granularity.HOUR, "t")]

    monkeypatch.setattr(backfill, "assemble_candles", fake_assemble)
    store = MemoryStore()
    unit = backfill.group_entries([call(1, "A", T0 + MINUTE_MS), call(2, "A", T0)])[0]
    await backfill.process_mint(unit, [FakeChain()], store)
    assert requested == [("A", T0)]
    assert store.records[1].ath_multiple == 4.0
    assert store.records[2].ath_multiple == 4.0


@pytest.mark.asyncio
async def test_job_runs_to_completion():
    entries = [call(i, f"M{i % 4}") for i in range(1, 11)]
    store = MemoryStore(entries)
    job = backfill.BackfillJob(store=store, chain_factory=factory(FakeChain()))
    progress = await job.start(concurrency=3, force_refresh=True)

    assert progress.status is JobStatus.COMPLETE
    assert progress.processed_mints == progress.total_mints == 4
    assert progress.processed_entries == progress.total_entries == 10
    assert progress.updated_count == 10
    assert progress.error_count == 0
    assert progress.current_mint is None
    assert progress.eta_millis == 0
    assert store.force_refresh is True
    assert len(store.records) == 10


@pytest.mark.asyncio
async def test_job_counts_invalid_entries_as_skipped():
    store = MemoryStore([call(1, "A"), call(2, "B", price=0.0)])
    job = backfill.BackfillJob(store=store, chain_factory=factory(FakeChain()))
    progress = await job.start(concurrency=1)
    assert progress.skipped_count == 1
    assert progress.total_entries == 1


@pytest.mark.asyncio
async def test_stop_is_cooperative():
    entries = [call(i, f"M{i}") for i in range(20)]
    store = MemoryStore(entries)
    chain = FakeChain(delay=0.02)
    job = backfill.BackfillJob(store=store, chain_factory=factory(chain))

    task = asyncio.create_task(job.start(concurrency=2))
    while job.get_progress().processed_mints < 2:
        await asyncio.sleep(0.005)
    job.stop()
    progress = await task

    assert progress.status is JobStatus.PAUSED
    assert 2 <= progress.processed_mints < progress.total_mints
    # in-flight mints finished and were fully written
    assert len(store.records) == progress.processed_entries
    assert job.get_progress().processed_mints == progress.processed_mints


@pytest.mark.asyncio
async def test_second_start_is_ignored_while_running():
    store = MemoryStore([call(i, f"M{i}") for i in range(5)])
    job = backfill.BackfillJob(store=store, chain_factory=factory(FakeChain(delay=0.01)))
    first = asyncio.create_task(job.start(concurrency=1))
    await asyncio.sleep(0)
    assert job.running
    ignored = await job.start(concurrency=1)
    assert ignored.status is JobStatus.RUNNING
    done = await first
    assert done.status is JobStatus.COMPLETE
    assert done.processed_mints == 5


@pytest.mark.asyncio
async def test_load_failure_sets_error_state():
    store = MemoryStore(load_error=RuntimeError("db unavailable"))
    job = backfill.BackfillJob(store=store, chain_factory=factory(FakeChain()))
    progress = await job.start()
    assert progress.status is JobStatus.ERROR
    assert progress.last_error == "db unavailable"
    assert progress.total_mints == 0


@pytest.mark.asyncio
async def test_unexpected_mint_failure_does_not_stop_the_job():
    store = MemoryStore([call(1, "A"), call(2, "A"), call(3, "B")])
    chain = FakeChain(error=RuntimeError("boom"))
    job = backfill.BackfillJob(store=store, chain_factory=factory(chain))
    progress = await job.start(concurrency=2)
    assert progress.status is JobStatus.COMPLETE
    assert progress.processed_mints == 2
    assert progress.error_count == 3
    assert progress.updated_count == 0
    assert progress.last_error == "boom"


def test_progress_snapshot_is_immutable():
    job = backfill.BackfillJob(store=MemoryStore())
    snapshot = job.get_progress()
    assert snapshot.status is JobStatus.IDLE
    with pytest.raises(AttributeError):
        snapshot.processed_mints = 3
    job.stop()
    assert job.get_progress().status is JobStatus.IDLE


def test_format_progress(monkeypatch):
    monkeypatch.setattr(backfill.api, "status_counts", lambda: {200: 4, 429: 1})
    job = backfill.BackfillJob(store=MemoryStore())
    state = job.state
    state.status = JobStatus.RUNNING
    state.total_mints = 10
    state.processed_mints = 4
    state.total_entries = 12
    state.processed_entries = 5
    state.updated_count = 5
    state.eta_millis = 5 * 60000
    state.avg_millis_per_mint = 250
    state.current_mint = "MintAddressXYZ"
    text = backfill.format_progress(job.get_progress())
    assert "running 40.0% (4/10 mints)" in text
    assert "ETA: 5m" in text
    assert "Current: MintAddr" in text
    assert "200×4 429×1" in text


@pytest.mark.asyncio
async def test_end_to_end_with_sqlite(tmp_path):
    config.DB_FILE = str(tmp_path / "calls.db")
    await db.init_db()
    now = backfill.time.time() * 1000
    t0 = int(now - 3 * HOUR_MS) // HOUR_MS * HOUR_MS + 10 * MINUTE_MS
    first = await db.add_call("X", 1.0, t0)
    second = await db.add_call("X", 2.0, t0 + 20 * MINUTE_MS)
    await db.add_call("Y", 1.0, t0)

    next_hour = t0 + 50 * MINUTE_MS
    series = {
        ("X", Granularity.MINUTE): [
            Candle(t0 + MINUTE_MS, 1, 2.5, 0.9, 2.0, 0, Granularity.MINUTE, "t"),
            Candle(t0 + 30 * MINUTE_MS, 2, 6.0, 1.8, 5.0, 0, Granularity.MINUTE, "t"),
        ],
        ("X", Granularity.HOUR): [
            Candle(next_hour, 5, 5.5, 3.0, 4.0, 0, Granularity.HOUR, "t"),
        ],
    }
    job = backfill.BackfillJob(chain_factory=factory(FakeChain(series)))
    progress = await job.start(concurrency=2, force_refresh=False)

    assert progress.status is JobStatus.COMPLETE
    assert progress.updated_count == 3
    stored = await db.get_metrics(first)
    assert stored["ath_multiple"] == 6.0
    assert stored["time_to_2x"] == MINUTE_MS
    later = await db.get_metrics(second)
    assert later["ath_multiple"] == 3.0
    assert later["time_to_2x"] == 10 * MINUTE_MS

    rerun = await job.start(concurrency=2, force_refresh=False)
    assert rerun.total_entries == 1
    assert (await db.get_metrics(first)) == stored
