import asyncio

import pytest

from crossmatrix.clock import ManualClock
from crossmatrix.errors import StoreError
from crossmatrix.ingest import TickerSnapshot
from crossmatrix.models import STORED_TYPES, MatrixType
from crossmatrix.scheduler import TickScheduler, align_ts
from crossmatrix.store import SnapshotStore
from crossmatrix.universe import StaticUniverseProvider

DAY0_MS = 1_709_251_200_000


class FakeClient:
    def __init__(self, prices, *, opens=None, delay=0.0, gate=None):
        self.prices = prices
        self.opens = opens
        self.delay = delay
        self.gate = gate
        self.calls = 0

    async def fetch_tickers(self, pairs, *, ts_ms=None):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        return TickerSnapshot.from_prices(self.prices, opens=self.opens, ts_ms=ts_ms or 0)


def _scheduler(store, client, coins=("BTC", "ETH"), **kwargs):
    kwargs.setdefault("clock", ManualClock(start_ms=DAY0_MS))
    return TickScheduler(
        universe=StaticUniverseProvider(coins),
        client=client,
        store=store,
        interval=kwargs.pop("interval", 60.0),
        **kwargs,
    )


def test_align_ts():
    assert align_ts(100_500, 1.0) == 100_000
    assert align_ts(DAY0_MS + 59_999, 60.0) == DAY0_MS


@pytest.mark.asyncio
async def test_run_once_commits_every_matrix_type(db_url, row_count):
    async with SnapshotStore(db_url) as store:
        client = FakeClient({"BTC/USDT": 65000.0, "ETH/USDT": 3200.0})
        sched = _scheduler(store, client)
        result = await sched.run_once(DAY0_MS + 1234)
        assert result.ts_ms == DAY0_MS
        assert result.resolved == 2
        assert result.rows == len(STORED_TYPES) * 6
        for mt in STORED_TYPES:
            assert await row_count(store, mt, DAY0_MS) == 6
        grid = await store.grid_at(MatrixType.BENCHMARK, DAY0_MS, ["BTC", "ETH"])
        assert grid["BTC"]["ETH"] == pytest.approx(20.3125)


@pytest.mark.asyncio
async def test_second_tick_uses_previous_frame_and_anchor(db_url):
    async with SnapshotStore(db_url) as store:
        client = FakeClient({"BTC/USDT": 20.0, "ETH/USDT": 1.0})
        sched = _scheduler(store, client)
        await sched.run_once(DAY0_MS)
        client.prices = {"BTC/USDT": 22.0, "ETH/USDT": 1.0}
        await sched.run_once(DAY0_MS + 60_000)
        ts = DAY0_MS + 60_000
        id_pct = await store.grid_at(MatrixType.ID_PCT, ts, ["BTC", "ETH"])
        pct_ref = await store.grid_at(MatrixType.PCT_REF, ts, ["BTC", "ETH"])
        ref = await store.grid_at(MatrixType.REF, ts, ["BTC", "ETH"])
        assert id_pct["BTC"]["ETH"] == pytest.approx(0.1)
        assert pct_ref["BTC"]["ETH"] == pytest.approx(0.1)
        assert ref["BTC"]["ETH"] == pytest.approx(0.11)


@pytest.mark.asyncio
async def test_retrying_a_slot_is_idempotent(db_url, row_count):
    async with SnapshotStore(db_url) as store:
        client = FakeClient({"BTC/USDT": 65000.0, "ETH/USDT": 3200.0})
        sched = _scheduler(store, client)
        await sched.run_once(DAY0_MS + 10)
        await sched.run_once(DAY0_MS + 20)
        assert await store.history(MatrixType.BENCHMARK) == [DAY0_MS]
        assert await row_count(store, MatrixType.BENCHMARK, DAY0_MS) == 6


@pytest.mark.asyncio
async def test_empty_universe_is_a_noop(db_url):
    async with SnapshotStore(db_url) as store:
        client = FakeClient({})
        sched = _scheduler(store, client, coins=())
        assert await sched.tick() is None
        assert client.calls == 0
        assert await store.latest(MatrixType.BENCHMARK) is None


@pytest.mark.asyncio
async def test_nothing_priced_commits_nothing(db_url):
    async with SnapshotStore(db_url) as store:
        sched = _scheduler(store, FakeClient({"XRP/EUR": 1.0}))
        assert await sched.run_once() is None
        assert await store.latest(MatrixType.BENCHMARK) is None


@pytest.mark.asyncio
async def test_tick_is_single_flight(db_url):
    async with SnapshotStore(db_url) as store:
        gate = asyncio.Event()
        client = FakeClient({"BTC/USDT": 65000.0}, gate=gate)
        sched = _scheduler(store, client, deadline=5.0)
        first = asyncio.create_task(sched.tick())
        while client.calls == 0:
            await asyncio.sleep(0.001)
        assert sched.busy
        assert await sched.tick() is None
        assert sched.stats.skipped == 1
        gate.set()
        result = await first
        assert result is not None
        assert sched.stats.completed == 1
        assert not sched.busy


@pytest.mark.asyncio
async def test_tick_deadline_commits_nothing(db_url):
    async with SnapshotStore(db_url) as store:
        client = FakeClient({"BTC/USDT": 65000.0}, delay=1.0)
        sched = _scheduler(store, client, deadline=0.05)
        assert await sched.tick() is None
        assert sched.stats.timed_out == 1
        assert await store.latest(MatrixType.BENCHMARK) is None
        assert not sched.busy


@pytest.mark.asyncio
async def test_store_failure_is_logged_and_survived(db_url, monkeypatch, caplog):
    async with SnapshotStore(db_url) as store:
        async def broken(*_a, **_k):
            raise StoreError("disk full")

        monkeypatch.setattr(store, "commit_frame", broken)
        sched = _scheduler(store, FakeClient({"BTC/USDT": 65000.0}))
        with caplog.at_level("ERROR", logger="crossmatrix.scheduler"):
            assert await sched.tick() is None
        assert sched.stats.failed == 1
        assert "disk full" in caplog.text


@pytest.mark.asyncio
async def test_start_and_stop(db_url):
    async with SnapshotStore(db_url) as store:
        client = FakeClient({"BTC/USDT": 65000.0})
        sched = TickScheduler(
            universe=StaticUniverseProvider(["BTC"]),
            client=client,
            store=store,
            interval=1.0,
            deadline=5.0,
        )
        sched.start()
        while sched.stats.completed == 0:
            await asyncio.sleep(0.01)
        await sched.stop()
        assert client.calls >= 1
        assert await store.latest(MatrixType.BENCHMARK) is not None
