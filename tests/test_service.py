import pytest

from crossmatrix.errors import UpstreamError
from crossmatrix.ingest import KlineRow
from crossmatrix.models import MatrixType
from crossmatrix.service import MatricesService, fetch_series, on_demand, series_metrics
from crossmatrix.store import SnapshotStore

DAY0_MS = 1_709_251_200_000
T1 = DAY0_MS + 40_000
T2 = DAY0_MS + 80_000
COINS = ["USDT", "BTC", "ETH"]


class FakeAvailability:
    def __init__(self, symbols):
        self.symbols = symbols
        self.calls = 0

    async def resolve(self, coins):
        self.calls += 1
        return self.symbols


def _rows(*closes, start=DAY0_MS):
    return [KlineRow(ts_ms=start + i * 3_600_000, close=c) for i, c in enumerate(closes)]


async def _seed(store):
    await store.commit(MatrixType.BENCHMARK, T1, {"BTC": {"ETH": 20.0, "USDT": 65000.0}, "ETH": {"BTC": 0.05}})
    await store.commit(MatrixType.BENCHMARK, T2, {"BTC": {"ETH": 20.0, "USDT": 66000.0}, "ETH": {"BTC": 0.05}})
    await store.commit(MatrixType.ID_PCT, T1, {"BTC": {"ETH": 0.02}})
    await store.commit(MatrixType.ID_PCT, T2, {"BTC": {"ETH": -0.03}})


@pytest.mark.asyncio
async def test_latest_masks_unavailable_pairs(db_url):
    async with SnapshotStore(db_url) as store:
        await _seed(store)
        service = MatricesService(store, availability=FakeAvailability(frozenset({"BTCUSDT", "ETHBTC"})))
        payload = await service.latest(["usdt", "BTC", "eth", "BTC"], types=["benchmark"])
        assert payload["coins"] == COINS
        bench = payload["matrices"]["benchmark"]
        assert bench["ts"] == T2
        assert bench["prev_ts"] == T1
        assert bench["values"]["BTC"]["ETH"] == 20.0
        assert bench["values"]["BTC"]["USDT"] == 66000.0
        assert bench["values"]["ETH"]["USDT"] is None
        assert bench["values"]["USDT"]["ETH"] is None
        assert bench["prev_values"]["BTC"]["USDT"] == 65000.0
        assert bench["annotations"]["ETH"]["USDT"] == {"frozen_stage": "none", "flip": "none"}


@pytest.mark.asyncio
async def test_latest_annotations_are_stable_across_reads(db_url):
    async with SnapshotStore(db_url) as store:
        await _seed(store)
        service = MatricesService(store)
        for _ in range(3):
            payload = await service.latest(COINS, types=[MatrixType.BENCHMARK, MatrixType.ID_PCT])
            bench = payload["matrices"]["benchmark"]["annotations"]
            assert bench["BTC"]["ETH"]["frozen_stage"] == "recent"
            assert bench["BTC"]["USDT"]["frozen_stage"] == "none"
            id_pct = payload["matrices"]["id_pct"]["annotations"]
            assert id_pct["BTC"]["ETH"] == {"frozen_stage": "none", "flip": "plus_to_minus"}


@pytest.mark.asyncio
async def test_run_length_rebuilt_from_history(db_url):
    async with SnapshotStore(db_url) as store:
        for i in range(5):
            await store.commit(MatrixType.BENCHMARK, DAY0_MS + i * 40_000, {"BTC": {"ETH": 20.0}})
        service = MatricesService(store, history_limit=8)
        payload = await service.latest(COINS, types=["benchmark"])
        # four repeats after the first observation
        assert payload["matrices"]["benchmark"]["annotations"]["BTC"]["ETH"]["frozen_stage"] == "mid"
        assert service.annotator.run_length("benchmark", "BTC", "ETH") == 4


@pytest.mark.asyncio
async def test_frozen_runs_count_snapshots_not_reads(db_url):
    async with SnapshotStore(db_url) as store:
        service = MatricesService(store)
        for i in range(2):
            await store.commit(MatrixType.BENCHMARK, DAY0_MS + i * 40_000, {"BTC": {"ETH": 20.0}})
        payload = await service.latest(COINS, types=["benchmark"])
        assert payload["matrices"]["benchmark"]["annotations"]["BTC"]["ETH"]["frozen_stage"] == "recent"
        # eight more identical ticks land while nobody reads
        for i in range(2, 10):
            await store.commit(MatrixType.BENCHMARK, DAY0_MS + i * 40_000, {"BTC": {"ETH": 20.0}})
        payload = await service.latest(COINS, types=["benchmark"])
        bench = payload["matrices"]["benchmark"]
        assert bench["annotations"]["BTC"]["ETH"]["frozen_stage"] == "long"
        assert bench["stages"]["long"] == 1
        # one more tick, read consecutively, keeps counting
        await store.commit(MatrixType.BENCHMARK, DAY0_MS + 10 * 40_000, {"BTC": {"ETH": 20.0}})
        await service.latest(COINS, types=["benchmark"])
        assert service.annotator.run_length("benchmark", "BTC", "ETH") == 9


@pytest.mark.asyncio
async def test_frozen_run_same_whether_polled_or_not(db_url):
    async with SnapshotStore(db_url) as store:
        polled = MatricesService(store)
        for i in range(6):
            await store.commit(MatrixType.BENCHMARK, DAY0_MS + i * 40_000, {"BTC": {"ETH": 20.0}})
            await polled.latest(COINS, types=["benchmark"])
        await store.commit(MatrixType.BENCHMARK, DAY0_MS + 6 * 40_000, {"BTC": {"ETH": 21.0}})
        await store.commit(MatrixType.BENCHMARK, DAY0_MS + 7 * 40_000, {"BTC": {"ETH": 21.0}})
        first = await polled.latest(COINS, types=["benchmark"])
        fresh = await MatricesService(store).latest(COINS, types=["benchmark"])
        assert first["matrices"]["benchmark"]["annotations"] == fresh["matrices"]["benchmark"]["annotations"]
        assert polled.annotator.run_length("benchmark", "BTC", "ETH") == 1


@pytest.mark.asyncio
async def test_latest_without_data(db_url):
    async with SnapshotStore(db_url) as store:
        payload = await MatricesService(store).latest(COINS, types=["ref"])
        assert payload["matrices"]["ref"] == {
            "ts": None,
            "prev_ts": None,
            "values": None,
            "prev_values": None,
            "annotations": {},
            "stages": {},
        }


@pytest.mark.asyncio
async def test_delta_is_computed_on_read(db_url):
    async with SnapshotStore(db_url) as store:
        await _seed(store)
        service = MatricesService(store, availability=FakeAvailability(frozenset({"ETHBTC"})))
        payload = await service.delta(COINS, {"BTC": {"ETH": 18.0, "USDT": 60000.0}})
        assert payload["ts"] == T2
        assert payload["values"]["BTC"]["ETH"] == pytest.approx(2.0)
        assert payload["values"]["BTC"]["USDT"] is None
        assert payload["values"]["ETH"]["BTC"] is None
        assert await store.latest(MatrixType.BENCHMARK) == T2


def test_series_metrics():
    metrics = series_metrics("btcusdt", _rows(100.0, 110.0, 121.0))
    assert metrics.symbol == "BTCUSDT"
    assert metrics.last == 121.0
    assert metrics.id_pct == pytest.approx(0.1)
    assert metrics.pct_drv == pytest.approx(0.0, abs=1e-12)
    assert metrics.pct_ref == pytest.approx(0.21)
    assert metrics.ref == pytest.approx(0.231)


def test_series_metrics_short_series_bootstraps():
    metrics = series_metrics("BTCUSDT", _rows(100.0))
    assert metrics.id_pct == 0.0
    assert metrics.pct_drv == 0.0
    assert metrics.pct_ref == 0.0
    assert metrics.as_dict()["last"] == 100.0


def test_on_demand_builds_all_matrices():
    matrices = on_demand(
        {"BTC": _rows(100.0, 110.0, 121.0), "ETH": _rows(10.0, 10.0, 10.0)},
        "USDT",
        ts_ms=T2,
    )
    assert matrices.ts_ms == T2
    assert matrices[MatrixType.BENCHMARK]["BTC"]["ETH"] == pytest.approx(12.1)
    assert matrices[MatrixType.ID_PCT]["BTC"]["ETH"] == pytest.approx(0.1)
    assert matrices[MatrixType.PCT_REF]["BTC"]["ETH"] == pytest.approx(0.21)
    assert matrices[MatrixType.PCT24H]["BTC"]["ETH"] == pytest.approx(0.21)
    assert matrices[MatrixType.PCT_DRV]["BTC"]["ETH"] == pytest.approx(0.0, abs=1e-12)
    assert matrices[MatrixType.REF]["BTC"]["ETH"] == pytest.approx(0.231)
    assert matrices[MatrixType.BENCHMARK]["USDT"]["BTC"] == pytest.approx(1 / 121.0)


@pytest.mark.asyncio
async def test_fetch_series_tolerates_failed_symbols():
    class Client:
        def __init__(self):
            self.symbols = []

        async def fetch_klines(self, symbol, interval="1h", limit=25):
            self.symbols.append(symbol)
            if symbol == "ETHUSDT":
                raise UpstreamError("Invalid symbol", status=400)
            return _rows(1.0, 2.0)

    client = Client()
    series = await fetch_series(client, ["usdt", "btc", "eth"], "USDT", limit=2)
    assert sorted(client.symbols) == ["BTCUSDT", "ETHUSDT"]
    assert len(series["BTC"]) == 2
    assert series["ETH"] == []
