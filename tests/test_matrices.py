import math

import pytest

from crossmatrix.matrices import (
    MatrixBuilder,
    PreviousFrame,
    benchmark_value,
    delta_overlay,
    id_pct_value,
    pct_drv_value,
    pct_ref_value,
    ref_value,
)
from crossmatrix.models import CoinUniverse, Frame, MatrixType

COINS = CoinUniverse.of(["BTC", "ETH"])


def _build(prices, prev=None, anchors=None, opens=None, coins=COINS):
    return MatrixBuilder().build(prices, prev, anchors, coins=coins, ts_ms=1000, open_prices=opens)


def test_benchmark_is_reciprocal():
    result = _build({"USDT": 1.0, "BTC": 65000.0, "ETH": 3200.0})
    bm = result[MatrixType.BENCHMARK]
    assert bm["BTC"]["ETH"] == pytest.approx(20.3125)
    assert bm["ETH"]["BTC"] == pytest.approx(3200.0 / 65000.0)
    for base in COINS:
        for quote in COINS:
            if base != quote:
                assert bm[base][quote] * bm[quote][base] == pytest.approx(1.0)
    assert "BTC" not in bm["BTC"]


def test_unresolved_coin_uses_sentinels():
    result = _build({"USDT": 1.0, "BTC": 65000.0})
    assert math.isnan(result[MatrixType.BENCHMARK]["ETH"]["BTC"])
    assert math.isnan(result[MatrixType.BENCHMARK]["USDT"]["ETH"])
    for mt in (MatrixType.PCT_REF, MatrixType.ID_PCT, MatrixType.PCT_DRV, MatrixType.REF, MatrixType.PCT24H):
        assert result[mt]["ETH"]["BTC"] == 0.0
        assert not any(math.isnan(v) for row in result[mt].values() for v in row.values())


def test_first_tick_bootstraps_decimal_matrices():
    result = _build({"USDT": 1.0, "BTC": 65000.0, "ETH": 3200.0})
    for mt in (MatrixType.PCT_REF, MatrixType.ID_PCT, MatrixType.PCT_DRV, MatrixType.REF):
        assert all(v == 0.0 for row in result[mt].values() for v in row.values())


def test_recurrence_against_previous_frame_and_anchor():
    prev = PreviousFrame(
        benchmark=Frame(0, {"BTC": {"ETH": 20.0}}),
        id_pct=Frame(0, {"BTC": {"ETH": 0.04}}),
    )
    anchors = {"BTC": {"ETH": 20.0}}
    result = _build({"USDT": 1.0, "BTC": 22.0, "ETH": 1.0}, prev=prev, anchors=anchors)
    assert result[MatrixType.BENCHMARK]["BTC"]["ETH"] == pytest.approx(22.0)
    assert result[MatrixType.ID_PCT]["BTC"]["ETH"] == pytest.approx(0.1)
    assert result[MatrixType.PCT_DRV]["BTC"]["ETH"] == pytest.approx(0.06)
    assert result[MatrixType.PCT_REF]["BTC"]["ETH"] == pytest.approx(0.1)
    assert result[MatrixType.REF]["BTC"]["ETH"] == pytest.approx(1.1 * 0.1)
    # no anchor for the reverse direction
    assert result[MatrixType.PCT_REF]["ETH"]["BTC"] == 0.0


def test_pct_ref_without_anchor_is_zero():
    result = _build({"USDT": 1.0, "BTC": 65000.0, "ETH": 3200.0}, anchors={})
    assert result[MatrixType.PCT_REF]["BTC"]["USDT"] == 0.0


def test_pct24h_from_open_prices():
    result = _build(
        {"USDT": 1.0, "BTC": 66000.0, "ETH": 3000.0},
        opens={"USDT": 1.0, "BTC": 60000.0, "ETH": 3000.0},
    )
    assert result[MatrixType.PCT24H]["BTC"]["USDT"] == pytest.approx(0.1)
    assert result[MatrixType.PCT24H]["BTC"]["ETH"] == pytest.approx(0.1)
    assert result[MatrixType.PCT24H]["ETH"]["USDT"] == pytest.approx(0.0)


def test_cell_formulas_return_none_when_not_computable():
    assert math.isnan(benchmark_value(1.0, None))
    assert math.isnan(benchmark_value(1.0, 0.0))
    assert pct_ref_value(1.0, 0.0) is None
    assert id_pct_value(math.nan, 1.0) is None
    assert pct_drv_value(0.1, None) is None
    assert ref_value(None, 0.2) is None


def test_delta_overlay_subtracts_reference():
    current = {"BTC": {"ETH": 21.0, "USDT": math.nan}, "ETH": {"BTC": 0.05}}
    reference = {"BTC": {"ETH": 20.0, "USDT": 1.0}}
    out = delta_overlay(current, reference)
    assert out["BTC"]["ETH"] == pytest.approx(1.0)
    assert out["BTC"]["USDT"] is None
    assert out["ETH"]["BTC"] is None


def test_resolved_cells_counts_benchmark():
    result = _build({"USDT": 1.0, "BTC": 65000.0})
    # USDT<->BTC resolved in both directions
    assert result.resolved_cells() == 2
