"""Cross-rate matrix construction.

All matrices are computed from one price table by :class:`MatrixBuilder`.
The per-cell formulas are plain functions so that the periodic job and the
on-demand read path share a single definition of every metric.

Sentinels: ``benchmark`` uses ``NaN`` for unknown ratios; every decimal
matrix falls back to ``0.0`` ("no observed change yet") and never carries
``NaN``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Mapping

from .models import CoinUniverse, Frame, Grid, MatrixType, PriceTable, is_resolved

logger = logging.getLogger(__name__)

NAN = math.nan
BOOTSTRAP = 0.0

AnchorGrid = Mapping[str, Mapping[str, float]]


# ---------------------------------------------------------------------------
# Cell formulas
# ---------------------------------------------------------------------------


def benchmark_value(price_base: float | None, price_quote: float | None) -> float:
    if not is_resolved(price_base) or not is_resolved(price_quote) or price_quote == 0:
        return NAN
    return price_base / price_quote


def pct_ref_value(benchmark: float | None, opening: float | None) -> float | None:
    """Change against the day's opening anchor; ``None`` when not computable."""
    if not is_resolved(benchmark) or not is_resolved(opening) or opening == 0:
        return None
    return (benchmark - opening) / opening


def id_pct_value(benchmark: float | None, benchmark_prev: float | None) -> float | None:
    """Frame-over-frame change of ``benchmark``; ``None`` when not computable."""
    if not is_resolved(benchmark) or not is_resolved(benchmark_prev) or benchmark_prev == 0:
        return None
    return benchmark / benchmark_prev - 1.0


def pct_drv_value(id_pct: float | None, id_pct_prev: float | None) -> float | None:
    if not is_resolved(id_pct) or not is_resolved(id_pct_prev):
        return None
    return id_pct - id_pct_prev


def ref_value(id_pct: float | None, pct_ref: float | None) -> float | None:
    if not is_resolved(id_pct) or not is_resolved(pct_ref):
        return None
    return (1.0 + id_pct) * pct_ref


def pct24h_value(benchmark: float | None, benchmark_open: float | None) -> float | None:
    return pct_ref_value(benchmark, benchmark_open)


def or_bootstrap(value: float | None) -> float:
    return value if is_resolved(value) else BOOTSTRAP


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PreviousFrame:
    """The last committed ``benchmark`` and ``id_pct`` frames, if any."""

    benchmark: Frame | None = None
    id_pct: Frame | None = None

    def benchmark_at(self, base: str, quote: str) -> float | None:
        return self.benchmark.value(base, quote) if self.benchmark else None

    def id_pct_at(self, base: str, quote: str) -> float | None:
        return self.id_pct.value(base, quote) if self.id_pct else None


@dataclass
class MatrixSet:
    ts_ms: int
    coins: CoinUniverse
    grids: dict[MatrixType, Grid] = field(default_factory=dict)

    def __getitem__(self, matrix_type: MatrixType | str) -> Grid:
        return self.grids[MatrixType.parse(matrix_type)]

    def resolved_cells(self) -> int:
        grid = self.grids.get(MatrixType.BENCHMARK, {})
        return sum(1 for row in grid.values() for v in row.values() if is_resolved(v))


class MatrixBuilder:
    """Pure, synchronous computation of every stored matrix type for one tick."""

    def build(
        self,
        price_table: PriceTable,
        prev_frame: PreviousFrame | None,
        opening_anchors: AnchorGrid | None,
        *,
        coins: CoinUniverse,
        ts_ms: int = 0,
        open_prices: PriceTable | None = None,
    ) -> MatrixSet:
        prev = prev_frame or PreviousFrame()
        anchors = opening_anchors or {}
        opens = open_prices or {}

        benchmark: Grid = {}
        pct_ref: Grid = {}
        id_pct: Grid = {}
        pct_drv: Grid = {}
        ref: Grid = {}
        pct24h: Grid = {}

        for base in coins:
            bm_row = benchmark.setdefault(base, {})
            pr_row = pct_ref.setdefault(base, {})
            id_row = id_pct.setdefault(base, {})
            drv_row = pct_drv.setdefault(base, {})
            ref_row = ref.setdefault(base, {})
            d24_row = pct24h.setdefault(base, {})
            for quote in coins:
                if base == quote:
                    continue
                bm = benchmark_value(price_table.get(base), price_table.get(quote))
                ref_pct = pct_ref_value(bm, anchors.get(base, {}).get(quote))
                change = id_pct_value(bm, prev.benchmark_at(base, quote))
                drv = pct_drv_value(change, prev.id_pct_at(base, quote))
                composite = ref_value(change, ref_pct)
                day = pct24h_value(bm, benchmark_value(opens.get(base), opens.get(quote)))

                bm_row[quote] = bm
                pr_row[quote] = or_bootstrap(ref_pct)
                id_row[quote] = or_bootstrap(change)
                drv_row[quote] = or_bootstrap(drv)
                ref_row[quote] = or_bootstrap(composite)
                d24_row[quote] = or_bootstrap(day)

        result = MatrixSet(
            ts_ms=int(ts_ms),
            coins=coins,
            grids={
                MatrixType.BENCHMARK: benchmark,
                MatrixType.PCT_REF: pct_ref,
                MatrixType.ID_PCT: id_pct,
                MatrixType.PCT_DRV: pct_drv,
                MatrixType.REF: ref,
                MatrixType.PCT24H: pct24h,
            },
        )
        logger.debug(
            "built %d matrices over %d coins (%d resolved benchmark cells)",
            len(result.grids),
            len(coins),
            result.resolved_cells(),
        )
        return result


def delta_overlay(current: Grid, reference: AnchorGrid) -> dict[str, dict[str, float | None]]:
    """Read-time ``delta``: current benchmark minus a caller-supplied reference."""
    out: dict[str, dict[str, float | None]] = {}
    for base, row in current.items():
        dst = out.setdefault(base, {})
        ref_row = reference.get(base, {})
        for quote, value in row.items():
            if base == quote:
                continue
            other = ref_row.get(quote)
            dst[quote] = value - other if is_resolved(value) and is_resolved(other) else None
    return out
