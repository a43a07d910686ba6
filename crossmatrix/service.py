"""Read side: latest grids with annotations, delta overlays and on-demand metrics."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from .annotate import DiffAnnotator, annotations_as_dict, count_stages, is_available, mask_grid
from .clock import utc_day_window
from .errors import UpstreamError
from .ingest import KlineRow
from .market_data import AvailabilityResolver, BinanceClient
from .matrices import (
    AnchorGrid,
    MatrixBuilder,
    MatrixSet,
    PreviousFrame,
    delta_overlay,
    id_pct_value,
    or_bootstrap,
    pct_drv_value,
    pct_ref_value,
    ref_value,
)
from .models import (
    DEFAULT_QUOTE,
    STORED_TYPES,
    CoinUniverse,
    Frame,
    MatrixType,
    PriceTable,
    normalize_symbol,
)
from .store import SnapshotStore

logger = logging.getLogger(__name__)


def _ordered_coins(coins: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for coin in coins:
        sym = normalize_symbol(coin)
        if sym:
            seen.setdefault(sym, None)
    return list(seen)


class MatricesService:
    """Serve stored matrices for a caller-chosen coin ordering."""

    def __init__(
        self,
        store: SnapshotStore,
        *,
        annotator: DiffAnnotator | None = None,
        availability: AvailabilityResolver | None = None,
        history_limit: int = 8,
    ) -> None:
        self.store = store
        self.annotator = annotator or DiffAnnotator()
        self.availability = availability
        self.history_limit = max(2, int(history_limit))
        # last (ts, coin set) annotated per type
        self._seen: dict[MatrixType, tuple[int, frozenset[str]]] = {}

    async def _mask(self, coins: Sequence[str]) -> frozenset[str] | None:
        if self.availability is None:
            return None
        return await self.availability.resolve(coins)

    async def _sync_runs(
        self, matrix_type: MatrixType, ts: int, prev_ts: int | None, coins: Sequence[str]
    ) -> None:
        """Keep run lengths counting stored snapshots rather than reads.

        When the previous read was not ``prev_ts`` over the same coins (first
        read, skipped snapshots or a new coin set) the run table for
        ``matrix_type`` is rebuilt from the frames stored up to ``prev_ts``.
        """
        key = frozenset(coins)
        seen = self._seen.get(matrix_type)
        self._seen[matrix_type] = (ts, key)
        if seen is not None and seen[1] == key and seen[0] in (ts, prev_ts):
            return
        self.annotator.forget(matrix_type)
        if prev_ts is None:
            return
        limit = max(self.history_limit, self.annotator.thresholds.long)
        stamps = await self.store.history(matrix_type, limit, upto_ms=prev_ts)
        frames = [await self.store.frame_at(matrix_type, t, coins) for t in reversed(stamps)]
        self.annotator.warm([f for f in frames if f is not None], matrix_type=matrix_type)

    async def latest(
        self,
        coins: Iterable[str],
        types: Iterable[MatrixType | str] = STORED_TYPES,
    ) -> dict[str, Any]:
        """Latest and previous grid per type with annotations, masked for display.

        Unavailable pairs and missing values read back as ``None``.
        """
        universe = _ordered_coins(coins)
        mask = await self._mask(universe)
        out: dict[str, Any] = {}
        for item in types:
            mt = MatrixType.parse(item)
            ts = await self.store.latest(mt)
            if ts is None:
                out[mt.value] = {
                    "ts": None,
                    "prev_ts": None,
                    "values": None,
                    "prev_values": None,
                    "annotations": {},
                    "stages": {},
                }
                continue
            prev_ts = await self.store.before(mt, ts)
            cur = await self.store.frame_at(mt, ts, universe)
            prev = await self.store.frame_at(mt, prev_ts, universe)
            await self._sync_runs(mt, ts, prev_ts, universe)
            annotations = self.annotator.annotate(cur, prev, mask, matrix_type=mt)
            out[mt.value] = {
                "ts": ts,
                "prev_ts": prev_ts,
                "values": mask_grid(cur.grid, mask),
                "prev_values": mask_grid(prev.grid, mask) if prev is not None else None,
                "annotations": annotations_as_dict(annotations),
                "stages": count_stages(annotations),
            }
        return {"coins": universe, "matrices": out}

    async def delta(self, coins: Iterable[str], reference: AnchorGrid) -> dict[str, Any]:
        """Latest benchmark minus ``reference``; computed on read, never stored."""
        universe = _ordered_coins(coins)
        ts = await self.store.latest(MatrixType.BENCHMARK)
        if ts is None:
            return {"coins": universe, "ts": None, "values": None}
        grid = await self.store.grid_at(MatrixType.BENCHMARK, ts, universe)
        mask = await self._mask(universe)
        overlay = delta_overlay(grid, reference)
        values = {
            b: {q: (v if is_available(b, q, mask) else None) for q, v in row.items()}
            for b, row in overlay.items()
        }
        return {"coins": universe, "ts": ts, "values": values}


# ---------------------------------------------------------------------------
# On-demand path
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SymbolMetrics:
    """Single-symbol metrics computed from a short close-price series."""

    symbol: str
    last: float | None
    benchmark: float
    id_pct: float
    pct_drv: float
    pct_ref: float
    ref: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "last": self.last,
            "benchmark": self.benchmark,
            "id_pct": self.id_pct,
            "pct_drv": self.pct_drv,
            "pct_ref": self.pct_ref,
            "ref": self.ref,
        }


@dataclass
class SeriesPoints:
    last: float | None = None
    prev: float | None = None
    prevprev: float | None = None
    opening: float | None = None


def series_points(rows: Sequence[KlineRow]) -> SeriesPoints:
    """Pick last/prev/prevprev closes and the first close of the last row's UTC day."""
    ordered = sorted(rows, key=lambda r: r.ts_ms)
    if not ordered:
        return SeriesPoints()
    closes = [r.close for r in ordered]
    start, end = utc_day_window(ordered[-1].ts_ms)
    opening = next((r.close for r in ordered if start <= r.ts_ms < end), closes[0])
    return SeriesPoints(
        last=closes[-1],
        prev=closes[-2] if len(closes) > 1 else None,
        prevprev=closes[-3] if len(closes) > 2 else None,
        opening=opening,
    )


def series_metrics(symbol: str, rows: Sequence[KlineRow]) -> SymbolMetrics:
    points = series_points(rows)
    change = id_pct_value(points.last, points.prev)
    change_prev = id_pct_value(points.prev, points.prevprev)
    day = pct_ref_value(points.last, points.opening)
    return SymbolMetrics(
        symbol=normalize_symbol(symbol),
        last=points.last,
        benchmark=points.last if points.last is not None else float("nan"),
        id_pct=or_bootstrap(change),
        pct_drv=or_bootstrap(pct_drv_value(change, change_prev)),
        pct_ref=or_bootstrap(day),
        ref=or_bootstrap(ref_value(change, day)),
    )


@dataclass
class _Tables:
    last: PriceTable = field(default_factory=dict)
    prev: PriceTable = field(default_factory=dict)
    prevprev: PriceTable = field(default_factory=dict)
    opening: PriceTable = field(default_factory=dict)


def _price_tables(series_by_coin: Mapping[str, Sequence[KlineRow]], coins: CoinUniverse) -> _Tables:
    tables = _Tables()
    for table in (tables.last, tables.prev, tables.prevprev, tables.opening):
        table[coins.quote] = 1.0
    for coin, rows in series_by_coin.items():
        sym = normalize_symbol(coin)
        if sym == coins.quote:
            continue
        points = series_points(rows)
        for table, value in (
            (tables.last, points.last),
            (tables.prev, points.prev),
            (tables.prevprev, points.prevprev),
            (tables.opening, points.opening),
        ):
            if value is not None and value > 0:
                table[sym] = value
    return tables


def on_demand(
    series_by_coin: Mapping[str, Sequence[KlineRow]],
    quote: str = DEFAULT_QUOTE,
    *,
    ts_ms: int = 0,
    builder: MatrixBuilder | None = None,
) -> MatrixSet:
    """Build every matrix from raw quote-denominated series without the store.

    The last three closes stand in for the current and the two previous
    frames; the first close of the day is the opening anchor.
    """
    builder = builder or MatrixBuilder()
    coins = CoinUniverse.of(series_by_coin.keys(), quote)
    tables = _price_tables(series_by_coin, coins)

    older = builder.build(tables.prevprev, None, None, coins=coins)
    prev = builder.build(
        tables.prev,
        PreviousFrame(benchmark=Frame(0, older[MatrixType.BENCHMARK])),
        None,
        coins=coins,
    )
    opening = builder.build(tables.opening, None, None, coins=coins)[MatrixType.BENCHMARK]
    return builder.build(
        tables.last,
        PreviousFrame(
            benchmark=Frame(1, prev[MatrixType.BENCHMARK]),
            id_pct=Frame(1, prev[MatrixType.ID_PCT]),
        ),
        opening,
        coins=coins,
        ts_ms=ts_ms,
        open_prices=tables.opening,
    )


async def fetch_series(
    client: BinanceClient,
    coins: Iterable[str],
    quote: str = DEFAULT_QUOTE,
    *,
    interval: str = "1h",
    limit: int = 25,
) -> dict[str, list[KlineRow]]:
    """Close-price series for each coin against ``quote``; failed symbols come back empty."""
    anchor = normalize_symbol(quote) or DEFAULT_QUOTE
    bases = [c for c in _ordered_coins(coins) if c != anchor]

    async def one(coin: str) -> list[KlineRow]:
        try:
            return await client.fetch_klines(f"{coin}{anchor}", interval=interval, limit=limit)
        except UpstreamError as exc:
            logger.warning("OnDemand: no series for %s%s: %s", coin, anchor, exc)
            return []

    results = await asyncio.gather(*(one(c) for c in bases))
    return dict(zip(bases, results))
