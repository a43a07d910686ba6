"""Core value types shared across the engine."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Mapping

DEFAULT_QUOTE = "USDT"

Grid = Dict[str, Dict[str, float]]
PriceTable = Dict[str, float]


class MatrixType(str, Enum):
    BENCHMARK = "benchmark"
    PCT_REF = "pct_ref"
    ID_PCT = "id_pct"
    PCT_DRV = "pct_drv"
    REF = "ref"
    PCT24H = "pct24h"

    @property
    def sentinel(self) -> float:
        """Value used for cells that could not be computed."""
        return math.nan if self is MatrixType.BENCHMARK else 0.0

    @property
    def is_ratio(self) -> bool:
        return self is MatrixType.BENCHMARK

    @classmethod
    def parse(cls, value: "str | MatrixType") -> "MatrixType":
        if isinstance(value, MatrixType):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"unknown matrix type {value!r}") from None


STORED_TYPES: tuple[MatrixType, ...] = tuple(MatrixType)


class FrozenStage(str, Enum):
    NONE = "none"
    RECENT = "recent"
    MID = "mid"
    LONG = "long"


class Flip(str, Enum):
    NONE = "none"
    PLUS_TO_MINUS = "plus_to_minus"
    MINUS_TO_PLUS = "minus_to_plus"


def normalize_symbol(value: object) -> str:
    return str(value or "").strip().upper()


@dataclass(frozen=True)
class CoinUniverse:
    """Ordered asset set with the quote anchor first."""

    coins: tuple[str, ...]
    quote: str = DEFAULT_QUOTE

    @classmethod
    def of(cls, coins: Iterable[str], quote: str = DEFAULT_QUOTE) -> "CoinUniverse":
        anchor = normalize_symbol(quote) or DEFAULT_QUOTE
        seen: dict[str, None] = {anchor: None}
        for coin in coins:
            sym = normalize_symbol(coin)
            if sym and sym not in seen:
                seen[sym] = None
        return cls(coins=tuple(seen), quote=anchor)

    @property
    def bases(self) -> tuple[str, ...]:
        return tuple(c for c in self.coins if c != self.quote)

    def __iter__(self):
        return iter(self.coins)

    def __len__(self) -> int:
        return len(self.coins)

    def __contains__(self, item: object) -> bool:
        return normalize_symbol(item) in self.coins


@dataclass(frozen=True, slots=True)
class MatrixSnapshot:
    matrix_type: MatrixType
    base: str
    quote: str
    ts_ms: int
    value: float

    def __post_init__(self) -> None:
        if self.base == self.quote:
            raise ValueError(f"diagonal cell {self.base}/{self.quote} is not stored")


@dataclass(frozen=True, slots=True)
class Frame:
    """A grid together with the tick timestamp it belongs to."""

    ts_ms: int
    grid: Grid = field(default_factory=dict)

    def value(self, base: str, quote: str) -> float | None:
        return self.grid.get(base, {}).get(quote)


@dataclass(frozen=True, slots=True)
class Annotation:
    frozen_stage: FrozenStage = FrozenStage.NONE
    flip: Flip = Flip.NONE

    def as_dict(self) -> dict[str, str]:
        return {"frozen_stage": self.frozen_stage.value, "flip": self.flip.value}


def is_resolved(value: float | None) -> bool:
    return value is not None and math.isfinite(value)


def empty_grid(coins: Iterable[str], fill: float) -> Grid:
    universe = list(coins)
    return {b: {q: fill for q in universe if q != b} for b in universe}


def iter_cells(grid: Mapping[str, Mapping[str, float]]):
    for base, row in grid.items():
        for quote, value in row.items():
            if base != quote:
                yield base, quote, value


def grid_to_snapshots(matrix_type: MatrixType, ts_ms: int, grid: Grid) -> list[MatrixSnapshot]:
    out: list[MatrixSnapshot] = []
    for base, quote, value in iter_cells(grid):
        b, q = normalize_symbol(base), normalize_symbol(quote)
        if b != q:
            out.append(MatrixSnapshot(matrix_type, b, q, int(ts_ms), float(value)))
    return out
