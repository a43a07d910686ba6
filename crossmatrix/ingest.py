"""Typed ingestion of upstream market-data payloads.

Every JSON document coming from the exchange is validated here exactly once.
Downstream modules only ever see :class:`TickerSnapshot`, :class:`SymbolInfo`
and :class:`KlineRow`.  Entries that fail validation are skipped and logged;
they never abort a tick.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .logging_utils import warn_once_per
from .models import normalize_symbol

logger = logging.getLogger(__name__)

_WARN_MINUTES = 5.0


def _positive_or_none(value: float | None) -> float | None:
    if value is None:
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


class TickerEntry(BaseModel):
    """One element of the 24h ticker response."""

    model_config = ConfigDict(extra="ignore")

    symbol: str
    lastPrice: float | None = None
    bidPrice: float | None = None
    askPrice: float | None = None
    openPrice: float | None = None

    @field_validator("symbol")
    @classmethod
    def _symbol(cls, value: str) -> str:
        sym = normalize_symbol(value)
        if not sym:
            raise ValueError("empty symbol")
        return sym

    @field_validator("lastPrice", "bidPrice", "askPrice", "openPrice")
    @classmethod
    def _price(cls, value: float | None) -> float | None:
        return _positive_or_none(value)


class SymbolEntry(BaseModel):
    """One element of ``exchangeInfo.symbols``."""

    model_config = ConfigDict(extra="ignore")

    symbol: str
    status: str
    baseAsset: str
    quoteAsset: str
    isSpotTradingAllowed: bool = True

    @field_validator("symbol", "status", "baseAsset", "quoteAsset")
    @classmethod
    def _upper(cls, value: str) -> str:
        sym = normalize_symbol(value)
        if not sym:
            raise ValueError("empty field")
        return sym


@dataclass(frozen=True, slots=True)
class SymbolInfo:
    symbol: str
    base: str
    quote: str
    status: str
    spot: bool = True

    @property
    def tradable(self) -> bool:
        return self.status == "TRADING" and self.spot


@dataclass(frozen=True, slots=True)
class PairQuote:
    base: str
    quote: str
    last: float | None = None
    bid: float | None = None
    ask: float | None = None
    open: float | None = None

    @property
    def price(self) -> float | None:
        """Last trade price, else the bid/ask mid, else whichever side exists."""
        if self.last is not None:
            return self.last
        if self.bid is not None and self.ask is not None:
            return (self.bid + self.ask) / 2.0
        return self.bid if self.bid is not None else self.ask


@dataclass(frozen=True)
class TickerSnapshot:
    """Validated view of one round of ticker fetches."""

    quotes: Mapping[tuple[str, str], PairQuote] = field(default_factory=dict)
    ts_ms: int = 0

    def price(self, base: str, quote: str) -> float | None:
        entry = self.quotes.get((base, quote))
        return entry.price if entry is not None else None

    def open_price(self, base: str, quote: str) -> float | None:
        entry = self.quotes.get((base, quote))
        return entry.open if entry is not None else None

    def open_view(self) -> "TickerSnapshot":
        """Snapshot whose prices are the 24h open prices."""
        quotes = {
            key: PairQuote(q.base, q.quote, last=q.open)
            for key, q in self.quotes.items()
            if q.open is not None
        }
        return TickerSnapshot(quotes=quotes, ts_ms=self.ts_ms)

    def __len__(self) -> int:
        return len(self.quotes)

    @classmethod
    def from_prices(
        cls,
        prices: Mapping[str, float],
        *,
        opens: Mapping[str, float] | None = None,
        ts_ms: int = 0,
    ) -> "TickerSnapshot":
        """Build a snapshot from ``{"BASE/QUOTE": price}`` mappings."""
        quotes: dict[tuple[str, str], PairQuote] = {}
        keys = set(prices) | set(opens or {})
        for key in keys:
            base, _, quote = key.partition("/")
            base, quote = normalize_symbol(base), normalize_symbol(quote)
            if not base or not quote:
                raise ValueError(f"pair key must look like BASE/QUOTE, got {key!r}")
            quotes[(base, quote)] = PairQuote(
                base,
                quote,
                last=_positive_or_none(prices.get(key)),
                open=_positive_or_none((opens or {}).get(key)),
            )
        return cls(quotes=quotes, ts_ms=ts_ms)


@dataclass(frozen=True, slots=True)
class KlineRow:
    ts_ms: int
    close: float


def _as_list(payload: Any, what: str) -> list[Any]:
    if isinstance(payload, list):
        return payload
    warn_once_per(
        _WARN_MINUTES,
        f"ingest-shape:{what}",
        "Ingest: expected a JSON array for %s, got %s",
        what,
        type(payload).__name__,
        logger=logger,
    )
    return []


def parse_symbols(payload: Any) -> list[SymbolInfo]:
    """Validate an ``exchangeInfo`` document."""
    raw = payload.get("symbols") if isinstance(payload, Mapping) else None
    out: list[SymbolInfo] = []
    for item in _as_list(raw, "exchangeInfo.symbols"):
        try:
            entry = SymbolEntry.model_validate(item)
        except ValidationError as exc:
            warn_once_per(
                _WARN_MINUTES,
                f"ingest-symbol:{str(item)[:64]}",
                "Ingest: skipping malformed symbol entry: %s",
                exc.errors()[0].get("msg") if exc.errors() else exc,
                logger=logger,
            )
            continue
        out.append(
            SymbolInfo(
                symbol=entry.symbol,
                base=entry.baseAsset,
                quote=entry.quoteAsset,
                status=entry.status,
                spot=entry.isSpotTradingAllowed,
            )
        )
    return out


def parse_tickers(
    payload: Any,
    pairs: Mapping[str, tuple[str, str]],
    *,
    ts_ms: int = 0,
) -> TickerSnapshot:
    """Validate a 24h ticker response.

    ``pairs`` maps exchange symbols (``BTCUSDT``) to ``(base, quote)``.
    Entries for symbols that were not requested are ignored.
    """
    quotes: dict[tuple[str, str], PairQuote] = {}
    for item in _as_list(payload, "ticker"):
        try:
            entry = TickerEntry.model_validate(item)
        except ValidationError as exc:
            warn_once_per(
                _WARN_MINUTES,
                f"ingest-ticker:{str(item)[:64]}",
                "Ingest: skipping malformed ticker entry: %s",
                exc.errors()[0].get("msg") if exc.errors() else exc,
                logger=logger,
            )
            continue
        pair = pairs.get(entry.symbol)
        if pair is None:
            continue
        base, quote = pair
        quotes[pair] = PairQuote(
            base,
            quote,
            last=entry.lastPrice,
            bid=entry.bidPrice,
            ask=entry.askPrice,
            open=entry.openPrice,
        )
    return TickerSnapshot(quotes=quotes, ts_ms=ts_ms)


def merge_snapshots(parts: Iterable[TickerSnapshot], *, ts_ms: int = 0) -> TickerSnapshot:
    quotes: dict[tuple[str, str], PairQuote] = {}
    for part in parts:
        quotes.update(part.quotes)
    return TickerSnapshot(quotes=quotes, ts_ms=ts_ms)


def parse_klines(payload: Any) -> list[KlineRow]:
    """Validate a klines response (arrays of ``[openTime, o, h, l, close, ...]``)."""
    rows: list[KlineRow] = []
    for item in _as_list(payload, "klines"):
        if not isinstance(item, Sequence) or isinstance(item, (str, bytes)) or len(item) < 5:
            continue
        try:
            ts = int(item[0])
            close = float(item[4])
        except (TypeError, ValueError):
            continue
        if math.isfinite(close) and close > 0:
            rows.append(KlineRow(ts_ms=ts, close=close))
    rows.sort(key=lambda r: r.ts_ms)
    return rows
