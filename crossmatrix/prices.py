"""Anchor-denominated price resolution with bridge triangulation."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from .ingest import TickerSnapshot
from .models import CoinUniverse, PriceTable, normalize_symbol

logger = logging.getLogger(__name__)

DEFAULT_BRIDGES: tuple[str, ...] = ("USDT", "BTC", "ETH", "BNB", "FDUSD", "USDC")


def _usable(value: float | None) -> float | None:
    if value is None or not math.isfinite(value) or value <= 0:
        return None
    return value


def pair_price(snapshot: TickerSnapshot, base: str, quote: str) -> float | None:
    """Price of one ``base`` in units of ``quote``, inverting ``quote/base`` if needed."""
    direct = _usable(snapshot.price(base, quote))
    if direct is not None:
        return direct
    inverse = _usable(snapshot.price(quote, base))
    if inverse is not None:
        return 1.0 / inverse
    return None


def normalize_bridges(bridges: Iterable[str], anchor: str) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for item in bridges:
        sym = normalize_symbol(item)
        if sym and sym not in seen:
            seen[sym] = None
    if anchor not in seen:
        seen = {anchor: None, **seen}
    return tuple(seen)


def resolve_prices(
    snapshot: TickerSnapshot,
    coins: CoinUniverse,
    bridge_priority: Sequence[str] = DEFAULT_BRIDGES,
) -> PriceTable:
    """Return ``{asset: price}`` for every resolvable coin of ``coins``.

    The quote anchor is fixed at ``1.0``.  A coin is priced directly against
    the anchor when possible; otherwise the first bridge in
    ``bridge_priority`` that both quotes the coin and has a known anchor price
    wins.  Unresolvable coins are left out of the table.
    """

    anchor = coins.quote
    bridges = normalize_bridges(bridge_priority, anchor)
    known: dict[str, float] = {anchor: 1.0}

    # Bridges are only usable through their own direct anchor price.
    for bridge in bridges:
        if bridge in known:
            continue
        price = pair_price(snapshot, bridge, anchor)
        if price is not None:
            known[bridge] = price

    table: PriceTable = {anchor: 1.0}
    for coin in coins.bases:
        price = known.get(coin)
        if price is None:
            price = pair_price(snapshot, coin, anchor)
        if price is None:
            for bridge in bridges:
                if bridge == coin:
                    continue
                bridge_price = known.get(bridge)
                if bridge_price is None:
                    continue
                cross = pair_price(snapshot, coin, bridge)
                if cross is None:
                    continue
                price = cross * bridge_price
                logger.debug("priced %s via %s bridge", coin, bridge)
                break
        if price is not None and math.isfinite(price) and price > 0:
            table[coin] = price
    return table


def candidate_pairs(
    coins: CoinUniverse, bridge_priority: Sequence[str] = DEFAULT_BRIDGES
) -> list[tuple[str, str]]:
    """All ``(base, quote)`` pairs the resolver may consult for ``coins``."""
    anchor = coins.quote
    bridges = normalize_bridges(bridge_priority, anchor)
    seen: dict[tuple[str, str], None] = {}

    def add(base: str, quote: str) -> None:
        if base != quote:
            seen.setdefault((base, quote), None)

    for bridge in bridges:
        add(bridge, anchor)
        add(anchor, bridge)
    for coin in coins.bases:
        add(coin, anchor)
        add(anchor, coin)
        for bridge in bridges:
            add(coin, bridge)
            add(bridge, coin)
    return list(seen)


@dataclass
class PriceResolver:
    """Stateless resolver bound to a bridge priority list."""

    bridge_priority: Sequence[str] = field(default_factory=lambda: DEFAULT_BRIDGES)

    def resolve(
        self,
        snapshot: TickerSnapshot,
        coins: CoinUniverse,
        bridge_priority: Sequence[str] | None = None,
    ) -> PriceTable:
        bridges = bridge_priority if bridge_priority is not None else self.bridge_priority
        table = resolve_prices(snapshot, coins, bridges)
        missing = [c for c in coins.bases if c not in table]
        if missing:
            logger.info(
                "Prices: %d/%d coins unresolved this tick: %s",
                len(missing),
                len(coins.bases),
                ",".join(missing),
            )
        return table

    def resolve_open(self, snapshot: TickerSnapshot, coins: CoinUniverse) -> PriceTable:
        """Resolve the 24h-open price table through the same bridge policy."""
        return resolve_prices(snapshot.open_view(), coins, self.bridge_priority)

    def pairs(self, coins: CoinUniverse) -> list[tuple[str, str]]:
        return candidate_pairs(coins, self.bridge_priority)
