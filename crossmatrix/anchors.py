"""UTC-day opening anchors for the ``pct_ref`` matrix."""

from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy.exc import SQLAlchemyError

from .clock import utc_day_window
from .errors import StoreError
from .models import Grid, normalize_symbol
from .store import SnapshotStore

logger = logging.getLogger(__name__)


class AnchorTracker:
    """Resolve the opening ``benchmark`` value of each pair for the current UTC day.

    The anchor is the value of the earliest stored benchmark snapshot inside
    ``[midnight, midnight + 24h)``.  Found anchors are cached per day and are
    never replaced; pairs without an anchor are looked up again on the next
    call.  A lookup failure is logged and yields no anchor, which makes the
    builder fall back to its bootstrap value.
    """

    def __init__(self, store: SnapshotStore, *, keep_days: int = 2) -> None:
        self.store = store
        self.keep_days = max(1, int(keep_days))
        self._days: dict[int, Grid] = {}

    def _day(self, day_start: int) -> Grid:
        cached = self._days.get(day_start)
        if cached is None:
            cached = self._days[day_start] = {}
            for old in sorted(self._days)[: -self.keep_days]:
                self._days.pop(old, None)
        return cached

    async def opening_grid(self, coins: Iterable[str], now_ts: int) -> Grid:
        universe = [normalize_symbol(c) for c in coins]
        start, end = utc_day_window(now_ts)
        cached = self._day(start)

        missing = [
            (b, q)
            for b in universe
            for q in universe
            if b != q and q not in cached.get(b, {})
        ]
        if missing:
            lookup = sorted({b for b, _ in missing} | {q for _, q in missing})
            try:
                found = await self.store.earliest_in_window(lookup, start, end)
            except (StoreError, SQLAlchemyError) as exc:
                logger.warning("opening anchor lookup failed for day %s: %s", start, exc)
                found = {}
            for base, row in found.items():
                dst = cached.setdefault(base, {})
                for quote, value in row.items():
                    dst.setdefault(quote, value)

        return {
            b: {q: cached[b][q] for q in universe if q != b and q in cached.get(b, {})}
            for b in universe
        }

    async def opening_for(self, base: str, quote: str, now_ts: int) -> float | None:
        b, q = normalize_symbol(base), normalize_symbol(quote)
        if b == q:
            return None
        grid = await self.opening_grid([b, q], now_ts)
        return grid.get(b, {}).get(q)

    def cached_days(self) -> list[int]:
        return sorted(self._days)
