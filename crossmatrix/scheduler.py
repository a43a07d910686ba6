"""Periodic driver: universe -> tickers -> prices -> matrices -> store."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

from .anchors import AnchorTracker
from .clock import Clock, system_clock
from .errors import StoreError, UpstreamError
from .ingest import TickerSnapshot
from .matrices import MatrixBuilder, PreviousFrame
from .models import CoinUniverse, MatrixType
from .prices import PriceResolver
from .store import SnapshotStore
from .universe import UniverseProvider

logger = logging.getLogger(__name__)


class TickerSource(Protocol):
    async def fetch_tickers(
        self, pairs: list[tuple[str, str]], *, ts_ms: int | None = None
    ) -> TickerSnapshot: ...


@dataclass(frozen=True)
class TickResult:
    ts_ms: int
    coins: CoinUniverse
    resolved: int
    rows: int
    elapsed: float


@dataclass
class TickStats:
    completed: int = 0
    skipped: int = 0
    timed_out: int = 0
    failed: int = 0
    last: TickResult | None = field(default=None)


def align_ts(now_ms: int, interval_s: float) -> int:
    """Floor ``now_ms`` to the start of its interval slot."""
    step = max(1, int(round(interval_s * 1000)))
    return (int(now_ms) // step) * step


class TickScheduler:
    """Single-flight periodic tick runner.

    A tick that is due while the previous one is still running is skipped.
    Each tick runs under ``deadline`` seconds; a tick that overruns is
    cancelled and its transaction rolled back.
    """

    def __init__(
        self,
        *,
        universe: UniverseProvider,
        client: TickerSource,
        store: SnapshotStore,
        resolver: PriceResolver | None = None,
        builder: MatrixBuilder | None = None,
        anchors: AnchorTracker | None = None,
        interval: float = 40.0,
        deadline: float | None = None,
        clock: Clock | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.universe = universe
        self.client = client
        self.store = store
        self.resolver = resolver or PriceResolver()
        self.builder = builder or MatrixBuilder()
        self.anchors = anchors or AnchorTracker(store)
        self.interval = float(interval)
        self.deadline = float(deadline) if deadline else self.interval * 0.9
        self.clock = clock or system_clock()
        self.stats = TickStats()
        self._busy = False
        self._stop: asyncio.Event | None = None
        self._task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()

    @property
    def busy(self) -> bool:
        return self._busy

    async def run_once(self, now_ms: int | None = None) -> TickResult | None:
        """Compute and commit one tick; ``None`` when there was nothing to do."""
        started = self.clock.monotonic()
        ts = align_ts(self.clock.time_ms() if now_ms is None else now_ms, self.interval)

        coins = await self.universe.load()
        if not coins.bases:
            logger.info("Tick @%s: empty universe, nothing to do", ts)
            return None

        snapshot = await self.client.fetch_tickers(self.resolver.pairs(coins), ts_ms=ts)
        prices = self.resolver.resolve(snapshot, coins)
        resolved = sum(1 for c in coins.bases if c in prices)
        if resolved == 0:
            logger.warning("Tick @%s: no coin could be priced, skipping commit", ts)
            return None
        opens = self.resolver.resolve_open(snapshot, coins)

        prev_ts = await self.store.before(MatrixType.BENCHMARK, ts)
        prev = PreviousFrame(
            benchmark=await self.store.frame_at(MatrixType.BENCHMARK, prev_ts, coins.coins),
            id_pct=await self.store.frame_at(MatrixType.ID_PCT, prev_ts, coins.coins),
        )
        anchors = await self.anchors.opening_grid(coins.coins, ts)

        matrices = self.builder.build(
            prices, prev, anchors, coins=coins, ts_ms=ts, open_prices=opens
        )
        rows = await self.store.commit_frame(ts, matrices.grids)
        result = TickResult(
            ts_ms=ts,
            coins=coins,
            resolved=resolved,
            rows=rows,
            elapsed=self.clock.monotonic() - started,
        )
        logger.info(
            "Tick @%s: %d/%d coins priced, %d rows committed in %.2fs",
            ts,
            resolved,
            len(coins.bases),
            rows,
            result.elapsed,
        )
        return result

    async def tick(self, now_ms: int | None = None) -> TickResult | None:
        if self._busy:
            self.stats.skipped += 1
            logger.info("Tick skipped: previous tick still running")
            return None
        self._busy = True
        try:
            result = await asyncio.wait_for(self.run_once(now_ms), timeout=self.deadline)
        except asyncio.TimeoutError:
            self.stats.timed_out += 1
            logger.warning("Tick exceeded %.1fs deadline; nothing committed", self.deadline)
            return None
        except (UpstreamError, StoreError) as exc:
            self.stats.failed += 1
            logger.error("Tick failed: %s", exc)
            return None
        except Exception:
            self.stats.failed += 1
            logger.exception("Tick failed unexpectedly")
            return None
        finally:
            self._busy = False
        self.stats.completed += 1
        self.stats.last = result
        return result

    def _delay_to_next_slot(self) -> float:
        step = max(1, int(round(self.interval * 1000)))
        remaining = step - (self.clock.time_ms() % step)
        return max(0.01, remaining / 1000.0)

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        self._stop = stop or asyncio.Event()
        logger.info("Scheduler started: interval=%.1fs deadline=%.1fs", self.interval, self.deadline)
        try:
            while not self._stop.is_set():
                task = asyncio.create_task(self.tick())
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self._delay_to_next_slot())
                except asyncio.TimeoutError:
                    pass
        finally:
            if self._inflight:
                await asyncio.gather(*self._inflight, return_exceptions=True)
            logger.info("Scheduler stopped")

    def start(self) -> asyncio.Task:
        if self._task is not None and not self._task.done():
            return self._task
        self._stop = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self.run_forever(self._stop))
        return self._task

    async def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
