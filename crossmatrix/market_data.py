"""Spot market-data client (Binance REST) and tradability lookups."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import random
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence

import aiohttp

from .clock import Clock, system_clock
from .errors import UpstreamError
from .http import close_session, get_session
from .ingest import (
    KlineRow,
    SymbolInfo,
    TickerSnapshot,
    merge_snapshots,
    parse_klines,
    parse_symbols,
    parse_tickers,
)
from .logging_utils import warn_once_per
from .lru import TTLCache
from .models import normalize_symbol

logger = logging.getLogger(__name__)

BINANCE_BASE_URL = os.getenv("BINANCE_BASE_URL", "https://api.binance.com")
PRICE_RETRY_ATTEMPTS = max(1, int(os.getenv("PRICE_RETRY_ATTEMPTS", "3") or 3))
PRICE_RETRY_BACKOFF = float(os.getenv("PRICE_RETRY_BACKOFF", "0.5") or 0.5)
HTTP_CONCURRENCY = max(1, int(os.getenv("HTTP_CONCURRENCY", "8") or 8))
TICKER_CHUNK_SIZE = max(1, int(os.getenv("TICKER_CHUNK_SIZE", "100") or 100))
EXCHANGE_INFO_TTL = float(os.getenv("EXCHANGE_INFO_TTL", "900") or 900)
REQUEST_TIMEOUT = 10.0

EXCHANGE_INFO_PATH = "/api/v3/exchangeInfo"
TICKER_24H_PATH = "/api/v3/ticker/24hr"
KLINES_PATH = "/api/v3/klines"

_EXCHANGE_INFO_KEY = "exchangeInfo"

SessionFactory = Callable[[], Awaitable[aiohttp.ClientSession]]


def _chunked(items: Sequence[str], size: int) -> list[Sequence[str]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def _retryable(exc: BaseException) -> bool:
    if isinstance(exc, aiohttp.ClientResponseError):
        return exc.status >= 500 or exc.status == 429
    return True


class BinanceClient:
    """Thin async client for the public spot endpoints the engine consumes.

    Every request goes through :meth:`_request_json`, which applies a shared
    concurrency limit, a per-call timeout and retries with exponential backoff
    plus jitter.  Exhausted retries raise :class:`UpstreamError`.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        session_factory: SessionFactory | None = None,
        retry_attempts: int | None = None,
        retry_backoff: float | None = None,
        timeout: float = REQUEST_TIMEOUT,
        concurrency: int | None = None,
        chunk_size: int = TICKER_CHUNK_SIZE,
        cache: TTLCache | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.base_url = (base_url or BINANCE_BASE_URL).rstrip("/")
        self._owns_session = session_factory is None
        self._session_factory = session_factory or get_session
        self.retry_attempts = max(1, int(retry_attempts or PRICE_RETRY_ATTEMPTS))
        self.retry_backoff = PRICE_RETRY_BACKOFF if retry_backoff is None else float(retry_backoff)
        self.timeout = float(timeout)
        self.chunk_size = max(1, int(chunk_size))
        self._sem = asyncio.Semaphore(concurrency or HTTP_CONCURRENCY)
        self.clock = clock or system_clock()
        self.cache = cache or TTLCache(maxsize=4, ttl=EXCHANGE_INFO_TTL, clock=self.clock)

    async def _request_json(
        self, path: str, *, params: Mapping[str, Any] | None = None
    ) -> Any:
        session = await self._session_factory()
        url = f"{self.base_url}{path}"
        last_error: BaseException | None = None
        for attempt in range(self.retry_attempts):
            try:
                async with self._sem:
                    async with session.get(
                        url,
                        params=dict(params or {}),
                        timeout=aiohttp.ClientTimeout(total=self.timeout),
                    ) as resp:
                        resp.raise_for_status()
                        return await resp.json()
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                last_error = exc
                if attempt == self.retry_attempts - 1 or not _retryable(exc):
                    break
                delay = self.retry_backoff * (2 ** attempt)
                if isinstance(exc, aiohttp.ClientConnectorError):
                    delay = max(delay, 0.2)
                jitter = random.uniform(0.05, 0.25)
                await asyncio.sleep(delay + jitter)
        status = getattr(last_error, "status", None)
        raise UpstreamError(
            f"GET {path} failed after {attempt + 1} attempt(s): {last_error!r}",
            status=status if isinstance(status, int) else None,
        ) from last_error

    # ------------------------------------------------------------------
    # exchange info
    # ------------------------------------------------------------------
    async def _load_exchange_info(self) -> list[SymbolInfo]:
        payload = await self._request_json(EXCHANGE_INFO_PATH)
        symbols = parse_symbols(payload)
        if not symbols:
            raise UpstreamError("exchangeInfo response carried no usable symbols")
        logger.debug("exchangeInfo refreshed: %d symbols", len(symbols))
        return symbols

    async def fetch_exchange_info(self) -> list[SymbolInfo]:
        """Return the symbol list, cached for ``EXCHANGE_INFO_TTL`` seconds.

        When a refresh fails and an expired copy is still held, the expired
        copy is served and a throttled warning is logged.
        """
        try:
            return await self.cache.get_or_set_async(_EXCHANGE_INFO_KEY, self._load_exchange_info)
        except UpstreamError as exc:
            stale = self.cache.get_stale(_EXCHANGE_INFO_KEY)
            if stale is None:
                raise
            warn_once_per(
                5.0,
                "exchange-info-stale",
                "MarketData: exchangeInfo refresh failed (%s); serving stale copy",
                exc,
                logger=logger,
            )
            return stale

    async def tradable_symbols(self) -> dict[str, SymbolInfo]:
        return {s.symbol: s for s in await self.fetch_exchange_info() if s.tradable}

    # ------------------------------------------------------------------
    # tickers
    # ------------------------------------------------------------------
    async def _fetch_ticker_chunk(
        self, chunk: Sequence[str], pairs: Mapping[str, tuple[str, str]], ts_ms: int
    ) -> TickerSnapshot:
        params = {"symbols": json.dumps(list(chunk), separators=(",", ":"))}
        try:
            payload = await self._request_json(TICKER_24H_PATH, params=params)
        except UpstreamError as exc:
            warn_once_per(
                1.0,
                f"ticker-chunk:{chunk[0]}",
                "MarketData: ticker chunk starting at %s (%d symbols) failed: %s",
                chunk[0],
                len(chunk),
                exc,
                logger=logger,
            )
            return TickerSnapshot(ts_ms=ts_ms)
        return parse_tickers(payload, {s: pairs[s] for s in chunk}, ts_ms=ts_ms)

    async def fetch_tickers(
        self, pairs: Iterable[tuple[str, str]], *, ts_ms: int | None = None
    ) -> TickerSnapshot:
        """Fetch 24h tickers for ``(base, quote)`` pairs.

        Pairs the exchange does not list as tradable are dropped before any
        ticker request is made.  A failed chunk leaves its pairs unresolved
        instead of failing the whole snapshot.
        """
        now = self.clock.time_ms() if ts_ms is None else int(ts_ms)
        wanted: dict[str, tuple[str, str]] = {}
        for base, quote in pairs:
            b, q = normalize_symbol(base), normalize_symbol(quote)
            if b and q and b != q:
                wanted[f"{b}{q}"] = (b, q)

        try:
            listed = await self.tradable_symbols()
        except UpstreamError as exc:
            logger.warning("MarketData: exchangeInfo unavailable, requesting unfiltered: %s", exc)
            listed = None
        if listed is not None:
            wanted = {
                sym: pair
                for sym, pair in wanted.items()
                if sym in listed and (listed[sym].base, listed[sym].quote) == pair
            }
        if not wanted:
            return TickerSnapshot(ts_ms=now)

        chunks = _chunked(sorted(wanted), self.chunk_size)
        parts = await asyncio.gather(
            *(self._fetch_ticker_chunk(chunk, wanted, now) for chunk in chunks)
        )
        snapshot = merge_snapshots(parts, ts_ms=now)
        logger.debug(
            "MarketData: %d/%d tickers across %d chunk(s)",
            len(snapshot),
            len(wanted),
            len(chunks),
        )
        return snapshot

    async def fetch_klines(
        self, symbol: str, interval: str = "1h", limit: int = 25
    ) -> list[KlineRow]:
        payload = await self._request_json(
            KLINES_PATH,
            params={
                "symbol": normalize_symbol(symbol),
                "interval": interval,
                "limit": max(1, min(int(limit), 1000)),
            },
        )
        return parse_klines(payload)

    async def close(self) -> None:
        if self._owns_session:
            await close_session()


class AvailabilityResolver:
    """Map a coin set to the ``BASEQUOTE`` symbols currently trading."""

    def __init__(self, client: BinanceClient) -> None:
        self.client = client

    async def resolve(self, coins: Iterable[str]) -> frozenset[str] | None:
        universe = {normalize_symbol(c) for c in coins}
        try:
            info = await self.client.fetch_exchange_info()
        except UpstreamError as exc:
            logger.warning("Availability: lookup failed, reads will not be masked: %s", exc)
            return None
        return frozenset(
            s.symbol
            for s in info
            if s.status == "TRADING" and s.base in universe and s.quote in universe
        )
