"""Sources of the coin universe read at the start of every tick."""

from __future__ import annotations

import logging
import os
from typing import Iterable, Mapping, Protocol, Sequence

from sqlalchemy.exc import SQLAlchemyError

from .errors import StoreError
from .models import DEFAULT_QUOTE, CoinUniverse, normalize_symbol
from .store import SnapshotStore

logger = logging.getLogger(__name__)

FALLBACK_BASES: tuple[str, ...] = ("BTC", "ETH", "BNB")


class UniverseProvider(Protocol):
    async def load(self) -> CoinUniverse: ...


def _split(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [normalize_symbol(part) for part in raw.split(",") if normalize_symbol(part)]


class StaticUniverseProvider:
    def __init__(self, bases: Iterable[str], quote: str = DEFAULT_QUOTE) -> None:
        self.universe = CoinUniverse.of(bases, quote)

    async def load(self) -> CoinUniverse:
        return self.universe


class EnvUniverseProvider:
    """``MATRICES_BASES`` (comma separated) and ``MATRICES_QUOTE``.

    Returns an anchor-only universe when ``MATRICES_BASES`` is unset.
    """

    def __init__(
        self, env: Mapping[str, str] | None = None, *, default_quote: str = DEFAULT_QUOTE
    ) -> None:
        self._env = env
        self.default_quote = default_quote

    async def load(self) -> CoinUniverse:
        env = os.environ if self._env is None else self._env
        quote = normalize_symbol(env.get("MATRICES_QUOTE")) or self.default_quote
        return CoinUniverse.of(_split(env.get("MATRICES_BASES")), quote)


class DbUniverseProvider:
    """Enabled rows of the ``coin_universe`` table for one quote asset."""

    def __init__(self, store: SnapshotStore, quote: str = DEFAULT_QUOTE) -> None:
        self.store = store
        self.quote = normalize_symbol(quote) or DEFAULT_QUOTE

    async def load(self) -> CoinUniverse:
        try:
            bases = await self.store.enabled_coins(self.quote)
        except (StoreError, SQLAlchemyError) as exc:
            logger.warning("Universe: coin_universe lookup failed: %s", exc)
            bases = []
        return CoinUniverse.of(bases, self.quote)


class ChainUniverseProvider:
    """First provider yielding at least one base wins; else the fallback bases."""

    def __init__(
        self,
        providers: Sequence[UniverseProvider],
        *,
        quote: str = DEFAULT_QUOTE,
        fallback: Iterable[str] = FALLBACK_BASES,
    ) -> None:
        self.providers = list(providers)
        self.quote = normalize_symbol(quote) or DEFAULT_QUOTE
        self.fallback = tuple(fallback)

    async def load(self) -> CoinUniverse:
        for provider in self.providers:
            universe = await provider.load()
            if universe.bases:
                return universe
        logger.info("Universe: no configured coins, using fallback %s", ",".join(self.fallback))
        return CoinUniverse.of(self.fallback, self.quote)


def default_provider(
    store: SnapshotStore,
    *,
    quote: str = DEFAULT_QUOTE,
    bases: Iterable[str] = (),
    fallback: Iterable[str] = FALLBACK_BASES,
) -> ChainUniverseProvider:
    """Configured bases, then env, then the database, then the fallback set."""
    providers: list[UniverseProvider] = []
    configured = [normalize_symbol(b) for b in bases if normalize_symbol(b)]
    if configured:
        providers.append(StaticUniverseProvider(configured, quote))
    providers.append(EnvUniverseProvider(default_quote=quote))
    providers.append(DbUniverseProvider(store, quote))
    return ChainUniverseProvider(providers, quote=quote, fallback=fallback)
