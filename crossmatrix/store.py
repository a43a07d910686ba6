from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Float,
    Index,
    Integer,
    String,
    UniqueConstraint,
    and_,
    func,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .errors import StoreError
from .models import Frame, Grid, MatrixType, empty_grid, grid_to_snapshots, normalize_symbol

Base = declarative_base()
logger = logging.getLogger(__name__)

DEFAULT_DB_URL = "sqlite:///matrices.db"
_UPSERT_CHUNK = 150


class MatrixValue(Base):
    __tablename__ = "matrix_values"

    id = Column(Integer, primary_key=True)
    matrix_type = Column(String(16), nullable=False)
    base = Column(String(16), nullable=False)
    quote = Column(String(16), nullable=False)
    ts_ms = Column(BigInteger, nullable=False)
    value = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("matrix_type", "base", "quote", "ts_ms", name="uq_matrix_values_key"),
        Index("ix_matrix_values_type_ts", "matrix_type", "ts_ms"),
    )


class CoinUniverseRow(Base):
    __tablename__ = "coin_universe"

    id = Column(Integer, primary_key=True)
    symbol = Column(String(32), nullable=False, unique=True)
    base_asset = Column(String(16), nullable=False)
    quote_asset = Column(String(16), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=True)


_KEY_COLUMNS = ("matrix_type", "base", "quote", "ts_ms")


def normalize_db_url(url: str) -> str:
    if url.startswith("sqlite:///"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def _to_db(value: float) -> float | None:
    return None if value is None or not math.isfinite(value) else float(value)


def _from_db(matrix_type: MatrixType, value: float | None) -> float:
    if value is None:
        return matrix_type.sentinel
    return float(value)


class SnapshotStore:
    """Append-only matrix time series with idempotent, batch-atomic writes.

    Rows are keyed by ``(matrix_type, base, quote, ts_ms)``; writing the same
    key twice updates the row in place instead of adding a duplicate.  Every
    write call runs in a single transaction, so readers observe a tick either
    completely or not at all.
    """

    def __init__(self, url: str = DEFAULT_DB_URL, *, echo: bool = False) -> None:
        self.url = normalize_db_url(url)
        self.engine = create_async_engine(self.url, echo=echo, future=True)
        self.Session: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=self.engine, expire_on_commit=False
        )
        self._ready = False
        self._init_lock = asyncio.Lock()

    async def _init_models(self) -> None:
        async with self.engine.begin() as conn:
            if self.engine.dialect.name == "sqlite":
                try:
                    await conn.exec_driver_sql("PRAGMA journal_mode=WAL;")
                    await conn.exec_driver_sql("PRAGMA synchronous=NORMAL;")
                except SQLAlchemyError:
                    logger.debug("SQLite PRAGMA tuning failed", exc_info=True)
            await conn.run_sync(Base.metadata.create_all)

    async def wait_ready(self) -> None:
        if self._ready:
            return
        async with self._init_lock:
            if not self._ready:
                await self._init_models()
                self._ready = True

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    def _upsert(self, rows: list[dict[str, Any]]):
        dialect = self.engine.dialect.name
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        elif dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:  # pragma: no cover - configuration error
            raise StoreError(f"upsert not supported for dialect {dialect!r}")
        stmt = insert(MatrixValue).values(rows)
        return stmt.on_conflict_do_update(
            index_elements=list(_KEY_COLUMNS),
            set_={"value": stmt.excluded.value},
        )

    @staticmethod
    def _rows(matrix_type: MatrixType, ts_ms: int, grid: Grid) -> list[dict[str, Any]]:
        return [
            {
                "matrix_type": snap.matrix_type.value,
                "base": snap.base,
                "quote": snap.quote,
                "ts_ms": snap.ts_ms,
                "value": _to_db(snap.value),
            }
            for snap in grid_to_snapshots(matrix_type, ts_ms, grid)
        ]

    async def commit_frame(self, ts_ms: int, grids: Mapping[MatrixType | str, Grid]) -> int:
        """Write every grid of one tick in one transaction; return rows written."""
        await self.wait_ready()
        rows: list[dict[str, Any]] = []
        for matrix_type, grid in grids.items():
            rows.extend(self._rows(MatrixType.parse(matrix_type), ts_ms, grid))
        if not rows:
            return 0
        try:
            async with self.Session() as session:
                async with session.begin():
                    for start in range(0, len(rows), _UPSERT_CHUNK):
                        await session.execute(self._upsert(rows[start : start + _UPSERT_CHUNK]))
        except SQLAlchemyError as exc:
            logger.error("matrix commit @%s rolled back: %s", ts_ms, exc)
            raise StoreError(f"commit of {len(rows)} rows @ {ts_ms} failed") from exc
        return len(rows)

    async def commit(self, matrix_type: MatrixType | str, ts_ms: int, grid: Grid) -> int:
        return await self.commit_frame(ts_ms, {MatrixType.parse(matrix_type): grid})

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    async def latest(self, matrix_type: MatrixType | str) -> int | None:
        await self.wait_ready()
        mt = MatrixType.parse(matrix_type)
        async with self.Session() as session:
            result = await session.execute(
                select(func.max(MatrixValue.ts_ms)).where(MatrixValue.matrix_type == mt.value)
            )
            ts = result.scalar_one_or_none()
        return int(ts) if ts is not None else None

    async def before(self, matrix_type: MatrixType | str, ts_ms: int) -> int | None:
        await self.wait_ready()
        mt = MatrixType.parse(matrix_type)
        async with self.Session() as session:
            result = await session.execute(
                select(func.max(MatrixValue.ts_ms)).where(
                    MatrixValue.matrix_type == mt.value,
                    MatrixValue.ts_ms < int(ts_ms),
                )
            )
            ts = result.scalar_one_or_none()
        return int(ts) if ts is not None else None

    async def history(
        self, matrix_type: MatrixType | str, limit: int = 10, *, upto_ms: int | None = None
    ) -> list[int]:
        """Most recent distinct timestamps for ``matrix_type`` (at or before ``upto_ms``), newest first."""
        await self.wait_ready()
        mt = MatrixType.parse(matrix_type)
        cond = [MatrixValue.matrix_type == mt.value]
        if upto_ms is not None:
            cond.append(MatrixValue.ts_ms <= int(upto_ms))
        async with self.Session() as session:
            result = await session.execute(
                select(MatrixValue.ts_ms)
                .where(*cond)
                .group_by(MatrixValue.ts_ms)
                .order_by(MatrixValue.ts_ms.desc())
                .limit(max(1, int(limit)))
            )
            return [int(ts) for ts in result.scalars().all()]

    async def grid_at(
        self, matrix_type: MatrixType | str, ts_ms: int, coins: Sequence[str]
    ) -> Grid:
        """Rebuild an N x N grid over ``coins`` (caller order), sentinel-filled."""
        await self.wait_ready()
        mt = MatrixType.parse(matrix_type)
        universe = [normalize_symbol(c) for c in coins]
        grid = empty_grid(universe, mt.sentinel)
        if not universe:
            return grid
        async with self.Session() as session:
            result = await session.execute(
                select(MatrixValue.base, MatrixValue.quote, MatrixValue.value).where(
                    MatrixValue.matrix_type == mt.value,
                    MatrixValue.ts_ms == int(ts_ms),
                    MatrixValue.base.in_(universe),
                    MatrixValue.quote.in_(universe),
                )
            )
            for base, quote, value in result.all():
                if base != quote:
                    grid[base][quote] = _from_db(mt, value)
        return grid

    async def frame_at(
        self, matrix_type: MatrixType | str, ts_ms: int | None, coins: Sequence[str]
    ) -> Frame | None:
        if ts_ms is None:
            return None
        return Frame(ts_ms=int(ts_ms), grid=await self.grid_at(matrix_type, ts_ms, coins))

    async def earliest_in_window(
        self, coins: Iterable[str], start_ms: int, end_ms: int
    ) -> Grid:
        """Benchmark value of the earliest non-sentinel snapshot per pair in ``[start, end)``."""
        await self.wait_ready()
        universe = [normalize_symbol(c) for c in coins]
        out: Grid = {}
        if not universe:
            return out
        bm = MatrixType.BENCHMARK.value
        window = and_(
            MatrixValue.matrix_type == bm,
            MatrixValue.ts_ms >= int(start_ms),
            MatrixValue.ts_ms < int(end_ms),
            MatrixValue.value.is_not(None),
            MatrixValue.base.in_(universe),
            MatrixValue.quote.in_(universe),
        )
        first = (
            select(
                MatrixValue.base.label("base"),
                MatrixValue.quote.label("quote"),
                func.min(MatrixValue.ts_ms).label("ts_ms"),
            )
            .where(window)
            .group_by(MatrixValue.base, MatrixValue.quote)
            .subquery()
        )
        query = select(MatrixValue.base, MatrixValue.quote, MatrixValue.value).join(
            first,
            and_(
                MatrixValue.base == first.c.base,
                MatrixValue.quote == first.c.quote,
                MatrixValue.ts_ms == first.c.ts_ms,
            ),
        ).where(MatrixValue.matrix_type == bm)
        async with self.Session() as session:
            result = await session.execute(query)
            for base, quote, value in result.all():
                if value is not None and base != quote:
                    out.setdefault(base, {})[quote] = float(value)
        return out

    # ------------------------------------------------------------------
    # coin universe
    # ------------------------------------------------------------------
    async def enabled_coins(self, quote: str) -> list[str]:
        """Enabled base assets quoted in ``quote``, by ``sort_order`` then base."""
        await self.wait_ready()
        anchor = normalize_symbol(quote)
        async with self.Session() as session:
            result = await session.execute(
                select(CoinUniverseRow.base_asset)
                .where(
                    CoinUniverseRow.enabled.is_(True),
                    CoinUniverseRow.quote_asset == anchor,
                )
                .order_by(
                    func.coalesce(CoinUniverseRow.sort_order, 999),
                    CoinUniverseRow.base_asset,
                )
            )
            return [normalize_symbol(b) for b in result.scalars().all()]

    async def upsert_coin(
        self,
        base: str,
        quote: str,
        *,
        enabled: bool = True,
        sort_order: int | None = None,
    ) -> None:
        await self.wait_ready()
        b, q = normalize_symbol(base), normalize_symbol(quote)
        symbol = f"{b}{q}"
        try:
            async with self.Session() as session:
                async with session.begin():
                    row = (
                        await session.execute(
                            select(CoinUniverseRow).where(CoinUniverseRow.symbol == symbol)
                        )
                    ).scalar_one_or_none()
                    if row is None:
                        session.add(
                            CoinUniverseRow(
                                symbol=symbol,
                                base_asset=b,
                                quote_asset=q,
                                enabled=enabled,
                                sort_order=sort_order,
                            )
                        )
                    else:
                        row.enabled = enabled
                        row.sort_order = sort_order
        except SQLAlchemyError as exc:
            raise StoreError(f"could not save coin {symbol}") from exc

    async def close(self) -> None:
        await self.engine.dispose()

    async def __aenter__(self) -> "SnapshotStore":
        await self.wait_ready()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
