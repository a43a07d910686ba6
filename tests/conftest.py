import pytest
from sqlalchemy import func, select

from crossmatrix.clock import ManualClock
from crossmatrix.ingest import TickerSnapshot
from crossmatrix.logging_utils import reset_warn_once_cache
from crossmatrix.models import MatrixType
from crossmatrix.store import MatrixValue

# 2024-03-01T00:00:00Z
DAY0_MS = 1_709_251_200_000


@pytest.fixture(autouse=True)
def _reset_warn_once():
    reset_warn_once_cache()
    yield
    reset_warn_once_cache()


@pytest.fixture
def clock():
    return ManualClock(start_ms=DAY0_MS + 3_600_000)


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path/'matrices.db'}"


@pytest.fixture
def market():
    """Spot prices for a small universe, every coin quoted directly in USDT."""
    return TickerSnapshot.from_prices(
        {
            "BTC/USDT": 65000.0,
            "ETH/USDT": 3200.0,
            "BNB/USDT": 560.0,
            "ETH/BTC": 0.04923,
        }
    )


@pytest.fixture
def row_count():
    """Count stored rows of one matrix type at one timestamp."""

    async def count(store, matrix_type, ts_ms):
        async with store.Session() as session:
            result = await session.execute(
                select(func.count()).select_from(MatrixValue).where(
                    MatrixValue.matrix_type == MatrixType.parse(matrix_type).value,
                    MatrixValue.ts_ms == int(ts_ms),
                )
            )
            return int(result.scalar_one())

    return count
