"""Cross-asset matrix engine."""

from .errors import ConfigError, MatrixEngineError, StoreError, UpstreamError
from .models import CoinUniverse, Frame, MatrixType

__version__ = "0.1.0"

__all__ = [
    "CoinUniverse",
    "ConfigError",
    "Frame",
    "MatrixEngineError",
    "MatrixType",
    "StoreError",
    "UpstreamError",
    "__version__",
]
