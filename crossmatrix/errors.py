"""Exception types raised by the matrix engine."""

from __future__ import annotations


class MatrixEngineError(Exception):
    """Base class for all engine errors."""


class ConfigError(MatrixEngineError, ValueError):
    """Raised when the configuration file or overrides are invalid."""


class ConfigFileNotFound(ConfigError, FileNotFoundError):
    """Raised when an explicitly requested configuration file is missing."""


class UpstreamError(MatrixEngineError):
    """Raised when the market-data provider cannot be reached or answers badly."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class StoreError(MatrixEngineError):
    """Raised when a snapshot batch could not be persisted.

    The batch has been rolled back when this is raised.
    """
