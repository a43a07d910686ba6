from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .models import DEFAULT_QUOTE, normalize_symbol


def _symbols(value: object) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        raise ValueError("expected a list of symbols or a comma separated string")
    out: List[str] = []
    for item in value:
        sym = normalize_symbol(item)
        if sym and sym not in out:
            out.append(sym)
    return out


class FrozenThresholdsModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    recent: int = 1
    mid: int = 3
    long: int = 7

    @model_validator(mode="after")
    def _ordered(self) -> "FrozenThresholdsModel":
        if not 0 < self.recent < self.mid < self.long:
            raise ValueError("frozen thresholds must satisfy 0 < recent < mid < long")
        return self


class EngineConfigModel(BaseModel):
    """Schema for crossmatrix configuration files."""

    model_config = ConfigDict(extra="ignore")

    quote: str = DEFAULT_QUOTE
    bases: List[str] = Field(default_factory=list)
    bridges: List[str] = Field(
        default_factory=lambda: ["USDT", "BTC", "ETH", "BNB", "FDUSD", "USDC"]
    )
    fallback_bases: List[str] = Field(default_factory=lambda: ["BTC", "ETH", "BNB"])
    db_url: str = "sqlite:///matrices.db"
    tick_interval: float = Field(default=40.0, gt=0)
    tick_deadline: float | None = Field(default=None, gt=0)
    http_concurrency: int = Field(default=8, ge=1)
    retry_attempts: int = Field(default=3, ge=1)
    retry_backoff: float = Field(default=0.5, ge=0)
    binance_base_url: str = "https://api.binance.com"
    exchange_info_ttl: float = Field(default=900.0, gt=0)
    frozen: FrozenThresholdsModel = Field(default_factory=FrozenThresholdsModel)
    flip_abs_eps: float = Field(default=1e-6, ge=0)
    flip_rel_eps: float = Field(default=0.05, ge=0)
    history_limit: int = Field(default=8, ge=2)
    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("quote")
    @classmethod
    def _quote(cls, value: str) -> str:
        sym = normalize_symbol(value)
        if not sym:
            raise ValueError("quote must be a non-empty symbol")
        return sym

    @field_validator("bases", "bridges", "fallback_bases", mode="before")
    @classmethod
    def _symbol_list(cls, value: object) -> List[str]:
        return _symbols(value)

    @field_validator("binance_base_url")
    @classmethod
    def _url(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("binance_base_url must be an http(s) URL")
        return value

    @model_validator(mode="after")
    def _deadline(self) -> "EngineConfigModel":
        if self.tick_deadline is None:
            self.tick_deadline = self.tick_interval * 0.9
        return self


def validate_config(data: Dict[str, object]) -> EngineConfigModel:
    """Validate ``data`` against :class:`EngineConfigModel`.

    Raises :class:`~crossmatrix.errors.ConfigError` on validation errors.
    """
    try:
        return EngineConfigModel.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
