from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from autotrader.errors import ConfigurationInvalidError
from autotrader.strategy.contracts import StrategyName, resolve_strategy_name


class SchedulerConfig(BaseModel):
    trading_interval_seconds: float = 60.0
    stream_interval_seconds: float = 5.0
    max_concurrent_accounts: int = 1
    timeframe: str = "H1"
    candle_count: int = 250
    join_timeout_seconds: float = 120.0

    @model_validator(mode="after")
    def validate_scheduler(self) -> "SchedulerConfig":
        if self.trading_interval_seconds <= 0:
            raise ValueError("scheduler.trading_interval_seconds must be > 0")
        if self.stream_interval_seconds <= 0:
            raise ValueError("scheduler.stream_interval_seconds must be > 0")
        if self.max_concurrent_accounts <= 0:
            raise ValueError("scheduler.max_concurrent_accounts must be > 0")
        if self.candle_count < 50:
            raise ValueError("scheduler.candle_count must be >= 50")
        self.timeframe = self.timeframe.strip().upper()
        return self


class CacheConfig(BaseModel):
    candle_ttl_seconds: float = 55.0
    max_entries: int = 512

    @model_validator(mode="after")
    def validate_cache(self) -> "CacheConfig":
        if self.candle_ttl_seconds < 0:
            raise ValueError("cache.candle_ttl_seconds must be >= 0")
        if self.max_entries <= 0:
            raise ValueError("cache.max_entries must be > 0")
        return self


class RiskTierConfig(BaseModel):
    min_balance: float
    max_lot: float
    risk_percent: float
    max_positions: int | None = None


def _default_risk_tiers() -> list[RiskTierConfig]:
    return [
        RiskTierConfig(min_balance=0, max_lot=0.01, risk_percent=1.0),
        RiskTierConfig(min_balance=100, max_lot=0.02, risk_percent=1.0),
        RiskTierConfig(min_balance=200, max_lot=0.05, risk_percent=1.5),
        RiskTierConfig(min_balance=500, max_lot=0.1, risk_percent=1.5),
        RiskTierConfig(min_balance=1000, max_lot=0.2, risk_percent=2.0),
        RiskTierConfig(min_balance=2500, max_lot=0.5, risk_percent=2.0),
        RiskTierConfig(min_balance=5000, max_lot=1.0, risk_percent=2.0),
        RiskTierConfig(min_balance=10000, max_lot=2.0, risk_percent=2.0),
    ]


class RiskConfig(BaseModel):
    daily_loss_limit_pct: float = 0.05
    tiers: list[RiskTierConfig] = Field(default_factory=_default_risk_tiers)
    pip_value_per_lot: dict[str, float] = Field(
        default_factory=lambda: {"gold": 10.0, "silver": 50.0, "jpy": 7.0, "other": 10.0}
    )
    min_lot: float = 0.01
    lot_step: float = 0.01
    low_confidence_threshold: float = 65.0
    low_confidence_factor: float = 0.5
    min_confidence: float | None = None
    trading_day_timezone: str = "UTC"

    @model_validator(mode="after")
    def validate_risk(self) -> "RiskConfig":
        if not (0 < self.daily_loss_limit_pct <= 1.0):
            raise ValueError("risk.daily_loss_limit_pct must be in (0,1]")
        if not self.tiers:
            raise ValueError("risk.tiers must not be empty")
        for tier in self.tiers:
            if tier.max_lot <= 0:
                raise ValueError("risk tier max_lot must be > 0")
            if tier.risk_percent <= 0:
                raise ValueError("risk tier risk_percent must be > 0")
            if tier.max_positions is not None and tier.max_positions <= 0:
                raise ValueError("risk tier max_positions must be > 0 when provided")
        self.tiers = sorted(self.tiers, key=lambda tier: tier.min_balance)
        if self.min_lot <= 0 or self.lot_step <= 0:
            raise ValueError("risk.min_lot and risk.lot_step must be > 0")
        if not (0 < self.low_confidence_factor <= 1.0):
            raise ValueError("risk.low_confidence_factor must be in (0,1]")
        self.pip_value_per_lot = {
            str(key).strip().lower(): float(value) for key, value in self.pip_value_per_lot.items()
        }
        self.pip_value_per_lot.setdefault("other", 10.0)
        return self


def _default_weights(overrides: dict[StrategyName, float]) -> dict[StrategyName, float]:
    weights = {name: 1.0 for name in StrategyName}
    weights.update(overrides)
    return weights


class StrategyWeightsConfig(BaseModel):
    gold: dict[StrategyName, float] = Field(
        default_factory=lambda: _default_weights(
            {
                StrategyName.LIQUIDITY_SWEEP: 1.3,
                StrategyName.ORDER_BLOCK: 1.25,
                StrategyName.LONDON_BREAKOUT: 1.2,
                StrategyName.EMA200_PULLBACK: 1.1,
                StrategyName.FIB_CONTINUATION: 1.1,
                StrategyName.VWAP_MEAN_REVERSION: 0.8,
                StrategyName.RSI_DIVERGENCE: 0.9,
            }
        )
    )
    silver: dict[StrategyName, float] = Field(
        default_factory=lambda: _default_weights(
            {
                StrategyName.BREAK_AND_RETEST: 1.2,
                StrategyName.VWAP_MEAN_REVERSION: 1.15,
                StrategyName.RSI_DIVERGENCE: 1.1,
                StrategyName.LIQUIDITY_SWEEP: 1.1,
                StrategyName.LONDON_BREAKOUT: 0.9,
            }
        )
    )
    other: dict[StrategyName, float] = Field(
        default_factory=lambda: _default_weights(
            {
                StrategyName.EMA200_PULLBACK: 1.2,
                StrategyName.BREAK_AND_RETEST: 1.1,
                StrategyName.LONDON_BREAKOUT: 1.1,
                StrategyName.FIB_CONTINUATION: 1.05,
                StrategyName.VWAP_MEAN_REVERSION: 0.9,
            }
        )
    )

    @field_validator("gold", "silver", "other", mode="before")
    @classmethod
    def resolve_weight_keys(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        resolved: dict[StrategyName, float] = {name: 1.0 for name in StrategyName}
        for key, weight in value.items():
            resolved[resolve_strategy_name(key)] = float(weight)
        return resolved

    def weight_for(self, instrument_class: str, strategy: StrategyName) -> float:
        table = getattr(self, instrument_class, None)
        if not isinstance(table, dict):
            table = self.other
        return float(table.get(strategy, 1.0))


class LotMultiplierTierConfig(BaseModel):
    min_strategies: int
    multiplier: float


class AggregatorConfig(BaseModel):
    default_min_agreeing: int = 2
    lot_multiplier_tiers: list[LotMultiplierTierConfig] = Field(
        default_factory=lambda: [
            LotMultiplierTierConfig(min_strategies=6, multiplier=2.0),
            LotMultiplierTierConfig(min_strategies=5, multiplier=1.5),
            LotMultiplierTierConfig(min_strategies=4, multiplier=1.25),
        ]
    )
    base_lot_multiplier: float = 1.0
    extra_strategy_boost: float = 5.0
    max_confidence: float = 95.0
    engulfing_boost: float = 10.0
    pin_bar_boost: float = 7.0
    inside_bar_boost: float = 5.0
    structure_boost: float = 5.0
    atr_period: int = 14
    fallback_sl_atr: float = 1.5
    fallback_tp_atr: float = 3.0

    @model_validator(mode="after")
    def validate_aggregator(self) -> "AggregatorConfig":
        if self.default_min_agreeing <= 0:
            raise ValueError("aggregator.default_min_agreeing must be > 0")
        if not (0 < self.max_confidence <= 100):
            raise ValueError("aggregator.max_confidence must be in (0,100]")
        if self.fallback_sl_atr <= 0 or self.fallback_tp_atr <= 0:
            raise ValueError("aggregator ATR fallback multiples must be > 0")
        self.lot_multiplier_tiers = sorted(
            self.lot_multiplier_tiers,
            key=lambda tier: tier.min_strategies,
            reverse=True,
        )
        return self

    def lot_multiplier_for(self, confluence_count: int) -> float:
        for tier in self.lot_multiplier_tiers:
            if confluence_count >= tier.min_strategies:
                return tier.multiplier
        return self.base_lot_multiplier


class StrategiesConfig(BaseModel):
    london_start_hour_utc: int = 7
    london_end_hour_utc: int = 11
    asian_start_hour_utc: int = 0
    asian_end_hour_utc: int = 7
    min_asian_candles: int = 4
    min_reward_risk: float = 2.0
    mean_reversion_reward_risk: float = 1.5

    @model_validator(mode="after")
    def validate_sessions(self) -> "StrategiesConfig":
        for value in (
            self.london_start_hour_utc,
            self.london_end_hour_utc,
            self.asian_start_hour_utc,
            self.asian_end_hour_utc,
        ):
            if not (0 <= value <= 24):
                raise ValueError("session hours must be within 0..24")
        if self.asian_start_hour_utc >= self.asian_end_hour_utc:
            raise ValueError("strategies.asian_start_hour_utc must be < asian_end_hour_utc")
        if self.min_reward_risk <= 0 or self.mean_reversion_reward_risk <= 0:
            raise ValueError("reward:risk floors must be > 0")
        return self


class BreakevenConfig(BaseModel):
    timeframe: str = "H1"
    candle_count: int = 100
    atr_period: int = 14
    rsi_period: int = 14
    standard_atr_multiple: float = 1.0
    standard_profit_usd: float | None = 15.0
    swing_sl_pips_threshold: float = 30.0
    swing_min_profit_pips: float = 35.0
    swing_tags: list[str] = Field(default_factory=lambda: ["swing", "position"])
    momentum_lookback: int = 5
    momentum_min_favorable: int = 3
    buy_rsi_band: tuple[float, float] = (50.0, 70.0)
    sell_rsi_band: tuple[float, float] = (30.0, 50.0)
    buffer_atr_multiple: float = 0.1
    buffer_pips: float | None = None

    @model_validator(mode="after")
    def validate_breakeven(self) -> "BreakevenConfig":
        if self.standard_atr_multiple <= 0:
            raise ValueError("breakeven.standard_atr_multiple must be > 0")
        if self.momentum_min_favorable > self.momentum_lookback:
            raise ValueError("breakeven.momentum_min_favorable must be <= momentum_lookback")
        if self.buffer_atr_multiple < 0:
            raise ValueError("breakeven.buffer_atr_multiple must be >= 0")
        self.timeframe = self.timeframe.strip().upper()
        self.swing_tags = [tag.strip().lower() for tag in self.swing_tags if tag.strip()]
        return self


class BrokerConfig(BaseModel):
    client_api_url: str = "https://mt-client-api-v1.london.agiliumtrade.ai"
    market_data_url: str = "https://mt-market-data-client-api-v1.london.agiliumtrade.ai"
    token: str | None = None
    request_timeout_seconds: float = 15.0
    rate_limit_rps: float = 5.0
    rate_limit_burst: int = 10
    request_max_attempts: int = 4
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0

    @model_validator(mode="after")
    def validate_broker(self) -> "BrokerConfig":
        if self.request_timeout_seconds <= 0:
            raise ValueError("broker.request_timeout_seconds must be > 0")
        if self.rate_limit_rps <= 0 or self.rate_limit_burst <= 0:
            raise ValueError("broker rate limits must be > 0")
        if self.request_max_attempts <= 0:
            raise ValueError("broker.request_max_attempts must be > 0")
        self.client_api_url = self.client_api_url.rstrip("/")
        self.market_data_url = self.market_data_url.rstrip("/")
        return self


class NotificationsConfig(BaseModel):
    webhook_url: str | None = None
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    publish_live_updates: bool = True
    cooldown_seconds: int = 30
    timeout_seconds: float = 10.0


class StorageConfig(BaseModel):
    db_path: str = "autotrader.sqlite3"


class AppConfig(BaseModel):
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    strategy_weights: StrategyWeightsConfig = Field(default_factory=StrategyWeightsConfig)
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)
    strategies: StrategiesConfig = Field(default_factory=StrategiesConfig)
    breakeven: BreakevenConfig = Field(default_factory=BreakevenConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    log_level: str = "INFO"


class BotConfig(BaseModel):
    """Per-robot policy read from storage."""

    allowed_pairs: list[str]
    strategy: str = "confluence"
    signal_policy: str = "confluence"
    timeframe: str | None = None
    min_alignments: int | None = None
    align_with: list[StrategyName] = Field(default_factory=list)
    cooldown_seconds: float = 300.0
    max_lot_size: float = 0.1
    max_positions: int | None = None
    sl_pips: dict[str, float] = Field(default_factory=dict)
    tp_pips: dict[str, float] = Field(default_factory=dict)

    @field_validator("align_with", mode="before")
    @classmethod
    def resolve_aliases(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            value = [item for item in value.split(",") if item.strip()]
        return list(dict.fromkeys(resolve_strategy_name(item) for item in value))

    @model_validator(mode="after")
    def normalize(self) -> "BotConfig":
        self.allowed_pairs = [
            str(pair).strip().upper() for pair in self.allowed_pairs if str(pair).strip()
        ]
        if not self.allowed_pairs:
            raise ValueError("allowed_pairs must not be empty")
        policy = str(self.signal_policy).strip().lower()
        if policy not in {"confluence", "permissive"}:
            raise ValueError("signal_policy must be one of: confluence, permissive")
        self.signal_policy = policy
        if self.timeframe is not None:
            self.timeframe = self.timeframe.strip().upper() or None
        if self.min_alignments is not None and self.min_alignments <= 0:
            raise ValueError("min_alignments must be > 0 when provided")
        if self.align_with and self.min_alignments is not None and self.min_alignments > len(self.align_with):
            raise ValueError("min_alignments cannot exceed the number of align_with strategies")
        if self.cooldown_seconds < 0:
            raise ValueError("cooldown_seconds must be >= 0")
        if self.max_lot_size < 0.01:
            raise ValueError("max_lot_size must be >= 0.01")
        if self.max_positions is not None and self.max_positions <= 0:
            raise ValueError("max_positions must be > 0 when provided")
        self.sl_pips = {str(k).strip().upper(): float(v) for k, v in self.sl_pips.items()}
        self.tp_pips = {str(k).strip().upper(): float(v) for k, v in self.tp_pips.items()}
        for table in (self.sl_pips, self.tp_pips):
            if any(value <= 0 for value in table.values()):
                raise ValueError("sl_pips/tp_pips overrides must be > 0")
        return self

    def required_alignments(self, default_min: int) -> tuple[int, tuple[StrategyName, ...] | None]:
        """Return (minimum agreeing count, named strategies that count or None for any)."""
        if self.align_with:
            if self.min_alignments is not None:
                return self.min_alignments, tuple(self.align_with)
            return min(2, len(self.align_with)), tuple(self.align_with)
        if self.min_alignments is not None:
            return self.min_alignments, None
        return default_min, None


def parse_bot_config(raw: BotConfig | dict[str, Any]) -> BotConfig:
    if isinstance(raw, BotConfig):
        return raw
    if not isinstance(raw, dict):
        raise ConfigurationInvalidError(f"bot config must be a mapping, got {type(raw).__name__}")
    try:
        return BotConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationInvalidError(str(exc)) from exc


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path)
    with config_path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}
    return AppConfig.model_validate(raw)
