"""Typed per-instrument strategy configuration.

Stored as JSON on ``TradingPair.strategy_config``. Every field has a default,
so an empty or missing blob yields the stock strategy; unknown keys are
rejected so typos surface as validation errors instead of silent defaults.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tradebot.utils.constants import ORDER_TYPES, VALID_INTERVALS


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class MACDConfig(_Strict):
    fast: int = Field(default=12, ge=1)
    slow: int = Field(default=26, ge=2)
    signal: int = Field(default=9, ge=1)

    @model_validator(mode="after")
    def _validate_periods(self):
        if self.fast >= self.slow:
            raise ValueError("macd fast period must be shorter than slow period")
        return self


class IndicatorConfig(_Strict):
    """Indicators to compute; ``None`` disables one."""

    sma_period: int | None = Field(default=20, ge=1)
    ema_period: int | None = Field(default=50, ge=1)
    rsi_period: int | None = Field(default=14, ge=1)
    macd: MACDConfig | None = Field(default_factory=MACDConfig)


class RiskConfig(_Strict):
    max_allowed_loss_per_trade: float = Field(default=2.0, ge=0)  # percent of balance
    min_risk_benefit_ratio: float = Field(default=1.5, ge=0)
    default_trade_amount_usd: float = Field(default=100.0, gt=0)
    use_volatility_check: bool = True
    atr_period: int = Field(default=14, ge=1)
    max_allowed_atr_percentage_of_price: float = Field(default=3.0, gt=0)


class OrderStrategyConfig(_Strict):
    default_order_type: str = "MARKET"
    limit_order_offset_percentage: float = Field(default=0.1, ge=0)
    use_oco: bool = False
    use_stop_loss: bool = True
    stop_loss_percentage: float = Field(default=1.5, ge=0)
    stop_loss_limit_offset_percentage: float = Field(default=0.05, ge=0)
    use_take_profit: bool = True
    take_profit_percentage: float = Field(default=3.0, ge=0)
    take_profit_limit_offset_percentage: float = Field(default=0.05, ge=0)

    @field_validator("default_order_type")
    @classmethod
    def _validate_order_type(cls, value: str) -> str:
        value = value.strip().upper()
        if value not in ORDER_TYPES:
            raise ValueError(f"must be one of: {', '.join(ORDER_TYPES)}")
        return value

    @property
    def stop_loss_active(self) -> bool:
        return self.use_stop_loss and self.stop_loss_percentage > 0

    @property
    def take_profit_active(self) -> bool:
        return self.use_take_profit and self.take_profit_percentage > 0


class AIOptions(_Strict):
    model: str | None = None  # OpenAI model override
    openrouter_model: str | None = None
    ollama_model: str | None = None
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=500, ge=1)


class StrategyConfig(_Strict):
    klines_interval: str = "1h"
    klines_limit: int = Field(default=100, ge=2, le=1000)
    indicators: IndicatorConfig = Field(default_factory=IndicatorConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    order_strategy: OrderStrategyConfig = Field(default_factory=OrderStrategyConfig)
    ai_options: AIOptions = Field(default_factory=AIOptions)
    strategy_hint: str | None = None
    margin_side_effect: str | None = None  # e.g. "MARGIN_BUY", "AUTO_REPAY"

    @field_validator("klines_interval")
    @classmethod
    def _validate_interval(cls, value: str) -> str:
        if value not in VALID_INTERVALS:
            raise ValueError(f"must be one of: {', '.join(VALID_INTERVALS)}")
        return value


def parse_strategy_config(raw: dict | None) -> StrategyConfig:
    """Build a StrategyConfig from a stored JSON blob (``None`` = defaults)."""
    return StrategyConfig.model_validate(raw or {})
