"""Pydantic schemas for registering trading pairs."""

from pydantic import BaseModel, Field, field_validator, model_validator

from tradebot.schemas.strategy import StrategyConfig


class TradingPairCreate(BaseModel):
    symbol: str = Field(default="", max_length=32)
    base_asset: str = Field(min_length=1, max_length=16)
    quote_asset: str = Field(min_length=1, max_length=16)
    is_active: bool = True
    margin_enabled: bool = False
    margin_is_isolated: bool = False
    price_precision: int = Field(default=2, ge=0, le=18)
    quantity_precision: int = Field(default=6, ge=0, le=18)
    min_trade_size: float = Field(default=0.0, ge=0)
    max_trade_size: float | None = Field(default=None, gt=0)
    tick_size: float | None = Field(default=None, gt=0)
    step_size: float | None = Field(default=None, gt=0)
    strategy_config: StrategyConfig | None = None

    @field_validator("base_asset", "quote_asset", "symbol")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        return value.strip().upper()

    @model_validator(mode="after")
    def _validate_relationships(self):
        if not self.base_asset or not self.quote_asset:
            raise ValueError("base_asset and quote_asset must not be empty")
        if not self.symbol:
            self.symbol = f"{self.base_asset}{self.quote_asset}"
        if self.max_trade_size is not None and self.max_trade_size < self.min_trade_size:
            raise ValueError("max_trade_size must be >= min_trade_size")
        if self.margin_is_isolated and not self.margin_enabled:
            raise ValueError("margin_is_isolated requires margin_enabled")
        return self


class TradingPairRead(BaseModel):
    id: int
    symbol: str
    base_asset: str
    quote_asset: str
    is_active: bool
    margin_enabled: bool
    margin_is_isolated: bool
    min_trade_size: float
    max_trade_size: float | None
    tick_size: float | None
    step_size: float | None

    model_config = {"from_attributes": True}
