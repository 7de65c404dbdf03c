"""TradingPair model: one tradable instrument and its exchange filters."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON
from sqlmodel import SQLModel, Field, Column


class TradingPair(SQLModel, table=True):
    __tablename__ = "trading_pair"

    id: int | None = Field(default=None, primary_key=True)
    symbol: str = Field(index=True, unique=True)  # e.g. "BTCUSDT"
    base_asset: str
    quote_asset: str
    is_active: bool = True

    # Margin routing
    margin_enabled: bool = False
    margin_is_isolated: bool = False

    # Exchange filters (LOT_SIZE / PRICE_FILTER)
    price_precision: int = 2
    quantity_precision: int = 6
    min_trade_size: float = 0.0
    max_trade_size: float | None = None  # None = unbounded
    tick_size: float | None = None  # None = round to price_precision decimals
    step_size: float | None = None  # None = floor to quantity_precision decimals

    # Parsed by tradebot.schemas.strategy.StrategyConfig; None = all defaults
    strategy_config: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
