"""Transaction model: one row per order accepted by the exchange."""

from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class Transaction(SQLModel, table=True):
    __tablename__ = "transaction_record"

    id: int | None = Field(default=None, primary_key=True)
    pair_id: int = Field(foreign_key="trading_pair.id", index=True)
    exchange_order_id: str | None = Field(default=None, index=True)
    client_order_id: str | None = None
    side: str  # "BUY" or "SELL"
    order_type: str  # "MARKET", "LIMIT", "STOP_LOSS_LIMIT", "OCO", ...
    mode: str = "SPOT"  # "SPOT" or "MARGIN"
    purpose: str = "entry"  # "entry", "exit_bracket", "exit_stop", "exit_take_profit"
    price: float = 0.0
    quantity: float = 0.0
    total_value: float = 0.0
    status: str | None = None
    executed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
