"""AIDecision model: append-only record of every recommendation requested."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Text
from sqlmodel import SQLModel, Field, Column


class AIDecision(SQLModel, table=True):
    __tablename__ = "ai_decision"

    id: int | None = Field(default=None, primary_key=True)
    pair_id: int | None = Field(default=None, foreign_key="trading_pair.id", index=True)
    decision: str  # "BUY", "SELL", "HOLD", "NO_ACTION"
    reason: str | None = Field(default=None, sa_column=Column(Text))
    provider: str | None = None  # None when every provider failed
    model: str | None = None
    prompt: str | None = Field(default=None, sa_column=Column(Text))
    raw_response: str | None = Field(default=None, sa_column=Column(Text))
    market_data_snapshot: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    indicators_snapshot: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
