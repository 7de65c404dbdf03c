"""JobLog model: per-tick outcome for each instrument."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class JobLog(SQLModel, table=True):
    __tablename__ = "job_log"

    id: int | None = Field(default=None, primary_key=True)
    pair_id: int = Field(foreign_key="trading_pair.id", index=True)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: str  # "success", "error", "skipped"
    action: str | None = None  # e.g. "insufficient_data", "volatility_rejected", "order_submitted"
    decision: str | None = None
    price: float | None = None
    message: str | None = None
    details: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
