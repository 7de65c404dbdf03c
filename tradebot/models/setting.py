"""Setting model: runtime key/value flags such as provider toggles."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class Setting(SQLModel, table=True):
    __tablename__ = "setting"

    key: str = Field(primary_key=True)
    value: str
    description: str | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
