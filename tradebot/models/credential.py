"""Credential model: encrypted API keys for the exchange and AI providers."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class Credential(SQLModel, table=True):
    __tablename__ = "credential"

    id: int | None = Field(default=None, primary_key=True)
    service_name: str = Field(index=True)  # "binance", "openai", "openrouter"
    api_key_encrypted: str = ""  # Fernet-encrypted
    api_secret_encrypted: str | None = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
