"""Shared fixtures: in-memory database, store and encryption key."""

import pytest
from cryptography.fernet import Fernet
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

import tradebot.models  # noqa: F401  registers tables
from tradebot.config import settings
from tradebot.services import encryption
from tradebot.services.store import TradingStore


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(db_engine):
    return TradingStore(db_engine)


@pytest.fixture
def fernet_key(monkeypatch):
    key = Fernet.generate_key().decode()
    monkeypatch.setattr(settings, "encryption_key", key)
    encryption.reset_fernet()
    yield key
    encryption.reset_fernet()
