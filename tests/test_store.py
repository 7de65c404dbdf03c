"""Tests for the persistence and configuration store."""

from sqlmodel import Session, select

from tradebot.models.ai_decision import AIDecision
from tradebot.models.credential import Credential
from tradebot.models.job_log import JobLog
from tradebot.models.transaction import Transaction
from tradebot.services.store import TradingStore
from tradebot.utils.constants import SETTING_DEFAULTS

from factories import make_pair


def test_active_pairs_and_lookup(store):
    store.add_pair(make_pair(id=None, symbol="BTCUSDT"))
    store.add_pair(make_pair(id=None, symbol="ETHUSDT", base_asset="ETH", is_active=False))

    active = store.list_active_pairs()

    assert [p.symbol for p in active] == ["BTCUSDT"]
    assert store.get_pair(active[0].id).symbol == "BTCUSDT"
    assert store.get_pair(999) is None


def test_settings_defaults_and_override(store):
    assert store.get_settings() == SETTING_DEFAULTS

    store.set_setting("OPENROUTER_ENABLED", "true")
    store.set_setting("OPENROUTER_ENABLED", "false", description="toggle")

    values = store.get_settings()
    assert values["OPENROUTER_ENABLED"] == "false"
    assert values["OLLAMA_DEFAULT_MODEL"] == "gemma:2b"


def test_credentials_are_encrypted(store, db_engine, fernet_key):
    store.set_credential("binance", "old-key", "old-secret")
    store.set_credential("binance", "my-key", "my-secret")

    assert store.get_credential("binance") == ("my-key", "my-secret")
    assert store.get_credential("openai") is None
    with Session(db_engine) as session:
        rows = session.exec(select(Credential)).all()
    assert len(rows) == 2
    assert sum(r.is_active for r in rows) == 1
    assert all("my-key" not in r.api_key_encrypted for r in rows)


def test_append_only_records(store, db_engine):
    pair = store.add_pair(make_pair(id=None))
    store.save_decision(AIDecision(pair_id=pair.id, decision="BUY", reason="x",
                                   indicators_snapshot={"latest": {"rsi": 30.0}}))
    store.save_transaction(Transaction(pair_id=pair.id, side="BUY", order_type="MARKET",
                                       price=100.0, quantity=1.0, total_value=100.0))
    store.log_cycle(pair.id, "skipped", action="insufficient_data", details={"candles": 3})

    with Session(db_engine) as session:
        decision = session.exec(select(AIDecision)).one()
        log = session.exec(select(JobLog)).one()
        assert session.exec(select(Transaction)).one().total_value == 100.0
    assert decision.indicators_snapshot["latest"]["rsi"] == 30.0
    assert log.details == {"candles": 3}


def test_last_entry_ignores_exit_orders(store):
    pair = store.add_pair(make_pair(id=None))
    assert store.last_entry(pair.id) is None

    for purpose, price in [("entry", 100.0), ("entry", 101.0), ("exit_stop", 99.0)]:
        store.save_transaction(Transaction(pair_id=pair.id, side="BUY", order_type="MARKET",
                                           purpose=purpose, price=price, quantity=1.0))

    assert store.last_entry(pair.id).price == 101.0


def test_log_cycle_swallows_errors(caplog):
    broken = TradingStore(engine=object())
    broken.log_cycle(1, "error", message="x")
    assert "Failed to write job log" in caplog.text
