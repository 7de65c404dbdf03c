"""Tests for prompt rendering, response parsing and provider fallback."""

import asyncio
from unittest.mock import MagicMock

import pytest

from tradebot.models.ai_decision import AIDecision
from tradebot.schemas.strategy import AIOptions, RiskConfig
from tradebot.services.ai_orchestrator import (
    INVALID_FORMAT_PREFIX,
    NO_JUSTIFICATION_REASON,
    NO_PROVIDER_REASON,
    AccountSnapshot,
    DecisionOrchestrator,
    DecisionResult,
    MarketSnapshot,
    Position,
    PromptContext,
    format_prompt,
    parse_decision,
)
from tradebot.services.ai_providers import AIProvider, ProviderError
from tradebot.services.indicators import compute_indicator_set
from tradebot.utils.constants import SETTING_DEFAULTS

from factories import calm_closes, make_candles


class FakeProvider(AIProvider):
    """Provider double that records calls and replays a canned outcome."""

    def __init__(self, name, response=None, error=None, available=True, delay=0.0):
        super().__init__(timeout=1)
        self.name = name
        self.response = response
        self.error = error
        self.delay = delay
        self._available = available
        self.calls = []

    async def initialize(self, store=None) -> bool:
        return self._available

    async def get_decision(self, prompt, options):
        self.calls.append(options.model)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.response


def _store(overrides=None):
    store = MagicMock()
    values = dict(SETTING_DEFAULTS)
    values.update(overrides or {})
    store.get_settings.return_value = values
    return store


def _context(**kwargs):
    return PromptContext(symbol="BTCUSDT", **kwargs)


# ---------------------------------------------------------------------------
# 1. Parsing
# ---------------------------------------------------------------------------

class TestParseDecision:
    def test_well_formed(self):
        parsed = parse_decision("DECISION: BUY. JUSTIFICACION: RSI oversold.")
        assert parsed.action == "BUY"
        assert parsed.reason == "RSI oversold."
        assert parsed.valid

    def test_case_insensitive(self):
        parsed = parse_decision("decision: sell. justificacion: overbought")
        assert parsed.action == "SELL"
        assert parsed.reason == "overbought"

    def test_missing_token_is_no_action_with_raw_text(self):
        raw = "I would probably buy here."
        parsed = parse_decision(raw)
        assert parsed.action == "NO_ACTION"
        assert not parsed.valid
        assert parsed.reason.startswith(INVALID_FORMAT_PREFIX)
        assert raw in parsed.reason

    def test_unknown_action_is_no_action(self):
        parsed = parse_decision("DECISION: MAYBE. JUSTIFICACION: unsure")
        assert parsed.action == "NO_ACTION"
        assert not parsed.valid

    def test_missing_justification(self):
        parsed = parse_decision("DECISION: HOLD.")
        assert parsed.action == "HOLD"
        assert parsed.reason == NO_JUSTIFICATION_REASON

    def test_no_action_token_accepted(self):
        assert parse_decision("DECISION: NO_ACTION. JUSTIFICACION: flat").action == "NO_ACTION"

    def test_none_input(self):
        assert parse_decision(None).action == "NO_ACTION"


# ---------------------------------------------------------------------------
# 2. Prompt rendering
# ---------------------------------------------------------------------------

class TestFormatPrompt:
    def test_minimal_context_omits_sections(self):
        prompt = format_prompt(_context())
        assert "BTCUSDT" in prompt
        assert "Market data" not in prompt
        assert "Technical indicators" not in prompt
        assert "Risk parameters" not in prompt
        assert "Account summary" not in prompt
        assert "DECISION: <ACTION>. JUSTIFICACION: <text>" in prompt

    def test_full_context(self):
        candles = make_candles(calm_closes(60))
        ind = compute_indicator_set(candles, sma_period=20, rsi_period=14,
                                    macd_periods=(12, 26, 9), atr_period=14)
        prompt = format_prompt(_context(
            market=MarketSnapshot(interval="1h", last_candle=candles[-1], current_price=100.4),
            indicators=ind,
            risk=RiskConfig(),
            account=AccountSnapshot(quote_asset="USDT", available_quote_balance=250.0),
            strategy_hint="swing",
        ))
        assert "Last candle (1h)" in prompt
        assert "Current price: 100.4" in prompt
        assert "SMA(20)" in prompt
        assert "EMA" not in prompt
        assert "MACD(12, 26, 9)" in prompt
        assert "Max loss per trade: 2.0%" in prompt
        assert "Available balance (USDT): 250.00" in prompt
        assert "No open position for BTCUSDT." in prompt
        assert "Strategy hint: swing" in prompt

    def test_open_position_line(self):
        account = AccountSnapshot(quote_asset="USDT", available_quote_balance=None,
                                  position=Position(quantity=0.5, entry_price=101.5))
        prompt = format_prompt(_context(account=account))
        assert "Available balance" not in prompt
        assert "Current position in BTCUSDT: Quantity=0.5, EntryPrice=101.50" in prompt
        assert "No open position" not in prompt


@pytest.mark.parametrize("decision, actionable", [
    ("BUY", True), ("SELL", True), ("HOLD", False), ("NO_ACTION", False),
])
def test_decision_actionable(decision, actionable):
    assert DecisionResult(decision=decision, reason="").actionable is actionable


# ---------------------------------------------------------------------------
# 3. Fallback chain
# ---------------------------------------------------------------------------

def _all_enabled():
    return {"OPENAI_ENABLED": "true", "OPENROUTER_ENABLED": "true", "OLLAMA_ENABLED": "true"}


@pytest.mark.asyncio
async def test_first_provider_wins():
    openai = FakeProvider("openai", response="DECISION: BUY. JUSTIFICACION: trend")
    ollama = FakeProvider("ollama", response="DECISION: SELL. JUSTIFICACION: x")
    store = _store()
    orch = DecisionOrchestrator(store, providers=[openai, ollama])

    result = await orch.get_decision(_context(), pair_id=7)

    assert result.decision == "BUY"
    assert result.provider == "openai"
    assert result.model == "gpt-3.5-turbo"
    assert ollama.calls == []
    store.save_decision.assert_called_once()
    saved = store.save_decision.call_args.args[0]
    assert isinstance(saved, AIDecision)
    assert saved.pair_id == 7
    assert saved.decision == "BUY"


@pytest.mark.asyncio
async def test_falls_back_in_order_after_error_and_empty():
    openai = FakeProvider("openai", error=ProviderError("HTTP 500"))
    openrouter = FakeProvider("openrouter", response="   ")
    ollama = FakeProvider("ollama", response="DECISION: HOLD. JUSTIFICACION: range")
    orch = DecisionOrchestrator(_store(_all_enabled()), providers=[openai, openrouter, ollama])

    result = await orch.get_decision(_context())

    assert [len(p.calls) for p in (openai, openrouter, ollama)] == [1, 1, 1]
    assert result.provider == "ollama"
    assert result.model == "gemma:2b"
    assert result.decision == "HOLD"
    assert result.reason == "range"


@pytest.mark.asyncio
async def test_disabled_and_unavailable_providers_are_skipped():
    openai = FakeProvider("openai", response="DECISION: BUY. JUSTIFICACION: a")
    openrouter = FakeProvider("openrouter", response="DECISION: SELL. JUSTIFICACION: b",
                              available=False)
    ollama = FakeProvider("ollama", response="DECISION: HOLD. JUSTIFICACION: c")
    store = _store({"OPENAI_ENABLED": "false", "OPENROUTER_ENABLED": "true"})
    orch = DecisionOrchestrator(store, providers=[openai, openrouter, ollama])

    result = await orch.get_decision(_context())

    assert openai.calls == [] and openrouter.calls == []
    assert result.provider == "ollama"


@pytest.mark.asyncio
async def test_exhausted_chain_uses_last_error():
    openai = FakeProvider("openai", error=ProviderError("HTTP 401"))
    ollama = FakeProvider("ollama", error=ProviderError("connection refused"))
    store = _store()
    orch = DecisionOrchestrator(store, providers=[openai, ollama])

    result = await orch.get_decision(_context(), pair_id=1)

    assert result.decision == "NO_ACTION"
    assert "connection refused" in result.reason
    assert result.provider is None
    assert result.raw_response is None
    store.save_decision.assert_called_once()


@pytest.mark.asyncio
async def test_nothing_enabled():
    store = _store({"OPENAI_ENABLED": "false", "OLLAMA_ENABLED": "false"})
    orch = DecisionOrchestrator(store, providers=[FakeProvider("openai"), FakeProvider("ollama")])

    result = await orch.get_decision(_context())

    assert result.decision == "NO_ACTION"
    assert result.reason == NO_PROVIDER_REASON
    store.save_decision.assert_called_once()


@pytest.mark.asyncio
async def test_timeout_advances_chain():
    slow = FakeProvider("openai", response="DECISION: BUY. JUSTIFICACION: late", delay=1.0)
    ollama = FakeProvider("ollama", response="DECISION: SELL. JUSTIFICACION: quick")
    orch = DecisionOrchestrator(_store(), providers=[slow, ollama], timeout=0.05)

    result = await orch.get_decision(_context())

    assert result.provider == "ollama"
    assert result.decision == "SELL"


@pytest.mark.asyncio
async def test_model_override_from_ai_options():
    openai = FakeProvider("openai", response="DECISION: HOLD. JUSTIFICACION: x")
    orch = DecisionOrchestrator(_store(), providers=[openai])

    await orch.get_decision(_context(ai_options=AIOptions(model="gpt-4o-mini")))

    assert openai.calls == ["gpt-4o-mini"]


@pytest.mark.asyncio
async def test_settings_failure_uses_defaults():
    store = MagicMock()
    store.get_settings.side_effect = RuntimeError("db down")
    openrouter = FakeProvider("openrouter", response="DECISION: BUY. JUSTIFICACION: x")
    ollama = FakeProvider("ollama", response="DECISION: SELL. JUSTIFICACION: y")
    orch = DecisionOrchestrator(store, providers=[openrouter, ollama])

    result = await orch.get_decision(_context())

    # OpenRouter is off by default
    assert openrouter.calls == []
    assert result.provider == "ollama"


@pytest.mark.asyncio
async def test_persistence_failure_is_not_raised(caplog):
    store = _store()
    store.save_decision.side_effect = RuntimeError("disk full")
    orch = DecisionOrchestrator(
        store, providers=[FakeProvider("openai", response="DECISION: BUY. JUSTIFICACION: x")]
    )

    result = await orch.get_decision(_context())

    assert result.decision == "BUY"
    assert "Failed to record AI decision" in caplog.text


@pytest.mark.asyncio
async def test_unparseable_response_is_recorded_as_no_action():
    store = _store()
    orch = DecisionOrchestrator(store, providers=[FakeProvider("openai", response="buy it all")])

    result = await orch.get_decision(_context())

    assert result.decision == "NO_ACTION"
    assert result.provider == "openai"
    assert "buy it all" in result.reason
    saved = store.save_decision.call_args.args[0]
    assert saved.raw_response == "buy it all"
