"""AI decision orchestration: prompt rendering, provider fallback, parsing.

``DecisionOrchestrator.get_decision`` walks the providers in a fixed order
(OpenAI, OpenRouter, Ollama), takes the first non-empty answer, parses it into
BUY / SELL / HOLD / NO_ACTION and records exactly one ``AIDecision`` row per
call, whatever the outcome.
"""

import asyncio
import logging
import re
from dataclasses import asdict, dataclass, field

from tradebot.config import settings
from tradebot.models.ai_decision import AIDecision
from tradebot.schemas.strategy import AIOptions, RiskConfig
from tradebot.services.ai_providers import AIProvider, ProviderOptions, default_providers
from tradebot.services.indicators import Candle, IndicatorSet
from tradebot.utils.constants import (
    ACTIONABLE_DECISIONS,
    SETTING_DEFAULTS,
    TRUTHY,
    VALID_DECISIONS,
)

logger = logging.getLogger(__name__)

NO_PROVIDER_REASON = "No AI provider was enabled or available to make a decision."
NO_JUSTIFICATION_REASON = "The AI response did not contain a clear justification."
INVALID_FORMAT_PREFIX = "The AI returned an invalid or unparseable decision. Original response: "

_DECISION_RE = re.compile(r"DECISION:\s*([A-Z_]+)", re.IGNORECASE)
_REASON_RE = re.compile(r"JUSTIFICA(?:CION|CIÓN|TION):\s*(.+)", re.IGNORECASE | re.DOTALL)


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

@dataclass
class MarketSnapshot:
    interval: str
    last_candle: Candle | None = None
    current_price: float | None = None
    order_book: dict | None = None  # best_bid / best_ask / mid_price

    def to_dict(self) -> dict:
        data = {"interval": self.interval, "current_price": self.current_price}
        if self.last_candle is not None:
            data["last_candle"] = asdict(self.last_candle)
        if self.order_book:
            data["order_book"] = {
                k: self.order_book.get(k) for k in ("best_bid", "best_ask", "mid_price")
            }
        return data


@dataclass
class Position:
    """Base-asset holding; entry price comes from the last recorded entry."""

    quantity: float
    entry_price: float | None = None


@dataclass
class AccountSnapshot:
    quote_asset: str
    available_quote_balance: float | None = None
    position: Position | None = None


@dataclass
class PromptContext:
    symbol: str
    market: MarketSnapshot | None = None
    indicators: IndicatorSet | None = None
    risk: RiskConfig | None = None
    account: AccountSnapshot | None = None
    strategy_hint: str | None = None
    ai_options: AIOptions = field(default_factory=AIOptions)


@dataclass
class ParsedDecision:
    action: str
    reason: str
    valid: bool


@dataclass
class DecisionResult:
    decision: str
    reason: str
    provider: str | None = None
    model: str | None = None
    raw_response: str | None = None
    prompt: str = ""

    @property
    def actionable(self) -> bool:
        return self.decision in ACTIONABLE_DECISIONS


# ---------------------------------------------------------------------------
# Prompt rendering and parsing
# ---------------------------------------------------------------------------

def _fmt(value: float | None, digits: int = 2) -> str:
    return "n/a" if value is None else f"{value:.{digits}f}"


def format_prompt(context: PromptContext) -> str:
    """Render the prompt; sections whose data is absent are left out."""
    lines = [f"Trading analysis for {context.symbol or 'unknown'}:"]

    market = context.market
    if market is not None:
        lines += ["", "--- Market data ---"]
        if market.last_candle is not None:
            c = market.last_candle
            lines.append(
                f"Last candle ({market.interval}): Open={c.open}, High={c.high}, "
                f"Low={c.low}, Close={c.close}, Volume={c.volume}"
            )
        if market.current_price is not None:
            lines.append(f"Current price: {market.current_price}")
        if market.order_book and market.order_book.get("best_bid"):
            lines.append(
                f"Order book: best bid={market.order_book['best_bid']}, "
                f"best ask={market.order_book['best_ask']}"
            )

    if context.indicators is not None:
        ind = context.indicators
        latest = ind.latest()
        lines += ["", "--- Technical indicators ---"]
        if latest["sma"] is not None:
            lines.append(f"SMA({ind.periods.get('sma', '')}): {_fmt(latest['sma'])}")
        if latest["ema"] is not None:
            lines.append(f"EMA({ind.periods.get('ema', '')}): {_fmt(latest['ema'])}")
        if latest["rsi"] is not None:
            lines.append(f"RSI({ind.periods.get('rsi', '')}): {_fmt(latest['rsi'])}")
        if latest["macd"] is not None:
            fast, slow, signal = ind.periods.get("macd", ("", "", ""))
            lines.append(
                f"MACD({fast}, {slow}, {signal}): MACD={_fmt(latest['macd'])}, "
                f"Signal={_fmt(latest['macd_signal'])}, Hist={_fmt(latest['macd_histogram'])}"
            )
        if latest["atr"] is not None:
            lines.append(f"ATR({ind.periods.get('atr', '')}): {_fmt(latest['atr'], 4)}")

    if context.risk is not None:
        lines += ["", "--- Risk parameters ---"]
        lines.append(f"Max loss per trade: {context.risk.max_allowed_loss_per_trade}%")
        lines.append(f"Minimum risk/reward ratio: {context.risk.min_risk_benefit_ratio}")

    account = context.account
    if account is not None:
        lines += ["", "--- Account summary ---"]
        if account.available_quote_balance is not None:
            lines.append(
                f"Available balance ({account.quote_asset}): "
                f"{_fmt(account.available_quote_balance)}"
            )
        if account.position is not None:
            lines.append(
                f"Current position in {context.symbol}: Quantity={account.position.quantity}, "
                f"EntryPrice={_fmt(account.position.entry_price)}"
            )
        else:
            lines.append(f"No open position for {context.symbol}.")

    if context.strategy_hint:
        lines += ["", f"Strategy hint: {context.strategy_hint}"]

    lines += [
        "",
        "--- Question ---",
        "Based on the data above, what is the recommended next trading action "
        "(BUY, SELL, HOLD)? Give a short justification and limit your answer to "
        "the action and the justification.",
        "Answer exactly in this format: DECISION: <ACTION>. JUSTIFICACION: <text>",
        'Example: "DECISION: BUY. JUSTIFICACION: Low RSI and bullish MACD crossover."',
    ]
    return "\n".join(lines)


def parse_decision(raw: str | None) -> ParsedDecision:
    """Extract action and justification; never raises."""
    text = raw or ""
    match = _DECISION_RE.search(text)
    action = match.group(1).upper() if match else None
    reason_match = _REASON_RE.search(text)
    reason = reason_match.group(1).strip() if reason_match else NO_JUSTIFICATION_REASON

    if action not in VALID_DECISIONS:
        return ParsedDecision("NO_ACTION", INVALID_FORMAT_PREFIX + text, valid=False)
    return ParsedDecision(action, reason, valid=True)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class DecisionOrchestrator:
    def __init__(self, store, providers: list[AIProvider] | None = None,
                 timeout: float | None = None):
        self.store = store
        self.providers = providers if providers is not None else default_providers()
        self.timeout = timeout or settings.ai_timeout_seconds

    async def initialize(self):
        """Initialize every provider; failures leave that provider unavailable."""
        for provider in self.providers:
            try:
                await provider.initialize(self.store)
            except Exception as e:
                logger.error(f"[{provider.name}] Initialization failed: {e}", exc_info=True)

    def _load_config(self) -> dict[str, str]:
        try:
            return self.store.get_settings()
        except Exception as e:
            logger.error(f"Could not read AI settings, using defaults: {e}")
            return dict(SETTING_DEFAULTS)

    @staticmethod
    def _model_for(provider: AIProvider, config: dict, options: AIOptions) -> str:
        override = {
            "openai": options.model,
            "openrouter": options.openrouter_model,
            "ollama": options.ollama_model,
        }.get(provider.name)
        return override or config.get(f"{provider.name.upper()}_DEFAULT_MODEL", "")

    async def get_decision(self, context: PromptContext, pair_id: int | None = None) -> DecisionResult:
        config = self._load_config()
        prompt = format_prompt(context)
        logger.debug(f"[{context.symbol}] Prompt:\n{prompt}")

        raw = None
        used: AIProvider | None = None
        model = None
        last_error = None

        for provider in self.providers:
            if config.get(f"{provider.name.upper()}_ENABLED", "false").lower() not in TRUTHY:
                continue
            if not provider.is_available():
                logger.info(f"[{context.symbol}] {provider.name} enabled but unavailable")
                continue
            model = self._model_for(provider, config, context.ai_options)
            options = ProviderOptions(
                model=model,
                temperature=context.ai_options.temperature,
                max_tokens=context.ai_options.max_tokens,
            )
            logger.info(f"[{context.symbol}] Requesting decision from {provider.name} ({model})")
            try:
                response = await asyncio.wait_for(
                    provider.get_decision(prompt, options), timeout=self.timeout
                )
            except asyncio.TimeoutError:
                last_error = f"{provider.name} timed out after {self.timeout}s"
                logger.warning(f"[{context.symbol}] {last_error}")
                continue
            except Exception as e:
                last_error = f"{provider.name} error ({model}): {e}"
                logger.error(f"[{context.symbol}] {last_error}")
                continue
            if response and response.strip():
                raw, used = response, provider
                break
            last_error = f"{provider.name} returned an empty response"
            logger.warning(f"[{context.symbol}] {last_error}")

        if raw is None:
            result = DecisionResult(
                decision="NO_ACTION",
                reason=last_error or NO_PROVIDER_REASON,
                prompt=prompt,
            )
            logger.warning(f"[{context.symbol}] No AI decision: {result.reason}")
        else:
            parsed = parse_decision(raw)
            if not parsed.valid:
                logger.warning(f"[{context.symbol}] Unparseable AI response from {used.name}")
            result = DecisionResult(
                decision=parsed.action,
                reason=parsed.reason,
                provider=used.name,
                model=model,
                raw_response=raw,
                prompt=prompt,
            )
            logger.info(f"[{context.symbol}] {used.name} decided {result.decision}: {result.reason}")

        self._persist(context, pair_id, result)
        return result

    def _persist(self, context: PromptContext, pair_id: int | None, result: DecisionResult):
        try:
            self.store.save_decision(AIDecision(
                pair_id=pair_id,
                decision=result.decision,
                reason=result.reason,
                provider=result.provider,
                model=result.model,
                prompt=result.prompt,
                raw_response=result.raw_response,
                market_data_snapshot=context.market.to_dict() if context.market else None,
                indicators_snapshot=context.indicators.snapshot() if context.indicators else None,
            ))
        except Exception as e:
            logger.error(f"[{context.symbol}] Failed to record AI decision: {e}")
