"""Per-instrument trading cycle.

``PairProcessor.process`` is what the tick controller calls for each active
instrument. It runs:
strategy parse → candles → ticker → indicators → volatility gate → AI decision
→ sizing and risk:reward → entry submission → protective exits → persistence.

Every terminal outcome writes one JobLog row. Unexpected exceptions are caught
at this boundary so one instrument never breaks the pass for the others.
"""

import logging
from dataclasses import dataclass

from pydantic import ValidationError

from tradebot.engine.order_planner import (
    OrderPlan,
    PlanRejected,
    build_exit_protection,
    held_quantity,
    plan_order,
)
from tradebot.models.trading_pair import TradingPair
from tradebot.models.transaction import Transaction
from tradebot.schemas.strategy import StrategyConfig, parse_strategy_config
from tradebot.services.ai_orchestrator import (
    AccountSnapshot,
    DecisionOrchestrator,
    MarketSnapshot,
    Position,
    PromptContext,
)
from tradebot.services.exchange import BinanceExchange, OrderResult
from tradebot.services.indicators import IndicatorSet, compute_indicator_set
from tradebot.services.market_data import BinanceMarketData

logger = logging.getLogger(__name__)


@dataclass
class CycleOutcome:
    status: str  # "success", "skipped", "error"
    action: str
    message: str = ""
    decision: str | None = None


class PairProcessor:
    def __init__(
        self,
        market_data: BinanceMarketData,
        exchange: BinanceExchange,
        orchestrator: DecisionOrchestrator,
        store,
    ):
        self.market_data = market_data
        self.exchange = exchange
        self.orchestrator = orchestrator
        self.store = store

    async def process(self, pair: TradingPair) -> CycleOutcome:
        """Run one cycle for ``pair``; never raises."""
        try:
            return await self._process_once(pair)
        except Exception as e:
            logger.error(f"[{pair.symbol}] Cycle error: {e}", exc_info=True)
            return self._finish(pair, "error", "cycle_error", str(e))

    def _finish(self, pair: TradingPair, status: str, action: str, message: str = "",
                decision: str | None = None, price: float | None = None,
                details: dict | None = None) -> CycleOutcome:
        self.store.log_cycle(
            pair.id, status, action=action, message=message,
            decision=decision, price=price, details=details,
        )
        return CycleOutcome(status, action, message, decision)

    async def _process_once(self, pair: TradingPair) -> CycleOutcome:
        symbol = pair.symbol
        logger.info(f"[{symbol}] Starting cycle")

        # Step 1: Strategy configuration
        try:
            strategy = parse_strategy_config(pair.strategy_config)
        except ValidationError as e:
            logger.error(f"[{symbol}] Invalid strategy config: {e}")
            return self._finish(pair, "error", "invalid_strategy_config", str(e))

        # Step 2: Data sufficiency
        candles = await self.market_data.get_candles(
            symbol, strategy.klines_interval, strategy.klines_limit
        )
        if len(candles) < strategy.klines_limit:
            msg = f"Insufficient candles: {len(candles)}/{strategy.klines_limit}"
            logger.warning(f"[{symbol}] {msg}")
            return self._finish(pair, "skipped", "insufficient_data", msg,
                                details={"candles": len(candles), "required": strategy.klines_limit})

        price = await self.market_data.get_ticker(symbol)
        if not price or price <= 0:
            logger.warning(f"[{symbol}] No usable ticker price: {price}")
            return self._finish(pair, "skipped", "no_price", f"Ticker price unavailable: {price}")

        order_book = None
        try:
            order_book = await self.market_data.get_order_book(symbol)
        except Exception as e:
            logger.warning(f"[{symbol}] Order book unavailable: {e}")

        # Step 3: Indicators
        indicators = self._compute_indicators(candles, strategy)
        missing = indicators.insufficient()
        if missing:
            msg = f"Insufficient data for indicators: {', '.join(missing)}"
            logger.warning(f"[{symbol}] {msg}")
            return self._finish(pair, "skipped", "insufficient_data", msg, price=price,
                                details={"missing": missing, "candles": len(candles)})

        latest = indicators.latest()
        logger.info(
            f"[{symbol}] price={price} sma={latest['sma']} ema={latest['ema']} "
            f"rsi={latest['rsi']} atr={latest['atr']}"
        )

        # Step 4: Volatility gate
        if strategy.risk.use_volatility_check:
            atr_value = latest["atr"]
            if atr_value is None:
                return self._finish(pair, "skipped", "volatility_unavailable",
                                    "ATR unavailable for volatility check", price=price)
            atr_pct = atr_value / price * 100
            limit = strategy.risk.max_allowed_atr_percentage_of_price
            if atr_pct > limit:
                msg = f"ATR {atr_pct:.2f}% of price exceeds {limit}%"
                logger.info(f"[{symbol}] Volatility gate: {msg}")
                return self._finish(pair, "skipped", "volatility_rejected", msg, price=price,
                                    details={"atr": atr_value, "atr_pct": atr_pct, "max_pct": limit})

        # Step 5: AI decision
        context = PromptContext(
            symbol=symbol,
            market=MarketSnapshot(
                interval=strategy.klines_interval,
                last_candle=candles[-1],
                current_price=price,
                order_book=order_book,
            ),
            indicators=indicators,
            risk=strategy.risk,
            account=await self._account_snapshot(pair),
            strategy_hint=strategy.strategy_hint,
            ai_options=strategy.ai_options,
        )
        decision = await self.orchestrator.get_decision(context, pair.id)
        if not decision.actionable:
            return self._finish(pair, "skipped", "no_trade", decision.reason,
                                decision=decision.decision, price=price)

        # Step 6: Sizing, pricing and risk:reward
        try:
            plan = plan_order(pair, decision.decision, price, strategy)
        except PlanRejected as e:
            logger.info(f"[{symbol}] Trade rejected ({e.action}): {e.message}")
            return self._finish(pair, "skipped", e.action, e.message,
                                decision=decision.decision, price=price, details=e.details)

        # Step 7: Submission
        return await self._execute(pair, plan, strategy, decision.decision, price)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _compute_indicators(candles, strategy: StrategyConfig) -> IndicatorSet:
        cfg = strategy.indicators
        macd = (cfg.macd.fast, cfg.macd.slow, cfg.macd.signal) if cfg.macd else None
        atr_period = strategy.risk.atr_period if strategy.risk.use_volatility_check else None
        return compute_indicator_set(
            candles,
            sma_period=cfg.sma_period,
            ema_period=cfg.ema_period,
            rsi_period=cfg.rsi_period,
            macd_periods=macd,
            atr_period=atr_period,
        )

    async def _account_snapshot(self, pair: TradingPair) -> AccountSnapshot | None:
        margin = pair.margin_enabled and not pair.margin_is_isolated
        try:
            balance = await self.exchange.get_free_balance(pair.quote_asset, margin=margin)
        except Exception as e:
            logger.warning(f"[{pair.symbol}] Balance lookup failed: {e}")
            return None
        return AccountSnapshot(
            quote_asset=pair.quote_asset,
            available_quote_balance=balance,
            position=await self._position(pair, margin),
        )

    async def _position(self, pair: TradingPair, margin: bool) -> Position | None:
        """Base-asset holding of at least the minimum trade size, if any."""
        try:
            held = await self.exchange.get_held_balance(pair.base_asset, margin=margin)
        except Exception as e:
            logger.warning(f"[{pair.symbol}] Position lookup failed: {e}")
            return None
        if not held or held < (pair.min_trade_size or 0):
            return None
        entry = self.store.last_entry(pair.id)
        return Position(quantity=held, entry_price=entry.price if entry else None)

    async def _submit_entry(self, pair: TradingPair, plan: OrderPlan,
                            strategy: StrategyConfig) -> OrderResult:
        if plan.mode == "MARGIN":
            return await self.exchange.submit_margin_order(
                plan.symbol, plan.side, plan.order_type, plan.quantity,
                price=plan.price, stop_price=plan.stop_price,
                is_isolated=pair.margin_is_isolated,
                side_effect_type=strategy.margin_side_effect,
            )
        return await self.exchange.submit_spot_order(
            plan.symbol, plan.side, plan.order_type, plan.quantity,
            price=plan.price, stop_price=plan.stop_price,
        )

    async def _execute(self, pair: TradingPair, plan: OrderPlan, strategy: StrategyConfig,
                       decision: str, price: float) -> CycleOutcome:
        symbol = pair.symbol
        logger.info(
            f"[{symbol}] Submitting {plan.mode} {plan.side} {plan.order_type} "
            f"qty={plan.quantity} price={plan.price} stop={plan.stop_price}"
        )
        result = await self._submit_entry(pair, plan, strategy)
        order_details = {"entry": _result_details(result)}
        if not result.success:
            logger.error(f"[{symbol}] Entry order failed: {result.error}")
            return self._finish(pair, "error", "order_failed", result.error or "unknown error",
                                decision=decision, price=price, details=order_details)

        self._record_transaction(pair, plan.side, plan.order_type, plan.mode, "entry",
                                 plan.quantity, result, plan.price or plan.entry_reference)

        exit_note = await self._place_protection(pair, plan, strategy, result, order_details)
        message = f"{plan.side} {plan.quantity} {symbol} ({plan.order_type}) id={result.order_id}"
        if exit_note:
            message = f"{message}; {exit_note}"
        return self._finish(pair, "success", "order_submitted", message,
                            decision=decision, price=price, details=order_details)

    async def _place_protection(self, pair: TradingPair, plan: OrderPlan, strategy: StrategyConfig,
                                entry: OrderResult, order_details: dict) -> str:
        """Place exit orders for a filled entry; returns a short note for the log.

        Exits are re-sized from what the fill left in the account and anchored
        on the fill price rather than the planned entry.
        """
        symbol = pair.symbol
        if plan.exit_bracket is None and plan.exit_order is None:
            return ""
        if not entry.is_filled:
            logger.info(f"[{symbol}] Entry status {entry.status}; exit protection deferred")
            return f"exit protection deferred (entry {entry.status})"

        quantity = held_quantity(
            entry.executed_qty if entry.executed_qty is not None else plan.quantity,
            entry.fills, pair.base_asset, pair.step_size, pair.quantity_precision,
        )
        if quantity <= 0:
            logger.warning(f"[{symbol}] Nothing left to protect after fees")
            return "exit protection skipped (no quantity after fees)"
        anchor = entry.fill_price or plan.entry_reference
        bracket, exit_order = build_exit_protection(
            plan.side, quantity, anchor, strategy.order_strategy,
            pair.tick_size, pair.price_precision,
        )
        if quantity != plan.quantity:
            logger.info(f"[{symbol}] Exit quantity {quantity} (planned {plan.quantity})")

        margin = plan.mode == "MARGIN"
        if bracket is not None:
            result = await self.exchange.submit_bracket_order(
                symbol, bracket.side, bracket.quantity,
                take_profit_price=bracket.take_profit_price,
                stop_price=bracket.stop_price,
                stop_limit_price=bracket.stop_limit_price,
                margin=margin, is_isolated=pair.margin_is_isolated,
            )
            order_details["exit"] = _result_details(result)
            if not result.success:
                logger.error(f"[{symbol}] OCO exit failed: {result.error}")
                return f"OCO exit failed: {result.error}"
            self._record_transaction(pair, bracket.side, "OCO", plan.mode, "exit_bracket",
                                     bracket.quantity, result, bracket.take_profit_price)
            return f"OCO exit id={result.order_id}"

        cfg_note = ""
        if exit_order.order_type == "STOP_LOSS_LIMIT" and strategy.order_strategy.take_profit_active:
            logger.warning(f"[{symbol}] Take profit needs OCO; placing stop loss only")
            cfg_note = " (take profit not placed)"
        if margin:
            result = await self.exchange.submit_margin_order(
                symbol, exit_order.side, exit_order.order_type, exit_order.quantity,
                price=exit_order.price, stop_price=exit_order.stop_price,
                is_isolated=pair.margin_is_isolated,
            )
        else:
            result = await self.exchange.submit_spot_order(
                symbol, exit_order.side, exit_order.order_type, exit_order.quantity,
                price=exit_order.price, stop_price=exit_order.stop_price,
            )
        order_details["exit"] = _result_details(result)
        if not result.success:
            logger.error(f"[{symbol}] {exit_order.order_type} exit failed: {result.error}")
            return f"{exit_order.order_type} exit failed: {result.error}"
        purpose = "exit_stop" if exit_order.order_type == "STOP_LOSS_LIMIT" else "exit_take_profit"
        self._record_transaction(pair, exit_order.side, exit_order.order_type, plan.mode,
                                 purpose, exit_order.quantity, result, exit_order.price)
        return f"{exit_order.order_type} exit id={result.order_id}{cfg_note}"

    def _record_transaction(self, pair, side, order_type, mode, purpose, quantity,
                            result: OrderResult, fallback_price):
        price = result.fill_price or float(fallback_price or 0)
        qty = float(result.executed_qty or quantity)
        try:
            self.store.save_transaction(Transaction(
                pair_id=pair.id,
                exchange_order_id=result.order_id,
                client_order_id=result.client_order_id,
                side=side,
                order_type=order_type,
                mode=mode,
                purpose=purpose,
                price=price,
                quantity=qty,
                total_value=result.cumulative_quote_qty or price * qty,
                status=result.status,
            ))
        except Exception as e:
            logger.error(f"[{pair.symbol}] Failed to record transaction {result.order_id}: {e}")


def _result_details(result: OrderResult) -> dict:
    return {
        "success": result.success,
        "order_id": result.order_id,
        "status": result.status,
        "price": result.price,
        "executed_qty": result.executed_qty,
        "error": result.error,
    }
