"""Order sizing, price normalization and risk:reward checks.

Pure Decimal arithmetic, no I/O. ``plan_order`` either returns a fully
normalized ``OrderPlan`` or raises ``PlanRejected`` carrying the gate that
failed and the numbers behind it.
"""

from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

from tradebot.schemas.strategy import OrderStrategyConfig, StrategyConfig

HUNDRED = Decimal("100")


class PlanRejected(Exception):
    """A sizing or risk gate refused the trade."""

    def __init__(self, action: str, message: str, details: dict | None = None):
        super().__init__(message)
        self.action = action
        self.message = message
        self.details = details or {}


@dataclass
class BracketPlan:
    """OCO exit: take-profit limit leg plus stop-limit leg."""

    side: str
    quantity: Decimal
    take_profit_price: Decimal
    stop_price: Decimal
    stop_limit_price: Decimal


@dataclass
class ExitOrderPlan:
    """Single protective exit (STOP_LOSS_LIMIT or TAKE_PROFIT_LIMIT)."""

    side: str
    order_type: str
    quantity: Decimal
    price: Decimal
    stop_price: Decimal


@dataclass
class OrderPlan:
    symbol: str
    side: str
    order_type: str
    quantity: Decimal
    price: Decimal | None
    stop_price: Decimal | None
    mode: str  # "SPOT" or "MARGIN"
    entry_reference: Decimal
    exit_bracket: BracketPlan | None = None
    exit_order: ExitOrderPlan | None = None
    risk_reward: Decimal | None = None


# ---------------------------------------------------------------------------
# Rounding
# ---------------------------------------------------------------------------

def to_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def floor_to_step(quantity, step=None, precision: int = 8) -> Decimal:
    """Largest multiple of ``step`` not above ``quantity``.

    Without a step the quantity is truncated to ``precision`` decimals.
    """
    qty = to_decimal(quantity)
    if step:
        step = to_decimal(step)
        if step > 0:
            return ((qty / step).to_integral_value(rounding=ROUND_DOWN) * step).quantize(step)
    return qty.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_DOWN)


def round_to_tick(price, tick=None, precision: int = 8) -> Decimal:
    """Nearest multiple of ``tick`` (half up), else ``precision`` decimals."""
    p = to_decimal(price)
    if tick:
        tick = to_decimal(tick)
        if tick > 0:
            return ((p / tick).to_integral_value(rounding=ROUND_HALF_UP) * tick).quantize(tick)
    return p.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)


def _pct(value: float) -> Decimal:
    return to_decimal(value) / HUNDRED


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------

def derive_quantity(
    amount_quote,
    price,
    step=None,
    precision: int = 8,
    min_size=0,
    max_size=None,
) -> Decimal:
    """Quote amount converted to base quantity, floored, then bounds-checked."""
    price = to_decimal(price)
    if price <= 0:
        raise PlanRejected("invalid_price", f"Price must be positive, got {price}")
    raw = to_decimal(amount_quote) / price
    qty = floor_to_step(raw, step, precision)
    details = {"raw_quantity": str(raw), "quantity": str(qty), "step": str(step)}
    if qty <= 0:
        raise PlanRejected("quantity_zero", f"Quantity {raw} rounds to zero at step {step}", details)
    if min_size and qty < to_decimal(min_size):
        raise PlanRejected(
            "quantity_below_min", f"Quantity {qty} below minimum {min_size}", details
        )
    if max_size is not None and qty > to_decimal(max_size):
        raise PlanRejected(
            "quantity_above_max", f"Quantity {qty} above maximum {max_size}", details
        )
    return qty


def derive_entry(
    side: str,
    order_type: str,
    current_price,
    order_cfg: OrderStrategyConfig,
    tick=None,
    precision: int = 8,
) -> tuple[Decimal | None, Decimal | None, Decimal]:
    """Return (limit price, stop price, entry reference) for the entry order.

    STOP_LOSS_LIMIT entries are breakouts: the trigger sits above the market for
    a BUY and below it for a SELL, and the limit is pushed further the same way.
    """
    current = to_decimal(current_price)
    buy = side == "BUY"
    if order_type == "MARKET":
        return None, None, current
    if order_type == "LIMIT":
        offset = _pct(order_cfg.limit_order_offset_percentage)
        price = current * (1 - offset) if buy else current * (1 + offset)
        price = round_to_tick(price, tick, precision)
        return price, None, price
    if order_type == "STOP_LOSS_LIMIT":
        sl = _pct(order_cfg.stop_loss_percentage)
        limit_offset = _pct(order_cfg.stop_loss_limit_offset_percentage)
        trigger = current * (1 + sl) if buy else current * (1 - sl)
        limit = trigger * (1 + limit_offset) if buy else trigger * (1 - limit_offset)
        trigger = round_to_tick(trigger, tick, precision)
        limit = round_to_tick(limit, tick, precision)
        return limit, trigger, limit
    raise ValueError(f"Unsupported order type: {order_type}")


def protective_prices(side: str, entry, order_cfg: OrderStrategyConfig,
                      tick=None, precision: int = 8) -> tuple[Decimal, Decimal]:
    """Tick-rounded (stop loss, take profit) around an entry for ``side``."""
    entry = to_decimal(entry)
    sl = _pct(order_cfg.stop_loss_percentage)
    tp = _pct(order_cfg.take_profit_percentage)
    if side == "BUY":
        stop, target = entry * (1 - sl), entry * (1 + tp)
    else:
        stop, target = entry * (1 + sl), entry * (1 - tp)
    return round_to_tick(stop, tick, precision), round_to_tick(target, tick, precision)


def check_risk_reward(
    side: str,
    entry,
    order_cfg: OrderStrategyConfig,
    min_ratio: float,
    tick=None,
    precision: int = 8,
) -> Decimal | None:
    """Reward/risk ratio, or None when the gate does not apply.

    Applies only when stop loss and take profit are both enabled with positive
    percentages and the minimum ratio is positive. Raises PlanRejected when
    prices land on the wrong side or the ratio is too low.
    """
    if not (order_cfg.stop_loss_active and order_cfg.take_profit_active and min_ratio > 0):
        return None
    entry = to_decimal(entry)
    stop, target = protective_prices(side, entry, order_cfg, tick, precision)
    details = {"entry": str(entry), "stop_loss": str(stop), "take_profit": str(target)}

    if side == "BUY":
        if not (stop < entry < target):
            raise PlanRejected("rr_invalid_levels", "Stop/target not around entry after rounding", details)
        risk, reward = entry - stop, target - entry
    else:
        if not (target < entry < stop):
            raise PlanRejected("rr_invalid_levels", "Stop/target not around entry after rounding", details)
        risk, reward = stop - entry, entry - target

    if risk <= 0 or reward <= 0:
        raise PlanRejected("rr_invalid_levels", "Risk and reward must both be positive", details)
    ratio = reward / risk
    details["ratio"] = str(ratio)
    if ratio < to_decimal(min_ratio):
        raise PlanRejected(
            "rr_rejected", f"Risk:reward {ratio:.2f} below minimum {min_ratio}", details
        )
    return ratio


def held_quantity(executed_qty, fills, base_asset: str, step=None, precision: int = 8) -> Decimal:
    """Base quantity left after a fill: executed minus base-asset commissions, floored."""
    held = to_decimal(executed_qty or 0)
    for fill in fills or []:
        if fill.get("commissionAsset") == base_asset:
            held -= to_decimal(fill.get("commission") or 0)
    if held <= 0:
        return Decimal(0)
    return floor_to_step(held, step, precision)


def build_exit_protection(
    side: str,
    quantity: Decimal,
    entry,
    order_cfg: OrderStrategyConfig,
    tick=None,
    precision: int = 8,
) -> tuple[BracketPlan | None, ExitOrderPlan | None]:
    """Exit orders placed after the entry fills, on the opposite side.

    OCO when requested and both legs are enabled; otherwise a single stop-loss
    limit, or a single take-profit limit when only that leg is enabled.
    """
    exit_side = "SELL" if side == "BUY" else "BUY"
    closing_long = exit_side == "SELL"
    sl_active, tp_active = order_cfg.stop_loss_active, order_cfg.take_profit_active
    stop, target = protective_prices(side, entry, order_cfg, tick, precision)

    sl_offset = _pct(order_cfg.stop_loss_limit_offset_percentage)
    stop_limit = stop * (1 - sl_offset) if closing_long else stop * (1 + sl_offset)
    stop_limit = round_to_tick(stop_limit, tick, precision)

    if order_cfg.use_oco and sl_active and tp_active:
        return BracketPlan(exit_side, quantity, target, stop, stop_limit), None
    if sl_active:
        return None, ExitOrderPlan(exit_side, "STOP_LOSS_LIMIT", quantity, stop_limit, stop)
    if tp_active:
        tp_offset = _pct(order_cfg.take_profit_limit_offset_percentage)
        tp_limit = target * (1 - tp_offset) if closing_long else target * (1 + tp_offset)
        tp_limit = round_to_tick(tp_limit, tick, precision)
        return None, ExitOrderPlan(exit_side, "TAKE_PROFIT_LIMIT", quantity, tp_limit, target)
    return None, None


# ---------------------------------------------------------------------------
# Full plan
# ---------------------------------------------------------------------------

def plan_order(pair, side: str, current_price, strategy: StrategyConfig) -> OrderPlan:
    """Size, price and risk-check an entry for ``pair``; raises PlanRejected."""
    order_cfg = strategy.order_strategy
    tick = pair.tick_size
    step = pair.step_size

    quantity = derive_quantity(
        strategy.risk.default_trade_amount_usd,
        current_price,
        step=step,
        precision=pair.quantity_precision,
        min_size=pair.min_trade_size,
        max_size=pair.max_trade_size,
    )
    order_type = order_cfg.default_order_type
    price, stop_price, reference = derive_entry(
        side, order_type, current_price, order_cfg, tick, pair.price_precision
    )
    ratio = check_risk_reward(
        side, reference, order_cfg, strategy.risk.min_risk_benefit_ratio,
        tick, pair.price_precision,
    )
    bracket, exit_order = build_exit_protection(
        side, quantity, reference, order_cfg, tick, pair.price_precision
    )
    return OrderPlan(
        symbol=pair.symbol,
        side=side,
        order_type=order_type,
        quantity=quantity,
        price=price,
        stop_price=stop_price,
        mode="MARGIN" if pair.margin_enabled else "SPOT",
        entry_reference=reference,
        exit_bracket=bracket,
        exit_order=exit_order,
        risk_reward=ratio,
    )
