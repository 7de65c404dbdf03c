"""Binance exchange gateway for order placement and margin account management.

Wraps the python-binance AsyncClient. ``submit_*`` methods never raise: every
failure comes back as ``OrderResult(success=False, error=...)``. With
``dry_run`` enabled orders are logged and answered with a synthetic fill.
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal

from binance.exceptions import BinanceAPIException, BinanceRequestException

from tradebot.config import settings

logger = logging.getLogger(__name__)


@dataclass
class OrderResult:
    success: bool
    order_id: str | None = None
    client_order_id: str | None = None
    status: str | None = None  # "NEW", "FILLED", "PARTIALLY_FILLED", ...
    price: float | None = None
    executed_qty: float | None = None
    cumulative_quote_qty: float | None = None
    transact_time: int | None = None
    fills: list[dict] = field(default_factory=list)
    error: str | None = None
    raw_response: str | None = None

    @property
    def is_filled(self) -> bool:
        return self.success and self.status == "FILLED"

    @property
    def fill_price(self) -> float:
        """First fill price, else the order price, else 0."""
        if self.fills:
            try:
                return float(self.fills[0]["price"])
            except (KeyError, TypeError, ValueError):
                pass
        return self.price or 0.0


def format_decimal(value: Decimal | float | str) -> str:
    """Plain decimal string without exponent or trailing zeros."""
    d = value if isinstance(value, Decimal) else Decimal(str(value))
    return format(d.normalize(), "f")


def _parse_order(resp: dict) -> OrderResult:
    fills = resp.get("fills") or []
    price = _to_float(resp.get("price"))
    if not price and fills:
        price = _to_float(fills[0].get("price"))
    return OrderResult(
        success=True,
        order_id=str(resp["orderId"]) if resp.get("orderId") is not None else None,
        client_order_id=resp.get("clientOrderId"),
        status=resp.get("status"),
        price=price,
        executed_qty=_to_float(resp.get("executedQty")),
        cumulative_quote_qty=_to_float(resp.get("cummulativeQuoteQty")),
        transact_time=resp.get("transactTime"),
        fills=fills,
        raw_response=json.dumps(resp, default=str),
    )


def _to_float(value) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class BinanceExchange:
    """Order submission for spot and cross/isolated margin accounts."""

    def __init__(self, client, dry_run: bool | None = None, timeout: float | None = None):
        self.client = client
        self.dry_run = settings.dry_run if dry_run is None else dry_run
        self.timeout = timeout or settings.exchange_timeout_seconds

    async def _call(self, coro):
        return await asyncio.wait_for(coro, timeout=self.timeout)

    async def _submit(self, label: str, symbol: str, call, params: dict) -> OrderResult:
        if self.dry_run:
            return self._dry_run_result(label, symbol, params)
        try:
            resp = await self._call(call(**params))
            result = _parse_order(resp)
            logger.info(
                f"[{symbol}] {label} accepted: id={result.order_id} status={result.status}"
            )
            return result
        except BinanceAPIException as e:
            logger.error(f"[{symbol}] {label} rejected ({e.code}): {e.message}")
            return OrderResult(success=False, error=f"{e.code}: {e.message}")
        except BinanceRequestException as e:
            logger.error(f"[{symbol}] {label} request failed: {e}")
            return OrderResult(success=False, error=str(e))
        except asyncio.TimeoutError:
            logger.error(f"[{symbol}] {label} timed out after {self.timeout}s")
            return OrderResult(success=False, error="timeout")
        except Exception as e:
            logger.error(f"[{symbol}] {label} failed: {e}", exc_info=True)
            return OrderResult(success=False, error=str(e))

    def _dry_run_result(self, label: str, symbol: str, params: dict) -> OrderResult:
        logger.info(f"[{symbol}] DRY RUN {label}: {params}")
        price = params.get("price") or params.get("stopPrice")
        qty = params.get("quantity")
        order_type = params.get("type", "OCO")
        # Resting orders stay NEW; market orders fill immediately
        status = "FILLED" if order_type == "MARKET" else "NEW"
        return OrderResult(
            success=True,
            order_id=f"dry-{uuid.uuid4().hex[:12]}",
            client_order_id=params.get("newClientOrderId"),
            status=status,
            price=_to_float(price),
            executed_qty=_to_float(qty) if status == "FILLED" else 0.0,
            transact_time=int(time.time() * 1000),
            raw_response=json.dumps({"dry_run": True, **params}, default=str),
        )

    # ------------------------------------------------------------------
    # Order submission
    # ------------------------------------------------------------------

    @staticmethod
    def _order_params(
        symbol: str,
        side: str,
        order_type: str,
        quantity: Decimal,
        price: Decimal | None,
        stop_price: Decimal | None,
    ) -> dict:
        params = {
            "symbol": symbol,
            "side": side,
            "type": order_type,
            "quantity": format_decimal(quantity),
            "newOrderRespType": "FULL",
        }
        if order_type != "MARKET":
            if price is None:
                raise ValueError(f"{order_type} order requires a price")
            params["price"] = format_decimal(price)
            params["timeInForce"] = "GTC"
        if order_type in ("STOP_LOSS_LIMIT", "TAKE_PROFIT_LIMIT"):
            if stop_price is None:
                raise ValueError(f"{order_type} order requires a stop price")
            params["stopPrice"] = format_decimal(stop_price)
        return params

    async def submit_spot_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        quantity: Decimal,
        price: Decimal | None = None,
        stop_price: Decimal | None = None,
    ) -> OrderResult:
        try:
            params = self._order_params(symbol, side, order_type, quantity, price, stop_price)
        except ValueError as e:
            return OrderResult(success=False, error=str(e))
        return await self._submit(
            f"spot {side} {order_type}", symbol, self.client.create_order, params
        )

    async def submit_margin_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        quantity: Decimal,
        price: Decimal | None = None,
        stop_price: Decimal | None = None,
        is_isolated: bool = False,
        side_effect_type: str | None = None,
    ) -> OrderResult:
        try:
            params = self._order_params(symbol, side, order_type, quantity, price, stop_price)
        except ValueError as e:
            return OrderResult(success=False, error=str(e))
        params["isIsolated"] = "TRUE" if is_isolated else "FALSE"
        if side_effect_type:
            params["sideEffectType"] = side_effect_type
        return await self._submit(
            f"margin {side} {order_type}", symbol, self.client.create_margin_order, params
        )

    async def submit_bracket_order(
        self,
        symbol: str,
        side: str,
        quantity: Decimal,
        take_profit_price: Decimal,
        stop_price: Decimal,
        stop_limit_price: Decimal,
        margin: bool = False,
        is_isolated: bool = False,
    ) -> OrderResult:
        """One-cancels-the-other exit: a take-profit limit and a stop-limit leg."""
        params = {
            "symbol": symbol,
            "side": side,
            "quantity": format_decimal(quantity),
            "price": format_decimal(take_profit_price),
            "stopPrice": format_decimal(stop_price),
            "stopLimitPrice": format_decimal(stop_limit_price),
            "stopLimitTimeInForce": "GTC",
        }
        if margin:
            params["isIsolated"] = "TRUE" if is_isolated else "FALSE"
            call = self.client.create_margin_oco_order
        else:
            call = self.client.create_oco_order

        result = await self._submit(f"{side} OCO", symbol, call, params)
        if result.success and result.raw_response and not self.dry_run:
            resp = json.loads(result.raw_response)
            result.order_id = str(resp.get("orderListId")) if resp.get("orderListId") is not None else None
            result.status = resp.get("listOrderStatus") or resp.get("listStatusType")
            result.price = _to_float(params["price"])
        return result

    # ------------------------------------------------------------------
    # Order management
    # ------------------------------------------------------------------

    async def cancel_order(
        self, symbol: str, order_id: str, margin: bool = False, is_isolated: bool = False
    ) -> OrderResult:
        params = {"symbol": symbol, "orderId": int(order_id)}
        if margin:
            params["isIsolated"] = "TRUE" if is_isolated else "FALSE"
            call = self.client.cancel_margin_order
        else:
            call = self.client.cancel_order
        return await self._submit("cancel", symbol, call, params)

    async def get_order_status(
        self, symbol: str, order_id: str, margin: bool = False, is_isolated: bool = False
    ) -> OrderResult:
        params = {"symbol": symbol, "orderId": int(order_id)}
        if margin:
            params["isIsolated"] = "TRUE" if is_isolated else "FALSE"
            call = self.client.get_margin_order
        else:
            call = self.client.get_order
        try:
            resp = await self._call(call(**params))
            return _parse_order(resp)
        except Exception as e:
            logger.error(f"[{symbol}] Order status lookup failed for {order_id}: {e}")
            return OrderResult(success=False, order_id=str(order_id), error=str(e))

    # ------------------------------------------------------------------
    # Margin account
    # ------------------------------------------------------------------

    async def margin_borrow(
        self, asset: str, amount: Decimal, symbol: str | None = None, is_isolated: bool = False
    ) -> OrderResult:
        return await self._margin_transfer("borrow", self.client.create_margin_loan,
                                           asset, amount, symbol, is_isolated)

    async def margin_repay(
        self, asset: str, amount: Decimal, symbol: str | None = None, is_isolated: bool = False
    ) -> OrderResult:
        return await self._margin_transfer("repay", self.client.repay_margin_loan,
                                           asset, amount, symbol, is_isolated)

    async def _margin_transfer(self, label, call, asset, amount, symbol, is_isolated) -> OrderResult:
        params = {"asset": asset, "amount": format_decimal(amount)}
        if is_isolated:
            if not symbol:
                return OrderResult(success=False, error="isolated margin requires a symbol")
            params["isIsolated"] = "TRUE"
            params["symbol"] = symbol
        if self.dry_run:
            logger.info(f"[{symbol or asset}] DRY RUN margin {label}: {params}")
            return OrderResult(success=True, order_id=f"dry-{uuid.uuid4().hex[:12]}", status="CONFIRMED")
        try:
            resp = await self._call(call(**params))
            logger.info(f"[{symbol or asset}] Margin {label} {params['amount']} {asset}: {resp}")
            return OrderResult(
                success=True,
                order_id=str(resp.get("tranId")) if resp.get("tranId") is not None else None,
                status="CONFIRMED",
                raw_response=json.dumps(resp, default=str),
            )
        except Exception as e:
            logger.error(f"[{symbol or asset}] Margin {label} failed: {e}")
            return OrderResult(success=False, error=str(e))

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def _balance_entry(self, asset: str, margin: bool) -> dict:
        if margin:
            account = await self._call(self.client.get_margin_account())
            for entry in account.get("userAssets", []):
                if entry.get("asset") == asset:
                    return entry
            return {}
        return await self._call(self.client.get_asset_balance(asset=asset)) or {}

    async def get_free_balance(self, asset: str, margin: bool = False) -> float | None:
        """Free balance of ``asset`` in the spot or cross-margin wallet."""
        entry = await self._balance_entry(asset, margin)
        if not entry:
            return 0.0
        return _to_float(entry.get("free"))

    async def get_held_balance(self, asset: str, margin: bool = False) -> float:
        """Free plus locked balance, i.e. including funds held by open orders."""
        entry = await self._balance_entry(asset, margin)
        return (_to_float(entry.get("free")) or 0.0) + (_to_float(entry.get("locked")) or 0.0)
