"""Market data gateway over the Binance REST API.

Read paths raise on transport errors; the pair job catches them at the cycle
boundary and records the failure.
"""

import asyncio
import logging

import pandas as pd

from tradebot.config import settings
from tradebot.services.indicators import Candle

logger = logging.getLogger(__name__)

KLINE_COLUMNS = [
    "open_time", "open", "high", "low", "close", "volume", "close_time",
    "quote_volume", "trades", "taker_base_volume", "taker_quote_volume", "ignore",
]


class BinanceMarketData:
    """Candles, ticker and order book for a symbol."""

    def __init__(self, client, timeout: float | None = None):
        self.client = client
        self.timeout = timeout or settings.exchange_timeout_seconds

    async def _call(self, coro):
        return await asyncio.wait_for(coro, timeout=self.timeout)

    async def get_candles(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        """Most recent ``limit`` closed-or-open candles, oldest first."""
        raw = await self._call(
            self.client.get_klines(symbol=symbol, interval=interval, limit=limit)
        )
        return parse_klines(raw)

    async def get_ticker(self, symbol: str) -> float | None:
        """Last traded price, or None if the exchange returned nothing usable."""
        data = await self._call(self.client.get_symbol_ticker(symbol=symbol))
        try:
            return float(data["price"])
        except (KeyError, TypeError, ValueError):
            logger.warning(f"[{symbol}] Unexpected ticker payload: {data!r}")
            return None

    async def get_order_book(self, symbol: str, depth: int = 5) -> dict:
        """Top of book plus the first ``depth`` levels on each side."""
        data = await self._call(self.client.get_order_book(symbol=symbol, limit=depth))
        return parse_order_book(data)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def parse_klines(raw: list[list]) -> list[Candle]:
    """Parse Binance kline rows into Candles.

    Each row: [open_time, "open", "high", "low", "close", "volume", close_time, ...]
    Rows with non-numeric prices are dropped.
    """
    if not raw:
        return []
    width = min(len(raw[0]), len(KLINE_COLUMNS))
    df = pd.DataFrame([row[:width] for row in raw], columns=KLINE_COLUMNS[:width])
    for col in ("open", "high", "low", "close", "volume"):
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df = df.dropna(subset=["open", "high", "low", "close"]).sort_values("open_time")
    return [
        Candle(
            open_time=int(row.open_time),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume) if pd.notna(row.volume) else 0.0,
            close_time=int(row.close_time),
        )
        for row in df.itertuples(index=False)
    ]


def parse_order_book(data: dict) -> dict:
    bids = [(float(p), float(q)) for p, q in (data or {}).get("bids", [])]
    asks = [(float(p), float(q)) for p, q in (data or {}).get("asks", [])]
    best_bid = bids[0][0] if bids else 0.0
    best_ask = asks[0][0] if asks else 0.0
    mid = (best_bid + best_ask) / 2 if best_bid and best_ask else 0.0
    return {
        "best_bid": best_bid,
        "best_ask": best_ask,
        "mid_price": mid,
        "bids": bids,
        "asks": asks,
    }
