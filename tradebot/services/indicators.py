"""Technical indicators over candle series.

All functions are pure computation: no I/O, no database access. A return value
of ``None`` means "not enough data"; callers must treat it differently from an
empty array. Output value ``i`` belongs to input index ``i + warmup`` where the
warmup depends on the indicator, so align from the END of the series.
"""

from dataclasses import dataclass, field

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view


@dataclass(frozen=True)
class Candle:
    open_time: int  # ms since epoch
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int


@dataclass
class MACDResult:
    macd: np.ndarray
    signal: np.ndarray
    histogram: np.ndarray

    def __len__(self) -> int:
        return len(self.macd)


def close_prices(candles: list[Candle]) -> np.ndarray:
    return np.array([c.close for c in candles], dtype=float)


def _check_period(period: int):
    if period < 1:
        raise ValueError(f"period must be >= 1, got {period}")


# ---------------------------------------------------------------------------
# Moving averages
# ---------------------------------------------------------------------------

def sma(values, period: int) -> np.ndarray | None:
    """Simple moving average; ``len(values) - period + 1`` points."""
    _check_period(period)
    arr = np.asarray(values, dtype=float)
    if len(arr) < period:
        return None
    return sliding_window_view(arr, period).mean(axis=1)


def ema(values, period: int) -> np.ndarray | None:
    """Exponential moving average seeded with the SMA of the first window."""
    _check_period(period)
    arr = np.asarray(values, dtype=float)
    if len(arr) < period:
        return None
    k = 2.0 / (period + 1)
    out = np.empty(len(arr) - period + 1)
    out[0] = arr[:period].mean()
    for i, price in enumerate(arr[period:], start=1):
        out[i] = (price - out[i - 1]) * k + out[i - 1]
    return out


# ---------------------------------------------------------------------------
# Oscillators
# ---------------------------------------------------------------------------

def rsi(values, period: int = 14) -> np.ndarray | None:
    """Wilder RSI; ``len(values) - period`` points in [0, 100].

    Exactly ``period`` values is enough to be "defined" but yields no point,
    so the result is an empty array rather than ``None``.
    """
    _check_period(period)
    arr = np.asarray(values, dtype=float)
    if len(arr) < period:
        return None
    deltas = np.diff(arr)
    if len(deltas) < period:
        return np.array([], dtype=float)

    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)
    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()

    out = np.empty(len(deltas) - period + 1)
    out[0] = _rsi_value(avg_gain, avg_loss)
    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        out[i - period + 1] = _rsi_value(avg_gain, avg_loss)
    return out


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def macd(values, fast: int = 12, slow: int = 26, signal: int = 9) -> MACDResult | None:
    """MACD with exponential fast, slow and signal averages.

    Only points where the signal line exists are returned:
    ``len(values) - slow - signal + 2`` of them.
    """
    for p in (fast, slow, signal):
        _check_period(p)
    if fast >= slow:
        raise ValueError("fast period must be shorter than slow period")
    arr = np.asarray(values, dtype=float)
    if len(arr) < slow + signal - 1:
        return None

    fast_line = ema(arr, fast)
    slow_line = ema(arr, slow)
    # Align the fast EMA to the slow one by trimming its head
    macd_line = fast_line[slow - fast:] - slow_line
    signal_line = ema(macd_line, signal)
    macd_line = macd_line[signal - 1:]
    return MACDResult(
        macd=macd_line,
        signal=signal_line,
        histogram=macd_line - signal_line,
    )


# ---------------------------------------------------------------------------
# Volatility
# ---------------------------------------------------------------------------

def true_range(candles: list[Candle]) -> np.ndarray:
    highs = np.array([c.high for c in candles], dtype=float)
    lows = np.array([c.low for c in candles], dtype=float)
    closes = np.array([c.close for c in candles], dtype=float)
    tr = highs - lows
    if len(candles) > 1:
        prev_close = closes[:-1]
        tr[1:] = np.maximum.reduce([
            highs[1:] - lows[1:],
            np.abs(highs[1:] - prev_close),
            np.abs(lows[1:] - prev_close),
        ])
    return tr


def atr(candles: list[Candle], period: int = 14) -> np.ndarray | None:
    """Average true range with Wilder smoothing; ``len - period + 1`` points."""
    _check_period(period)
    if not candles or len(candles) < period:
        return None
    tr = true_range(candles)
    out = np.empty(len(tr) - period + 1)
    out[0] = tr[:period].mean()
    for i in range(period, len(tr)):
        out[i - period + 1] = (out[i - period] * (period - 1) + tr[i]) / period
    return out


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------

@dataclass
class IndicatorSet:
    """Indicators computed for one tick. Any member may be ``None``."""

    sma: np.ndarray | None = None
    ema: np.ndarray | None = None
    rsi: np.ndarray | None = None
    macd: MACDResult | None = None
    atr: np.ndarray | None = None
    periods: dict[str, object] = field(default_factory=dict)

    def insufficient(self) -> list[str]:
        """Names of requested indicators that came back empty or undefined."""
        missing = []
        for name in self.periods:
            series = getattr(self, name)
            if series is None or len(series) == 0:
                missing.append(name)
        return missing

    def latest(self) -> dict[str, float | None]:
        """Most recent value of each indicator (``None`` when absent)."""
        out: dict[str, float | None] = {}
        for name in ("sma", "ema", "rsi", "atr"):
            series = getattr(self, name)
            out[name] = float(series[-1]) if series is not None and len(series) else None
        if self.macd is not None and len(self.macd):
            out["macd"] = float(self.macd.macd[-1])
            out["macd_signal"] = float(self.macd.signal[-1])
            out["macd_histogram"] = float(self.macd.histogram[-1])
        else:
            out["macd"] = out["macd_signal"] = out["macd_histogram"] = None
        return out

    def snapshot(self) -> dict:
        return {"periods": self.periods, "latest": self.latest()}


def compute_indicator_set(
    candles: list[Candle],
    sma_period: int | None = None,
    ema_period: int | None = None,
    rsi_period: int | None = None,
    macd_periods: tuple[int, int, int] | None = None,
    atr_period: int | None = None,
) -> IndicatorSet:
    """Compute the requested indicators; unrequested ones stay ``None``."""
    closes = close_prices(candles)
    result = IndicatorSet()
    if sma_period:
        result.sma = sma(closes, sma_period)
        result.periods["sma"] = sma_period
    if ema_period:
        result.ema = ema(closes, ema_period)
        result.periods["ema"] = ema_period
    if rsi_period:
        result.rsi = rsi(closes, rsi_period)
        result.periods["rsi"] = rsi_period
    if macd_periods:
        result.macd = macd(closes, *macd_periods)
        result.periods["macd"] = list(macd_periods)
    if atr_period:
        result.atr = atr(candles, atr_period)
        result.periods["atr"] = atr_period
    return result
