from __future__ import annotations
from typing import List, Optional, Sequence

from .models import Candle


def moving_average(values: Sequence[float], period: int) -> List[Optional[float]]:
    """Trailing simple moving average, aligned with the input.

    The first ``period - 1`` entries are None (not enough data yet).
    Runs in O(n) by carrying a running window sum.
    """
    n = len(values)
    out: List[Optional[float]] = [None] * n
    if period <= 0 or n < period:
        return out

    window_sum = 0.0
    for i, v in enumerate(values):
        window_sum += float(v)
        if i >= period:
            window_sum -= float(values[i - period])
        if i >= period - 1:
            out[i] = window_sum / float(period)
    return out


def range_ratio(bars: Sequence[Candle]) -> Optional[float]:
    if not bars:
        return None
    last_close = bars[-1].close
    if last_close <= 0:
        return None
    hi = max(c.high for c in bars)
    lo = min(c.low for c in bars)
    return (hi - lo) / last_close


def true_range(high: float, low: float, prev_close: float) -> float:
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def average_true_range(bars: Sequence[Candle], period: int = 14) -> float:
    # fewer than period+1 bars -> 0.0, callers treat it as "no ATR"
    if period <= 0 or len(bars) < period + 1:
        return 0.0
    total = 0.0
    for i in range(len(bars) - period, len(bars)):
        c = bars[i]
        total += true_range(c.high, c.low, bars[i - 1].close)
    return total / period


def upper_wick(c: Candle) -> float:
    return c.high - max(c.open, c.close)


def body(c: Candle) -> float:
    return abs(c.close - c.open)


def pct_change(new: float, old: float) -> Optional[float]:
    if old == 0:
        return None
    return (new - old) / old * 100.0
