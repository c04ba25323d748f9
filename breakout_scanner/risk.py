from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from .config import RiskPolicy
from .indicators import average_true_range
from .models import Candle, Side, TrailingStop


class StopMethod(str, Enum):
    RESISTANCE_BELOW = "resistance_below"
    COMPRESSION_LOW = "compression_low"
    ATR = "atr"


@dataclass(frozen=True)
class RiskLevels:
    stop_loss: float
    take_profit: float
    method: StopMethod


def _buffer_multiplier(entry: float, reference: float, policy: RiskPolicy) -> float:
    # entry hugging the reference -> widen so the first wiggle doesn't stop us out
    if reference > 0 and abs(entry - reference) / reference < float(policy.thin_margin_pct):
        return float(policy.thin_margin_buffer_multiplier)
    return float(policy.buffer_multiplier)


def _reference_stop(entry: float, reference: float, policy: RiskPolicy, sign: float) -> float:
    buf = float(policy.below_pct) * _buffer_multiplier(entry, reference, policy)
    return reference * (1.0 - sign * buf)


def _derive_stop(
    entry: float,
    reference: float,
    policy: RiskPolicy,
    sign: float,
    compression_low: Optional[float],
    bars: Optional[Sequence[Candle]],
) -> tuple[float, StopMethod]:
    method = StopMethod(policy.stop_method)

    if method is StopMethod.COMPRESSION_LOW:
        # the compression floor only exists for longs
        if compression_low is not None and compression_low > 0 and sign > 0:
            return compression_low * (1.0 - float(policy.compression_buffer_pct)), method

    elif method is StopMethod.ATR:
        period = int(policy.atr_period)
        if bars is not None and len(bars) >= period + 1:
            atr = average_true_range(bars, period)
            if atr > 0:
                return entry - sign * atr * float(policy.atr_multiplier), method

    return _reference_stop(entry, reference, policy, sign), StopMethod.RESISTANCE_BELOW


def compute_levels(
    entry: float,
    reference: float,
    policy: RiskPolicy,
    *,
    side: Side = Side.LONG,
    compression_low: Optional[float] = None,
    bars: Optional[Sequence[Candle]] = None,
) -> RiskLevels:
    """Stop-loss and take-profit for a confirmed entry.

    Long stops sit below the entry, short stops above it. Whatever the method,
    the stop ends up strictly more than ``min_risk_pct`` away from the entry,
    and the target is placed at exactly ``risk_reward`` times that distance.
    """
    if entry <= 0:
        raise ValueError(f"entry price must be positive, got {entry}")
    sign = 1.0 if side is Side.LONG else -1.0

    stop, method = _derive_stop(entry, reference, policy, sign, compression_low, bars)

    # strictly beyond the min-risk boundary, never on it
    limit = entry * (1.0 - sign * float(policy.min_risk_pct))
    if side is Side.LONG and stop >= limit:
        stop = math.nextafter(limit, 0.0)
    elif side is Side.SHORT and stop <= limit:
        stop = math.nextafter(limit, math.inf)

    risk = abs(entry - stop)
    take_profit = entry + sign * risk * float(policy.risk_reward)
    return RiskLevels(stop_loss=stop, take_profit=take_profit, method=method)


def trailing_annotation(policy: RiskPolicy) -> Optional[TrailingStop]:
    if not policy.trailing_enabled:
        return None
    return TrailingStop(
        activation_pct=float(policy.trailing_activation_pct),
        distance_pct=float(policy.trailing_distance_pct),
    )
