from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional


@dataclass(frozen=True)
class Candle:
    open_time_ms: int
    close_time_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float


class Side(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class Stage(str, Enum):
    # breakout-confirmation variant
    COMPRESSION = "compression"
    BREAKOUT = "breakout"
    RETEST = "retest"
    # fakeout-rejection variant
    TRAP = "trap"
    CONFIRMATION = "confirmation"
    MOMENTUM = "momentum"
    # terminal outcomes
    ERROR = "error"
    CONFIRMED = "confirmed"

    @property
    def counter_key(self) -> str:
        if self in (Stage.ERROR, Stage.CONFIRMED):
            return self.value
        return f"{self.value}_rejected"


@dataclass(frozen=True)
class StageResult:
    stage: Stage
    passed: bool
    levels: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class TrailingStop:
    """How a downstream executor should trail the stop once in profit."""
    activation_pct: float
    distance_pct: float


@dataclass(frozen=True)
class Signal:
    symbol: str
    side: Side
    variant: str  # breakout | fakeout
    reference_level: float
    entry_price: float
    stop_loss: float
    take_profit: float
    stop_method: str
    risk_reward: float
    confirm_time_ms: int
    compression_low: Optional[float] = None
    trailing: Optional[TrailingStop] = None

    @property
    def risk_pct(self) -> float:
        return abs(self.entry_price - self.stop_loss) / self.entry_price * 100.0


@dataclass(frozen=True)
class Outcome:
    """Exactly one per scanned instrument."""
    symbol: str
    stage: Stage
    signal: Optional[Signal] = None
    detail: str = ""
