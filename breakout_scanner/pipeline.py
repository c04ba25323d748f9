from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from .config import PipelineConfig, RiskPolicy
from .indicators import body, moving_average, range_ratio, upper_wick
from .models import Candle, Outcome, Side, Signal, Stage, StageResult
from .risk import compute_levels, trailing_annotation

log = logging.getLogger("pipeline")


def _reject(stage: Stage) -> StageResult:
    return StageResult(stage=stage, passed=False)


def _last_volume_ma(bars: Sequence[Candle], period: int) -> Optional[float]:
    ma = moving_average([c.volume for c in bars], period)
    return ma[-1] if ma else None


class BreakoutPipeline:
    """Compression on the slow timeframe, volume breakout, then a shallow retest on the fast one.

    Stages run in order and stop at the first rejection. Every stage only
    reads the bars it is given, so evaluating the same bars twice yields the
    same outcome.
    """

    variant = "breakout"
    stages = (Stage.COMPRESSION, Stage.BREAKOUT, Stage.RETEST)

    def __init__(self, cfg: PipelineConfig, risk: RiskPolicy):
        self.cfg = cfg
        self.risk = risk

    def compression(self, slow: Sequence[Candle]) -> StageResult:
        n = int(self.cfg.compression_bars)
        if len(slow) < n:
            return _reject(Stage.COMPRESSION)
        window = slow[-n:]
        ratio = range_ratio(window)
        if ratio is None or ratio >= float(self.cfg.compression_max_ratio):
            return _reject(Stage.COMPRESSION)
        return StageResult(
            stage=Stage.COMPRESSION,
            passed=True,
            levels={"range_ratio": ratio, "compression_low": min(c.low for c in window)},
        )

    def breakout(self, slow: Sequence[Candle]) -> StageResult:
        m = int(self.cfg.breakout_bars)
        if len(slow) < m:
            return _reject(Stage.BREAKOUT)
        window = slow[-m:]
        last = window[-1]
        resistance = max(c.high for c in window[:-1])

        vol_ma = _last_volume_ma(window, int(self.cfg.volume_ma_period))
        if vol_ma is None:
            return _reject(Stage.BREAKOUT)

        price_ok = last.close > resistance * float(self.cfg.breakout_price_multiplier)
        volume_ok = last.volume > vol_ma * float(self.cfg.breakout_volume_multiplier)
        return StageResult(
            stage=Stage.BREAKOUT,
            passed=price_ok and volume_ok,
            levels={"resistance": resistance, "volume_ma": vol_ma},
        )

    def retest(self, fast: Sequence[Candle], resistance: float) -> StageResult:
        if not fast:
            return _reject(Stage.RETEST)
        last = fast[-1]
        ok = last.low >= resistance * float(self.cfg.retest_multiplier) and last.close > resistance
        return StageResult(stage=Stage.RETEST, passed=ok, levels={"entry": last.close})

    def run_slow_stages(self, slow: Sequence[Candle]) -> List[StageResult]:
        """Slow-timeframe stages up to the first rejection."""
        results = [self.compression(slow)]
        if results[-1].passed:
            results.append(self.breakout(slow))
        return results

    def confirm(self, symbol: str, slow: Sequence[Candle], fast: Sequence[Candle], compression_low: float, resistance: float) -> Outcome:
        rt = self.retest(fast, resistance)
        if not rt.passed:
            return Outcome(symbol=symbol, stage=Stage.RETEST)

        entry_bar = fast[-1]
        entry = entry_bar.close
        levels = compute_levels(
            entry,
            resistance,
            self.risk,
            side=Side.LONG,
            compression_low=compression_low,
            bars=slow,
        )
        sig = Signal(
            symbol=symbol,
            side=Side.LONG,
            variant=self.variant,
            reference_level=resistance,
            entry_price=entry,
            stop_loss=levels.stop_loss,
            take_profit=levels.take_profit,
            stop_method=levels.method.value,
            risk_reward=float(self.risk.risk_reward),
            confirm_time_ms=entry_bar.close_time_ms,
            compression_low=compression_low,
            trailing=trailing_annotation(self.risk),
        )
        return Outcome(symbol=symbol, stage=Stage.CONFIRMED, signal=sig)

    async def evaluate(self, symbol: str, fetcher) -> Outcome:
        slow = await fetcher.fetch_klines(symbol, self.cfg.slow_timeframe, int(self.cfg.slow_limit))
        results = self.run_slow_stages(slow)
        if not results[-1].passed:
            return Outcome(symbol=symbol, stage=results[-1].stage)

        compression_low = results[0].levels["compression_low"]
        resistance = results[1].levels["resistance"]
        log.debug("breakout symbol=%s resistance=%s", symbol, resistance)

        fast = await fetcher.fetch_klines(symbol, self.cfg.fast_timeframe, int(self.cfg.fast_limit))
        return self.confirm(symbol, slow, fast, compression_low, resistance)


class FakeoutPipeline:
    """Failed breakout (liquidity trap) on the slow timeframe, faded short on bearish fast momentum."""

    variant = "fakeout"
    stages = (Stage.TRAP, Stage.CONFIRMATION, Stage.MOMENTUM)

    def __init__(self, cfg: PipelineConfig, risk: RiskPolicy):
        self.cfg = cfg
        self.risk = risk

    def trap(self, slow: Sequence[Candle]) -> StageResult:
        n = int(self.cfg.trap_lookback)
        if len(slow) < n:
            return _reject(Stage.TRAP)
        window = slow[-n:]
        last = window[-1]
        resistance = max(c.high for c in window[:-1])
        pierced = last.high > resistance * float(self.cfg.trap_pierce_multiplier)
        rejected = last.close < resistance
        return StageResult(
            stage=Stage.TRAP,
            passed=pierced and rejected,
            levels={"resistance": resistance, "trap_high": last.high},
        )

    def reversal_shape(self, slow: Sequence[Candle]) -> StageResult:
        """Volume spike or long upper wick on the trap bar."""
        if not slow:
            return _reject(Stage.CONFIRMATION)
        last = slow[-1]

        vol_ok = False
        vol_ma = _last_volume_ma(slow[-int(self.cfg.trap_lookback):], int(self.cfg.volume_ma_period))
        if vol_ma is not None:
            vol_ok = last.volume >= vol_ma * float(self.cfg.trap_volume_multiplier)

        wick = upper_wick(last)
        wick_ok = wick > 0 and wick >= body(last) * float(self.cfg.trap_wick_body_ratio)

        return StageResult(
            stage=Stage.CONFIRMATION,
            passed=vol_ok or wick_ok,
            levels={"volume_ok": float(vol_ok), "wick_ok": float(wick_ok)},
        )

    def downtrend(self, trend: Optional[Sequence[Candle]]) -> bool:
        if not trend:
            return False
        trend_ma = moving_average([c.close for c in trend], int(self.cfg.trend_ma_period))[-1]
        return trend_ma is not None and trend[-1].close < trend_ma

    def confirmation(self, slow: Sequence[Candle], trend: Optional[Sequence[Candle]] = None) -> StageResult:
        shape = self.reversal_shape(slow)
        if not shape.passed:
            return shape
        if self.cfg.require_downtrend and not self.downtrend(trend):
            return _reject(Stage.CONFIRMATION)
        return shape

    def momentum(self, fast: Sequence[Candle]) -> StageResult:
        if not fast:
            return _reject(Stage.MOMENTUM)
        last = fast[-1]
        return StageResult(stage=Stage.MOMENTUM, passed=last.close < last.open, levels={"entry": last.close})

    def finish(self, symbol: str, slow: Sequence[Candle], fast: Sequence[Candle], trap_high: float) -> Outcome:
        mo = self.momentum(fast)
        if not mo.passed:
            return Outcome(symbol=symbol, stage=Stage.MOMENTUM)

        entry_bar = fast[-1]
        entry = entry_bar.close
        levels = compute_levels(entry, trap_high, self.risk, side=Side.SHORT, bars=slow)
        if levels.take_profit <= 0:
            # stop too wide for this R:R on a short
            log.warning("target_not_positive symbol=%s entry=%s sl=%s tp=%s", symbol, entry, levels.stop_loss, levels.take_profit)
            return Outcome(symbol=symbol, stage=Stage.MOMENTUM, detail="target_not_positive")
        sig = Signal(
            symbol=symbol,
            side=Side.SHORT,
            variant=self.variant,
            reference_level=trap_high,
            entry_price=entry,
            stop_loss=levels.stop_loss,
            take_profit=levels.take_profit,
            stop_method=levels.method.value,
            risk_reward=float(self.risk.risk_reward),
            confirm_time_ms=entry_bar.close_time_ms,
            trailing=trailing_annotation(self.risk),
        )
        return Outcome(symbol=symbol, stage=Stage.CONFIRMED, signal=sig)

    async def evaluate(self, symbol: str, fetcher) -> Outcome:
        slow = await fetcher.fetch_klines(symbol, self.cfg.slow_timeframe, int(self.cfg.slow_limit))
        tr = self.trap(slow)
        if not tr.passed:
            return Outcome(symbol=symbol, stage=Stage.TRAP)

        trend = None
        if self.cfg.require_downtrend and self.reversal_shape(slow).passed:
            trend = await fetcher.fetch_klines(symbol, self.cfg.trend_timeframe, int(self.cfg.trend_limit))
        if not self.confirmation(slow, trend).passed:
            return Outcome(symbol=symbol, stage=Stage.CONFIRMATION)

        log.debug("trap symbol=%s resistance=%s trap_high=%s", symbol, tr.levels["resistance"], tr.levels["trap_high"])
        fast = await fetcher.fetch_klines(symbol, self.cfg.fast_timeframe, int(self.cfg.fast_limit))
        return self.finish(symbol, slow, fast, tr.levels["trap_high"])


def build_pipeline(cfg: PipelineConfig, risk: RiskPolicy):
    if cfg.variant == "fakeout":
        return FakeoutPipeline(cfg, risk)
    if cfg.variant == "breakout":
        return BreakoutPipeline(cfg, risk)
    raise ValueError(f"Unsupported pipeline variant: {cfg.variant}")
