import asyncio

import pytest

from breakout_scanner.config import PipelineConfig, RiskPolicy
from breakout_scanner.models import Candle, Outcome, Side, Signal, Stage
from breakout_scanner.pipeline import BreakoutPipeline
from breakout_scanner.scanner import ScanStatistics, Scanner, UniverseError


def _c(idx: int, o: float, h: float, l: float, c: float, v: float = 1.0) -> Candle:
    base = idx * 60_000
    return Candle(
        open_time_ms=base,
        close_time_ms=base + 60_000 - 1,
        open=o,
        high=h,
        low=l,
        close=c,
        volume=v,
    )


def _sig(symbol: str) -> Signal:
    return Signal(
        symbol=symbol,
        side=Side.LONG,
        variant="breakout",
        reference_level=100.0,
        entry_price=102.0,
        stop_loss=98.0,
        take_profit=112.0,
        stop_method="resistance_below",
        risk_reward=2.5,
        confirm_time_ms=0,
    )


class ScriptedPipeline:
    """Outcome picked from the symbol name: OK*, ERR*, CMP*, BRK*, RET*."""

    variant = "breakout"

    def __init__(self, delay: float = 0.0, on_evaluate=None):
        self.delay = delay
        self.on_evaluate = on_evaluate
        self.in_flight = 0
        self.max_in_flight = 0
        self.seen = []

    async def evaluate(self, symbol, fetcher):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.seen.append(symbol)
        try:
            if self.on_evaluate is not None:
                self.on_evaluate(symbol)
            await asyncio.sleep(self.delay)
            if symbol.startswith("ERR"):
                raise RuntimeError(f"fetch failed for {symbol}")
            if symbol.startswith("OK"):
                return Outcome(symbol=symbol, stage=Stage.CONFIRMED, signal=_sig(symbol))
            if symbol.startswith("CMP"):
                return Outcome(symbol=symbol, stage=Stage.COMPRESSION)
            if symbol.startswith("BRK"):
                return Outcome(symbol=symbol, stage=Stage.BREAKOUT)
            return Outcome(symbol=symbol, stage=Stage.RETEST)
        finally:
            self.in_flight -= 1


MIXED = ["OK3", "CMP1", "ERR1", "BRK1", "OK1", "RET1", "CMP2", "OK2", "ERR2", "BRK2"]


@pytest.mark.parametrize("concurrency", list(range(1, len(MIXED) + 1)))
def test_every_symbol_counted_exactly_once(concurrency):
    pipe = ScriptedPipeline(delay=0.001)
    signals, stats = asyncio.run(Scanner(None, pipe).scan(MIXED, concurrency))

    assert stats.done == len(MIXED)
    assert sum(stats.as_dict().values()) == len(MIXED)
    assert stats.get("confirmed") == 3
    assert stats.get("error") == 2
    assert stats.get("compression_rejected") == 2
    assert stats.get("breakout_rejected") == 2
    assert stats.get("retest_rejected") == 1
    assert sorted(pipe.seen) == sorted(MIXED)
    assert pipe.max_in_flight <= concurrency


def test_signals_sorted_by_symbol():
    signals, _ = asyncio.run(Scanner(None, ScriptedPipeline()).scan(MIXED, 4))
    assert [s.symbol for s in signals] == ["OK1", "OK2", "OK3"]


def test_pool_clamps_to_instrument_count():
    pipe = ScriptedPipeline(delay=0.01)
    signals, stats = asyncio.run(Scanner(None, pipe).scan(["OK1", "CMP1", "BRK1"], 10))
    assert pipe.max_in_flight == 3
    assert stats.done == 3
    assert len(signals) == 1


def test_concurrency_is_bounded():
    pipe = ScriptedPipeline(delay=0.01)
    symbols = [f"CMP{i}" for i in range(12)]
    _, stats = asyncio.run(Scanner(None, pipe).scan(symbols, 3))
    assert pipe.max_in_flight == 3
    assert stats.get("compression_rejected") == 12


def test_non_positive_concurrency_still_runs_one_worker():
    pipe = ScriptedPipeline()
    _, stats = asyncio.run(Scanner(None, pipe).scan(["CMP1", "CMP2"], 0))
    assert stats.done == 2
    assert pipe.max_in_flight == 1


def test_empty_symbol_list():
    signals, stats = asyncio.run(Scanner(None, ScriptedPipeline()).scan([], 5))
    assert signals == []
    assert stats.done == 0


def test_cancellation_stops_dispatch_after_current_symbol():
    symbols = [f"CMP{i}" for i in range(10)]

    async def run():
        cancel = asyncio.Event()

        def trip(symbol):
            if symbol == "CMP2":
                cancel.set()

        pipe = ScriptedPipeline(on_evaluate=trip)
        _, stats = await Scanner(None, pipe).scan(symbols, 1, cancel=cancel)
        return pipe, stats

    pipe, stats = asyncio.run(run())
    assert pipe.seen == ["CMP0", "CMP1", "CMP2"]
    assert stats.done == 3
    assert stats.total == 10


def test_progress_is_sampled_and_ends_complete():
    events = []
    pipe = ScriptedPipeline(delay=0.005)
    symbols = [f"CMP{i}" for i in range(20)]
    scanner = Scanner(None, pipe, progress=events.append, progress_interval_s=0.01)

    asyncio.run(scanner.scan(symbols, 2))

    assert events
    assert len(events) < len(symbols) + 1
    dones = [e.done for e in events]
    assert dones == sorted(dones)
    assert events[-1].done == events[-1].total == 20


def test_failing_progress_sink_does_not_break_scan():
    def boom(_):
        raise ValueError("sink down")

    scanner = Scanner(None, ScriptedPipeline(delay=0.002), progress=boom, progress_interval_s=0.001)
    _, stats = asyncio.run(scanner.scan(["OK1", "CMP1", "ERR1"], 2))
    assert stats.done == 3


class BrokenUniverse:
    async def list_symbols(self):
        raise ConnectionError("exchangeInfo unreachable")


class ListUniverse:
    def __init__(self, symbols):
        self.symbols = symbols

    async def list_symbols(self):
        return list(self.symbols)


def test_universe_failure_is_fatal_before_dispatch():
    pipe = ScriptedPipeline()
    with pytest.raises(UniverseError):
        asyncio.run(Scanner(None, pipe).scan_universe(BrokenUniverse(), 4))
    assert pipe.seen == []


def test_scan_universe_scans_resolved_symbols():
    _, stats = asyncio.run(Scanner(None, ScriptedPipeline()).scan_universe(ListUniverse(["OK1", "ERR1"]), 4))
    assert stats.as_dict()["confirmed"] == 1
    assert stats.as_dict()["error"] == 1


class BarFetcher:
    def __init__(self, slow, fast, failing=()):
        self.slow = slow
        self.fast = fast
        self.failing = set(failing)

    async def fetch_klines(self, symbol, timeframe, limit):
        await asyncio.sleep(0)
        if symbol in self.failing:
            raise TimeoutError(f"{symbol} {timeframe} timed out")
        return list(self.slow if timeframe == "4h" else self.fast)[-limit:]


def test_scan_with_real_pipeline_isolates_fetch_errors():
    slow = [_c(i, 101, 104, 100, 102, 40) for i in range(29)] + [_c(29, 103, 106, 102.5, 105.5, 100)]
    fast = [_c(0, 104.5, 105.2, 104.0, 104.8)]
    fetcher = BarFetcher(slow, fast, failing={"XRPUSDT"})
    pipe = BreakoutPipeline(PipelineConfig(compression_bars=25, breakout_bars=25), RiskPolicy())

    signals, stats = asyncio.run(Scanner(fetcher, pipe).scan(["XRPUSDT", "ETHUSDT", "BTCUSDT"], 2))

    assert [s.symbol for s in signals] == ["BTCUSDT", "ETHUSDT"]
    assert stats.get("error") == 1
    assert stats.get("confirmed") == 2
    assert stats.done == 3


def test_statistics_keys_cover_all_outcomes():
    stats = ScanStatistics()
    asyncio.run(stats.record(Stage.TRAP))
    d = stats.as_dict()
    assert d["trap_rejected"] == 1
    for key in ("compression_rejected", "breakout_rejected", "retest_rejected", "error", "confirmed"):
        assert d[key] == 0
