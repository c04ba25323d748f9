from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .models import Outcome, Signal, Stage

log = logging.getLogger("scanner")

DEFAULT_CONCURRENCY = 10


class UniverseError(RuntimeError):
    """The instrument universe could not be resolved; nothing to scan."""


@dataclass(frozen=True)
class ScanProgress:
    done: int
    total: int
    elapsed_s: float


ProgressCallback = Callable[[ScanProgress], None]


class ScanStatistics:
    """Per-stage outcome counters for one scan. Writers serialize on a lock."""

    KEYS = tuple(s.counter_key for s in Stage)

    def __init__(self, total: int = 0) -> None:
        self.lock = asyncio.Lock()
        self.total = total
        self.counts: Counter = Counter()

    async def record(self, stage: Stage) -> None:
        async with self.lock:
            self.counts[stage.counter_key] += 1

    @property
    def done(self) -> int:
        return sum(self.counts.values())

    def get(self, key: str) -> int:
        return self.counts.get(key, 0)

    def as_dict(self) -> Dict[str, int]:
        return {k: self.counts.get(k, 0) for k in self.KEYS}

    def summary(self) -> str:
        parts = [f"{k}={v}" for k, v in self.as_dict().items() if v]
        return " ".join(parts) if parts else "empty"


class Scanner:
    """Runs a pipeline over many symbols with a fixed number of workers.

    Workers pull symbols from one shared queue, so a slow symbol only holds up
    its own worker. Each symbol yields exactly one outcome; a failure while
    fetching or evaluating one symbol is counted as ``error`` and never
    reaches the others.
    """

    def __init__(
        self,
        fetcher,
        pipeline,
        *,
        progress: Optional[ProgressCallback] = None,
        progress_interval_s: float = 0.1,
    ):
        self.fetcher = fetcher
        self.pipeline = pipeline
        self.progress = progress
        self.progress_interval_s = float(progress_interval_s)

    async def scan_universe(
        self,
        universe,
        concurrency: int = DEFAULT_CONCURRENCY,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> Tuple[List[Signal], ScanStatistics]:
        try:
            symbols = await universe.list_symbols()
        except Exception as e:
            raise UniverseError(f"failed to resolve instrument universe: {e}") from e
        return await self.scan(symbols, concurrency, cancel=cancel)

    async def scan(
        self,
        symbols: Sequence[str],
        concurrency: int = DEFAULT_CONCURRENCY,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> Tuple[List[Signal], ScanStatistics]:
        total = len(symbols)
        stats = ScanStatistics(total=total)
        signals: List[Signal] = []
        if total == 0:
            return signals, stats

        workers = min(max(1, int(concurrency)), total)
        queue: asyncio.Queue = asyncio.Queue()
        for sym in symbols:
            queue.put_nowait(sym)

        started = time.monotonic()
        log.info("scan_start symbols=%d workers=%d variant=%s", total, workers, getattr(self.pipeline, "variant", "?"))

        finished = asyncio.Event()
        reporter = None
        if self.progress is not None:
            reporter = asyncio.create_task(self._report_progress(stats, started, finished))

        tasks = [asyncio.create_task(self._worker(i, queue, stats, signals, cancel)) for i in range(workers)]
        try:
            await asyncio.gather(*tasks)
        finally:
            for t in tasks:
                if not t.done():
                    t.cancel()
            finished.set()
            if reporter is not None:
                await reporter

        signals.sort(key=lambda s: s.symbol)
        elapsed = time.monotonic() - started
        if cancel is not None and cancel.is_set() and stats.done < total:
            log.warning("scan_cancelled done=%d total=%d elapsed=%.1fs", stats.done, total, elapsed)
        log.info("scan_done done=%d total=%d signals=%d elapsed=%.1fs %s", stats.done, total, len(signals), elapsed, stats.summary())
        return signals, stats

    async def _worker(
        self,
        worker_id: int,
        queue: asyncio.Queue,
        stats: ScanStatistics,
        signals: List[Signal],
        cancel: Optional[asyncio.Event],
    ) -> None:
        while True:
            if cancel is not None and cancel.is_set():
                return
            try:
                symbol = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            outcome = await self._evaluate_one(symbol)
            if outcome.signal is not None:
                signals.append(outcome.signal)
            await stats.record(outcome.stage)

    async def _evaluate_one(self, symbol: str) -> Outcome:
        try:
            outcome = await self.pipeline.evaluate(symbol, self.fetcher)
        except Exception as e:
            log.warning("symbol_failed symbol=%s err=%r", symbol, e)
            return Outcome(symbol=symbol, stage=Stage.ERROR, detail=repr(e))
        if outcome.stage is Stage.CONFIRMED:
            sig = outcome.signal
            log.info(
                "signal %s %s entry=%s sl=%s tp=%s ref=%s method=%s",
                sig.symbol,
                sig.side.value,
                sig.entry_price,
                sig.stop_loss,
                sig.take_profit,
                sig.reference_level,
                sig.stop_method,
            )
        return outcome

    async def _report_progress(self, stats: ScanStatistics, started: float, finished: asyncio.Event) -> None:
        # samples the counters on a timer; workers never wait on this
        while True:
            try:
                await asyncio.wait_for(finished.wait(), timeout=self.progress_interval_s)
            except asyncio.TimeoutError:
                pass
            self._emit(ScanProgress(done=stats.done, total=stats.total, elapsed_s=time.monotonic() - started))
            if finished.is_set():
                return

    def _emit(self, p: ScanProgress) -> None:
        try:
            self.progress(p)
        except Exception as e:
            log.warning("progress_sink_failed err=%s", e)
