from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .config import Config, validate_config
from .formatters import format_signals
from .models import Signal
from .notifier.telegram import TelegramNotifier
from .notifier.webhook import WebhookNotifier
from .pipeline import build_pipeline
from .providers.binance import BinanceProvider
from .scanner import ScanProgress, ScanStatistics, Scanner

log = logging.getLogger("runner")
progress_log = logging.getLogger("progress")


class StaticUniverse:
    def __init__(self, symbols: Sequence[str]):
        self.symbols = [s.strip().upper() for s in symbols if s and s.strip()]

    async def list_symbols(self) -> List[str]:
        return list(self.symbols)


class FilteredUniverse:
    """Applies the configured exclusions and cap on top of another universe."""

    def __init__(self, source, *, exclude: Sequence[str] = (), max_symbols: int = 0):
        self.source = source
        self.exclude = {s.strip().upper() for s in exclude or [] if s and s.strip()}
        self.max_symbols = int(max_symbols or 0)

    async def list_symbols(self) -> List[str]:
        out = []
        for sym in await self.source.list_symbols():
            sym = sym.upper()
            if sym in self.exclude or sym in out:
                continue
            out.append(sym)
        if self.max_symbols > 0:
            out = out[: self.max_symbols]
        return out


class ProgressLogger:
    """Logs progress at most once per ``every_s`` seconds plus the final sample."""

    def __init__(self, every_s: float = 5.0):
        self.every_s = float(every_s)
        self._last_logged: Optional[float] = None

    def __call__(self, p: ScanProgress) -> None:
        final = p.done >= p.total
        if not final and self._last_logged is not None and p.elapsed_s - self._last_logged < self.every_s:
            return
        self._last_logged = p.elapsed_s
        pct = (p.done / p.total * 100.0) if p.total else 100.0
        progress_log.info("progress done=%d total=%d pct=%.0f elapsed=%.1fs", p.done, p.total, pct, p.elapsed_s)


@dataclass
class ScanResult:
    signals: List[Signal]
    stats: ScanStatistics

    @property
    def counts(self) -> Dict[str, int]:
        return self.stats.as_dict()


class ScanRunner:
    def __init__(self, cfg: Config, *, provider=None, notify: bool = True):
        validate_config(cfg)
        self.cfg = cfg
        self.notify = notify
        self.provider = provider or BinanceProvider(
            market=cfg.provider.market,
            quote_asset=cfg.provider.quote_asset,
            timeout_s=cfg.provider.rest_timeout_s,
            max_retries=cfg.provider.rest_max_retries,
            max_connections=max(10, 4 * int(cfg.scan.concurrency)),
        )
        self.pipeline = build_pipeline(cfg.strategy, cfg.risk)
        self.scanner = Scanner(
            self.provider,
            self.pipeline,
            progress=ProgressLogger(),
            progress_interval_s=cfg.scan.progress_interval_s,
        )
        self.tg = TelegramNotifier(
            token=cfg.telegram.token,
            chat_ids=cfg.telegram.chat_ids,
            disable_web_page_preview=cfg.telegram.disable_web_page_preview,
            enabled=cfg.telegram.enabled,
        )
        self.webhook = WebhookNotifier(
            enabled=cfg.webhook.enabled,
            url=cfg.webhook.url,
            secret=cfg.webhook.secret,
            timeout_s=cfg.webhook.timeout_s,
            headers=cfg.webhook.headers or {},
        )

    def universe(self):
        if self.cfg.provider.symbols:
            source = StaticUniverse(self.cfg.provider.symbols)
        else:
            source = self.provider
        return FilteredUniverse(
            source,
            exclude=self.cfg.provider.exclude_symbols or [],
            max_symbols=self.cfg.provider.max_symbols,
        )

    async def run_once(self, cancel: Optional[asyncio.Event] = None) -> ScanResult:
        log.info(
            "run_start name=%s market=%s variant=%s stop_method=%s rr=%s",
            self.cfg.app.name,
            self.cfg.provider.market,
            self.cfg.strategy.variant,
            self.cfg.risk.stop_method,
            self.cfg.risk.risk_reward,
        )
        signals, stats = await self.scanner.scan_universe(
            self.universe(),
            int(self.cfg.scan.concurrency),
            cancel=cancel,
        )
        log.info("run_stats total=%d %s", stats.total, stats.summary())

        if self.notify:
            await self._deliver(signals, stats)
        return ScanResult(signals=signals, stats=stats)

    async def _deliver(self, signals: List[Signal], stats: ScanStatistics) -> None:
        if not signals and not self.cfg.alerts.notify_empty:
            return

        if self.webhook.enabled:
            try:
                await self.webhook.send_signals(signals, stats.as_dict())
            except Exception as e:
                log.warning("webhook_send_failed count=%d err=%s", len(signals), e)

        if not self.tg.enabled():
            return
        alerts_cfg = self.cfg.alerts
        parse_mode = getattr(alerts_cfg, "parse_mode", "HTML") or "HTML"
        msg = format_signals(signals, stats.as_dict(), alerts_cfg, title=self.cfg.app.name)
        await self.tg.send(msg, parse_mode=parse_mode)

    async def close(self) -> None:
        close = getattr(self.provider, "close", None)
        if close is not None:
            await close()
