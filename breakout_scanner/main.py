from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import signal

from .config import ConfigError, load_config, validate_config
from .runner import ScanRunner
from .scanner import UniverseError


def _setup_logging(level: str) -> None:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def _install_cancel(cancel: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.set)
        except (NotImplementedError, RuntimeError):
            # no signal handlers on this platform/loop; Ctrl+C raises KeyboardInterrupt instead
            logging.getLogger("main").debug("signal_handler_unavailable sig=%s", sig)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Breakout Scanner - one batch scan of an exchange universe")
    p.add_argument("--config", required=True, help="Path to YAML config")
    p.add_argument("--concurrency", type=int, default=None, help="Override scan.concurrency")
    p.add_argument("--symbols", default=None, help="Comma-separated symbols (skips universe discovery)")
    p.add_argument("--variant", choices=("breakout", "fakeout"), default=None, help="Override strategy.variant")
    p.add_argument("--no-notify", action="store_true", help="Scan and log only; skip Telegram/webhook")
    return p


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    log = logging.getLogger("main")

    try:
        cfg = load_config(args.config)
        if args.concurrency is not None:
            cfg.scan.concurrency = args.concurrency
        if args.symbols:
            cfg.provider.symbols = [s.strip() for s in args.symbols.split(",") if s.strip()]
        if args.variant:
            cfg.strategy = dataclasses.replace(cfg.strategy, variant=args.variant)
        validate_config(cfg)
    except (ConfigError, OSError) as e:
        _setup_logging("INFO")
        log.error("config_invalid err=%s", e)
        return 1

    _setup_logging(cfg.app.log_level)
    runner = ScanRunner(cfg, notify=not args.no_notify)

    async def _run() -> None:
        cancel = asyncio.Event()
        _install_cancel(cancel)
        try:
            await runner.run_once(cancel=cancel)
        finally:
            await runner.close()

    try:
        asyncio.run(_run())
        return 0
    except KeyboardInterrupt:
        return 0
    except UniverseError as e:
        log.error("universe_failed err=%s", e)
        return 1
    except Exception as e:
        log.exception("fatal err=%s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
