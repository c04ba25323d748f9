from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional
import os
import yaml


class ConfigError(ValueError):
    """Configuration invariant violated; raised before any scan starts."""


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    # basic parsing
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            return value
    return env_val


def _env_list(env_key: str) -> Optional[List[str]]:
    raw = os.getenv(env_key)
    if not raw:
        return None
    return [x.strip() for x in raw.split(",") if x.strip()]


@dataclass
class AppConfig:
    name: str = "Breakout Scanner"
    log_level: str = "INFO"


@dataclass
class ProviderConfig:
    type: str = "binance"
    market: str = "futures"  # futures|spot
    quote_asset: str = "USDT"
    symbols: List[str] = None  # explicit list skips universe discovery
    exclude_symbols: List[str] = None
    max_symbols: int = 0  # 0 = no cap
    rest_timeout_s: int = 20
    rest_max_retries: int = 4


@dataclass
class ScanConfig:
    concurrency: int = 10
    progress_interval_s: float = 0.1


@dataclass(frozen=True)
class PipelineConfig:
    variant: str = "breakout"  # breakout | fakeout
    slow_timeframe: str = "4h"
    fast_timeframe: str = "15m"
    slow_limit: int = 200
    fast_limit: int = 100

    # breakout-confirmation
    compression_bars: int = 40
    compression_max_ratio: float = 0.12
    breakout_bars: int = 50
    breakout_price_multiplier: float = 1.002
    volume_ma_period: int = 20
    breakout_volume_multiplier: float = 1.5
    retest_multiplier: float = 0.995

    # fakeout-rejection
    trap_lookback: int = 50
    trap_pierce_multiplier: float = 1.002
    trap_volume_multiplier: float = 1.2
    trap_wick_body_ratio: float = 1.5
    require_downtrend: bool = False
    trend_timeframe: str = "1d"
    trend_ma_period: int = 50
    trend_limit: int = 100


@dataclass(frozen=True)
class RiskPolicy:
    stop_method: str = "resistance_below"  # resistance_below | compression_low | atr
    below_pct: float = 0.02
    buffer_multiplier: float = 1.0
    # entry within thin_margin_pct of the reference -> widen the buffer
    thin_margin_pct: float = 0.005
    thin_margin_buffer_multiplier: float = 1.5
    compression_buffer_pct: float = 0.002
    atr_period: int = 14
    atr_multiplier: float = 1.5
    min_risk_pct: float = 0.01
    risk_reward: float = 2.5

    trailing_enabled: bool = False
    trailing_activation_pct: float = 0.02
    trailing_distance_pct: float = 0.01


@dataclass
class TelegramConfig:
    enabled: bool = True
    token: str = ""
    chat_ids: List[str] = None
    disable_web_page_preview: bool = True


@dataclass
class WebhookConfig:
    enabled: bool = False
    url: str = ""
    secret: str = ""
    timeout_s: int = 10
    headers: Dict[str, str] = None


@dataclass
class AlertsConfig:
    parse_mode: str = "HTML"  # HTML | MarkdownV2
    include_stats: bool = True
    include_trailing: bool = True
    notify_empty: bool = True
    max_signals: int = 30


@dataclass
class Config:
    app: AppConfig
    provider: ProviderConfig
    scan: ScanConfig
    strategy: PipelineConfig
    risk: RiskPolicy
    telegram: TelegramConfig
    webhook: WebhookConfig
    alerts: AlertsConfig


VARIANTS = ("breakout", "fakeout")
STOP_METHODS = ("resistance_below", "compression_low", "atr")


def _build(cls, raw: Optional[Dict[str, Any]], section: str):
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"'{section}' must be a mapping, got {type(raw).__name__}")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"unknown keys in '{section}': {', '.join(unknown)}")
    return cls(**raw)


def default_config() -> Config:
    cfg = Config(
        app=AppConfig(),
        provider=ProviderConfig(),
        scan=ScanConfig(),
        strategy=PipelineConfig(),
        risk=RiskPolicy(),
        telegram=TelegramConfig(),
        webhook=WebhookConfig(),
        alerts=AlertsConfig(),
    )
    _fill_defaults(cfg)
    return cfg


def _fill_defaults(cfg: Config) -> None:
    if cfg.provider.symbols is None:
        cfg.provider.symbols = []
    if cfg.provider.exclude_symbols is None:
        cfg.provider.exclude_symbols = []
    if cfg.telegram.chat_ids is None:
        cfg.telegram.chat_ids = []
    if cfg.webhook.headers is None:
        cfg.webhook.headers = {}


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"config root must be a mapping, got {type(raw).__name__}")

    cfg = Config(
        app=_build(AppConfig, raw.get("app"), "app"),
        provider=_build(ProviderConfig, raw.get("provider"), "provider"),
        scan=_build(ScanConfig, raw.get("scan"), "scan"),
        strategy=_build(PipelineConfig, raw.get("strategy"), "strategy"),
        risk=_build(RiskPolicy, raw.get("risk"), "risk"),
        telegram=_build(TelegramConfig, raw.get("telegram"), "telegram"),
        webhook=_build(WebhookConfig, raw.get("webhook"), "webhook"),
        alerts=_build(AlertsConfig, raw.get("alerts"), "alerts"),
    )
    _fill_defaults(cfg)

    # env overrides (useful on servers)
    cfg.telegram.token = _env_override(cfg.telegram.token, "TELEGRAM_TOKEN")
    chat_env = _env_list("TELEGRAM_CHAT_IDS")
    if chat_env:
        cfg.telegram.chat_ids = chat_env

    cfg.webhook.secret = _env_override(cfg.webhook.secret, "WEBHOOK_SECRET")
    cfg.webhook.url = _env_override(cfg.webhook.url, "WEBHOOK_URL")
    cfg.scan.concurrency = _env_override(cfg.scan.concurrency, "SCAN_CONCURRENCY")

    validate_config(cfg)
    return cfg


_FIELD_TYPES = {
    "int": (int,),
    "float": (int, float),
    "str": (str,),
    "bool": (bool,),
    "List[str]": (list,),
    "Dict[str, str]": (dict,),
}


def _check_types(cfg: Config) -> List[str]:
    errs: List[str] = []
    for section in fields(cfg):
        obj = getattr(cfg, section.name)
        for f in fields(obj):
            expected = _FIELD_TYPES.get(f.type)
            if expected is None:
                continue
            v = getattr(obj, f.name)
            # bool is an int subclass; only accept it where a bool is declared
            if not isinstance(v, expected) or (isinstance(v, bool) and f.type != "bool"):
                errs.append(f"{section.name}.{f.name} must be {f.type}, got {v!r}")
    return errs


def validate_config(cfg: Config) -> None:
    errs = _check_types(cfg)
    if errs:
        raise ConfigError("Config violation: " + "; ".join(errs))

    st = cfg.strategy
    risk = cfg.risk

    if st.variant not in VARIANTS:
        errs.append(f"strategy.variant must be one of {VARIANTS}, got {st.variant!r}")
    if int(cfg.scan.concurrency) < 1:
        errs.append("scan.concurrency must be >= 1")
    if float(cfg.scan.progress_interval_s) <= 0:
        errs.append("scan.progress_interval_s must be > 0")
    if cfg.provider.market not in ("futures", "spot"):
        errs.append("provider.market must be futures or spot")

    for name in ("compression_bars", "breakout_bars", "trap_lookback"):
        if int(getattr(st, name)) < 2:
            errs.append(f"strategy.{name} must be >= 2")
    for name in ("volume_ma_period", "trend_ma_period"):
        if int(getattr(st, name)) < 1:
            errs.append(f"strategy.{name} must be >= 1")
    for name in (
        "compression_max_ratio",
        "breakout_price_multiplier",
        "breakout_volume_multiplier",
        "retest_multiplier",
        "trap_pierce_multiplier",
        "trap_volume_multiplier",
        "trap_wick_body_ratio",
    ):
        if float(getattr(st, name)) <= 0:
            errs.append(f"strategy.{name} must be > 0")
    # the volume average must be computable on the breakout and trap windows
    if int(st.volume_ma_period) > int(st.breakout_bars):
        errs.append("strategy.volume_ma_period must not exceed strategy.breakout_bars")
    if int(st.volume_ma_period) > int(st.trap_lookback):
        errs.append("strategy.volume_ma_period must not exceed strategy.trap_lookback")
    if int(st.slow_limit) < max(int(st.compression_bars), int(st.breakout_bars), int(st.trap_lookback)):
        errs.append("strategy.slow_limit is shorter than the longest slow-timeframe window")

    if risk.stop_method not in STOP_METHODS:
        errs.append(f"risk.stop_method must be one of {STOP_METHODS}, got {risk.stop_method!r}")
    if float(risk.risk_reward) <= 0:
        errs.append("risk.risk_reward must be > 0")
    for name in ("below_pct", "compression_buffer_pct", "min_risk_pct", "thin_margin_pct",
                 "trailing_activation_pct", "trailing_distance_pct"):
        v = float(getattr(risk, name))
        if not (0.0 < v < 1.0):
            errs.append(f"risk.{name} must be in (0, 1)")
    for name in ("buffer_multiplier", "thin_margin_buffer_multiplier", "atr_multiplier"):
        if float(getattr(risk, name)) <= 0:
            errs.append(f"risk.{name} must be > 0")
    if int(risk.atr_period) < 1:
        errs.append("risk.atr_period must be >= 1")
    # the widest reference buffer must leave a positive stop price
    widest = float(risk.below_pct) * max(float(risk.buffer_multiplier), float(risk.thin_margin_buffer_multiplier))
    if widest >= 1.0:
        errs.append("risk.below_pct times the larger buffer multiplier must be < 1")

    if cfg.alerts.parse_mode.upper() not in ("HTML", "MARKDOWNV2"):
        errs.append("alerts.parse_mode must be HTML or MarkdownV2")

    if errs:
        raise ConfigError("Config violation: " + "; ".join(errs))
