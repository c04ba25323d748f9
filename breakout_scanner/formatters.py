from __future__ import annotations

import html
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

from .indicators import pct_change
from .models import Signal


def _fmt_ms(ts_ms: int, tz=timezone.utc) -> str:
    dt = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).astimezone(tz)
    return dt.strftime("%Y-%m-%d %H:%M")


def _escape_markdown_v2(text: str) -> str:
    specials = r"\_*[]()~`>#+-=|{}.!"
    escaped = []
    for ch in str(text):
        if ch in specials:
            escaped.append("\\" + ch)
        else:
            escaped.append(ch)
    return "".join(escaped)


def _escape_text(text: str, parse_mode: str) -> str:
    if parse_mode == "MARKDOWNV2":
        return _escape_markdown_v2(text)
    return html.escape(str(text), quote=False)


def _bold(text: str, parse_mode: str) -> str:
    escaped = _escape_text(text, parse_mode)
    if parse_mode == "MARKDOWNV2":
        return f"*{escaped}*"
    return f"<b>{escaped}</b>"


def _code(text: str, parse_mode: str) -> str:
    if parse_mode == "MARKDOWNV2":
        # inside code spans only backslash and backtick need escaping
        escaped = str(text).replace("\\", "\\\\").replace("`", "\\`")
        return f"`{escaped}`"
    return f"<code>{html.escape(str(text), quote=False)}</code>"


def _fmt_price(val: Optional[float]) -> str:
    if val is None:
        return "-"
    return f"{val:.6g}"


def _format_one(idx: int, sig: Signal, parse_mode: str, *, include_trailing: bool) -> str:
    ref_dist = pct_change(sig.entry_price, sig.reference_level)
    lines = [
        f"{_bold(f'{idx}. {sig.symbol}', parse_mode)} {_escape_text(f'{sig.side.value} ({sig.variant})', parse_mode)}",
        f"{_escape_text('   Entry: ', parse_mode)}{_code(_fmt_price(sig.entry_price), parse_mode)}",
        f"{_escape_text('   Stop: ', parse_mode)}{_code(_fmt_price(sig.stop_loss), parse_mode)}"
        + _escape_text(f" ({sig.risk_pct:.2f}%, {sig.stop_method})", parse_mode),
        f"{_escape_text('   Target: ', parse_mode)}{_code(_fmt_price(sig.take_profit), parse_mode)}"
        + _escape_text(f" (R:R {sig.risk_reward:g})", parse_mode),
    ]
    ref_line = f"   Ref: {_fmt_price(sig.reference_level)}"
    if ref_dist is not None:
        ref_line += f" ({ref_dist:+.2f}%)"
    lines.append(_escape_text(ref_line, parse_mode))
    if include_trailing and sig.trailing is not None:
        lines.append(_escape_text(
            f"   Trail: after +{sig.trailing.activation_pct * 100:.1f}%, {sig.trailing.distance_pct * 100:.1f}% behind",
            parse_mode,
        ))
    return "\n".join(lines)


def format_signals(signals: Sequence[Signal], stats: Optional[Dict[str, int]], cfg, *, title: str = "") -> str:
    """Telegram message for one finished scan."""
    parse_mode = (getattr(cfg, "parse_mode", "HTML") or "HTML").upper()
    include_stats = getattr(cfg, "include_stats", True)
    max_signals = int(getattr(cfg, "max_signals", 30) or 0)

    lines = []
    if title:
        lines.append(_escape_text(title, parse_mode))
    if not signals:
        lines.append(_escape_text("Scan complete: no setups found.", parse_mode))
    else:
        lines.append(_bold(f"Found {len(signals)} setup(s)", parse_mode))
        lines.append("")
        shown = signals[:max_signals] if max_signals > 0 else signals
        for i, sig in enumerate(shown, start=1):
            lines.append(_format_one(i, sig, parse_mode, include_trailing=getattr(cfg, "include_trailing", True)))
            lines.append("")
        if len(shown) < len(signals):
            lines.append(_escape_text(f"... and {len(signals) - len(shown)} more", parse_mode))

    if include_stats and stats:
        parts = [f"{k}={v}" for k, v in stats.items() if v]
        if parts:
            lines.append(_escape_text("Stats: " + " ".join(parts), parse_mode))

    return "\n".join(lines).rstrip()


def signal_to_dict(sig: Signal) -> Dict[str, Any]:
    d: Dict[str, Any] = {
        "symbol": sig.symbol,
        "side": sig.side.value,
        "variant": sig.variant,
        "reference_level": sig.reference_level,
        "entry_price": sig.entry_price,
        "stop_loss": sig.stop_loss,
        "take_profit": sig.take_profit,
        "stop_method": sig.stop_method,
        "risk_reward": sig.risk_reward,
        "confirm_time_ms": int(sig.confirm_time_ms),
        "confirm_time": _fmt_ms(sig.confirm_time_ms),
    }
    if sig.compression_low is not None:
        d["compression_low"] = sig.compression_low
    if sig.trailing is not None:
        d["trailing"] = {
            "activation_pct": sig.trailing.activation_pct,
            "distance_pct": sig.trailing.distance_pct,
        }
    return d
