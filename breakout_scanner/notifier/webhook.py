from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

import aiohttp

from ..formatters import signal_to_dict
from ..models import Signal

log = logging.getLogger("webhook")


class WebhookNotifier:
    def __init__(self, *, enabled: bool, url: str, secret: str, timeout_s: int, headers: dict):
        self.enabled = bool(enabled)
        self.url = url or ""
        self.secret = secret or ""
        self.timeout_s = int(timeout_s) if timeout_s is not None else 10
        self.headers = headers or {}

    def build_payload(self, signals: Sequence[Signal], stats: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "count": len(signals),
            "results": [signal_to_dict(s) for s in signals],
        }
        if stats is not None:
            payload["stats"] = dict(stats)
        if self.secret:
            payload["secret"] = self.secret
        return payload

    async def send_signals(self, signals: Sequence[Signal], stats: Optional[Dict[str, int]] = None) -> None:
        if not self.enabled or not self.url:
            return

        body = json.dumps(self.build_payload(signals, stats), separators=(",", ":"))
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_s)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, data=body, headers={"Content-Type": "application/json", **self.headers}) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        log.warning("webhook_bad_status status=%s body=%s", resp.status, text[:200])
                    else:
                        log.info("webhook_sent count=%d status=%s", len(signals), resp.status)
        except Exception as e:
            # Log but do not crash
            log.warning("webhook_post_failed err=%s", e)
