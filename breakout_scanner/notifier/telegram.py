from __future__ import annotations

import aiohttp
from typing import List, Optional
import logging

log = logging.getLogger("telegram")

_MAX_LEN = 4096


def split_message(text: str, limit: int = _MAX_LEN) -> List[str]:
    """Split on line boundaries so each chunk fits Telegram's message limit."""
    if len(text) <= limit:
        return [text]
    chunks: List[str] = []
    cur = ""
    for line in text.split("\n"):
        while len(line) > limit:
            if cur:
                chunks.append(cur)
                cur = ""
            chunks.append(line[:limit])
            line = line[limit:]
        candidate = f"{cur}\n{line}" if cur else line
        if len(candidate) > limit:
            chunks.append(cur)
            cur = line
        else:
            cur = candidate
    if cur:
        chunks.append(cur)
    return chunks


class TelegramNotifier:
    def __init__(self, token: str, chat_ids: List[str], *, disable_web_page_preview: bool = True, enabled: bool = True):
        self.token = (token or "").strip()
        self.chat_ids = [str(x).strip() for x in (chat_ids or []) if str(x).strip()]
        self.disable_web_page_preview = disable_web_page_preview
        self._enabled = bool(enabled)

    def enabled(self) -> bool:
        return self._enabled and bool(self.token) and bool(self.chat_ids)

    async def send(self, text: str, *, parse_mode: Optional[str] = None) -> None:
        if not self.enabled():
            return
        url = f"https://api.telegram.org/bot{self.token}/sendMessage"
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=15)) as sess:
            for chat_id in self.chat_ids:
                for chunk in split_message(text):
                    payload = {
                        "chat_id": chat_id,
                        "text": chunk,
                        "disable_web_page_preview": self.disable_web_page_preview,
                    }
                    if parse_mode:
                        payload["parse_mode"] = parse_mode
                    try:
                        async with sess.post(url, json=payload) as resp:
                            if resp.status != 200:
                                body = await resp.text()
                                log.warning("telegram_send_failed chat_id=%s status=%s body=%s", chat_id, resp.status, body[:2000])
                    except Exception as e:
                        log.exception("telegram_send_exception chat_id=%s err=%s", chat_id, e)
