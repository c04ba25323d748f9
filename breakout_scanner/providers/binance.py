from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from ..models import Candle

log = logging.getLogger("binance")

_HOSTS = {"futures": "https://fapi.binance.com", "spot": "https://api.binance.com"}
_PREFIX = {"futures": "/fapi/v1", "spot": "/api/v3"}
_MAX_BACKOFF_S = 20.0


class BinanceError(RuntimeError):
    """Non-retryable REST failure, or retries exhausted."""


def endpoint(market: str, name: str) -> str:
    """Absolute URL of a public endpoint, e.g. endpoint("futures", "klines")."""
    key = "futures" if market == "futures" else "spot"
    return f"{_HOSTS[key]}{_PREFIX[key]}/{name}"


def parse_klines(rows: Sequence[Sequence[Any]]) -> List[Candle]:
    # kline row layout: open time, o, h, l, c, volume, close time, ...
    return [
        Candle(
            open_time_ms=int(r[0]),
            close_time_ms=int(r[6]),
            open=float(r[1]),
            high=float(r[2]),
            low=float(r[3]),
            close=float(r[4]),
            volume=float(r[5]),
        )
        for r in rows
    ]


def filter_symbols(info: Dict[str, Any], market: str, quote_asset: str = "USDT") -> List[str]:
    """Tradable symbols from an exchangeInfo payload, sorted."""
    quote = (quote_asset or "").upper()
    out: List[str] = []
    for s in info.get("symbols", []) or []:
        if s.get("status") != "TRADING":
            continue
        if quote and s.get("quoteAsset") != quote:
            continue
        if market == "futures":
            if s.get("contractType") != "PERPETUAL":
                continue
        elif s.get("isSpotTradingAllowed") is False:
            continue
        sym = s.get("symbol")
        if sym:
            out.append(str(sym).upper())
    out.sort()
    return out


def _retry_delay(resp: aiohttp.ClientResponse, backoff: float) -> float:
    retry_after = resp.headers.get("Retry-After", "")
    return float(retry_after) if retry_after.isdigit() else backoff


class BinanceProvider:
    """Public REST market data: klines and the tradable symbol list.

    One aiohttp session is shared by all workers. Rate-limit answers (418/429)
    and transport errors are retried with exponential backoff; any other
    non-200 status raises ``BinanceError`` straight away.
    """

    def __init__(
        self,
        market: str = "futures",
        *,
        quote_asset: str = "USDT",
        timeout_s: float = 20,
        max_retries: int = 4,
        backoff_s: float = 0.8,
        max_connections: int = 40,
    ):
        self.market = market
        self.quote_asset = quote_asset
        self.timeout_s = float(timeout_s)
        self.max_retries = max(1, int(max_retries))
        self.backoff_s = float(backoff_s)
        self.max_connections = int(max_connections)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_s, sock_connect=min(10.0, self.timeout_s))
            connector = aiohttp.TCPConnector(limit=self.max_connections, ttl_dns_cache=300)
            self._session = aiohttp.ClientSession(timeout=timeout, connector=connector)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(self, name: str, params: Optional[Dict[str, Any]] = None, *, what: str = "") -> Any:
        url = endpoint(self.market, name)
        client = await self._client()
        delay = self.backoff_s
        failure: Optional[BaseException] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                async with client.get(url, params=params) as resp:
                    if resp.status in (418, 429):
                        wait = _retry_delay(resp, delay)
                        failure = BinanceError(f"{name} rate limited ({resp.status})")
                        log.warning("rate_limited status=%d %s attempt=%d wait=%.1fs", resp.status, what, attempt, wait)
                    elif resp.status != 200:
                        body = await resp.text()
                        raise BinanceError(f"{name} returned {resp.status}: {body[:300]}")
                    else:
                        return await resp.json(content_type=None)
            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                failure = e
                wait = delay
                log.warning("request_failed %s attempt=%d/%d err=%r", what, attempt, self.max_retries, e)

            if attempt < self.max_retries:
                await asyncio.sleep(wait)
                delay = min(delay * 2.0, _MAX_BACKOFF_S)

        raise BinanceError(f"{name} failed after {self.max_retries} attempts: {failure}") from failure

    async def fetch_klines(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        params = {"symbol": symbol.upper(), "interval": timeframe, "limit": int(limit)}
        rows = await self._request("klines", params, what=f"symbol={symbol} tf={timeframe}")
        return parse_klines(rows)

    async def list_symbols(self) -> List[str]:
        info = await self._request("exchangeInfo", what="exchangeInfo")
        symbols = filter_symbols(info, self.market, self.quote_asset)
        log.info("universe_loaded market=%s quote=%s symbols=%d", self.market, self.quote_asset, len(symbols))
        return symbols
