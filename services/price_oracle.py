"""
Price oracle adapter

Spot and historical USD prices for trade open/close snapshots. Every
failure mode (timeout, HTTP error, unknown symbol, zero price) surfaces as
UpstreamUnavailableError so callers abort before touching the ledger.

Default provider: CoinGecko public API
    GET /simple/price?ids=bitcoin&vs_currencies=usd
    GET /coins/bitcoin/market_chart/range?vs_currency=usd&from=..&to=..
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from config import Config
from utils.datetime_helpers import from_timestamp_ms, get_naive_utc_now
from utils.exception_handler import UpstreamUnavailableError

logger = logging.getLogger(__name__)

# Ticker -> CoinGecko coin id; unknown tickers are tried lower-cased
COINGECKO_SYMBOL_MAP = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "USDT": "tether",
    "USDC": "usd-coin",
}


@dataclass(frozen=True)
class PriceQuote:
    symbol: str
    price: Decimal
    at: datetime


class PriceOracle:
    """Interface the trade engine depends on"""

    async def get_spot(self, symbol: str) -> PriceQuote:
        raise NotImplementedError

    async def get_historical(self, symbol: str, timestamp_ms: int) -> PriceQuote:
        raise NotImplementedError


def symbol_to_coin_id(symbol: str) -> str:
    return COINGECKO_SYMBOL_MAP.get(symbol.upper(), symbol.lower())


def _to_price(value: Any, symbol: str) -> Decimal:
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise UpstreamUnavailableError(f"Invalid price for {symbol}")
    if not price.is_finite() or price <= 0:
        raise UpstreamUnavailableError(f"No price available for {symbol}")
    return price


def _usable_points(points: Any) -> List[Tuple[float, Any]]:
    """[timestamp_ms, price] pairs with a finite numeric timestamp; anything else is dropped"""
    if not isinstance(points, list):
        return []
    usable = []
    for point in points:
        if not isinstance(point, (list, tuple)) or len(point) < 2:
            continue
        at = point[0]
        if isinstance(at, bool) or not isinstance(at, (int, float)) or not math.isfinite(at):
            continue
        usable.append((at, point[1]))
    if len(usable) < len(points):
        logger.warning(f"⚠️ PRICE_API_MALFORMED: dropped {len(points) - len(usable)} unusable price points")
    return usable


class CoinGeckoPriceOracle(PriceOracle):
    """CoinGecko-backed oracle over aiohttp with a bounded request timeout"""

    def __init__(self, base_url: Optional[str] = None, timeout_seconds: Optional[float] = None,
                 api_key: Optional[str] = None, history_window_ms: Optional[int] = None):
        self.base_url = (base_url or Config.PRICE_API_URL).rstrip("/")
        self.timeout_seconds = timeout_seconds or Config.PRICE_API_TIMEOUT_SECONDS
        self.api_key = api_key if api_key is not None else Config.PRICE_API_KEY
        self.history_window_ms = history_window_ms or Config.PRICE_HISTORY_WINDOW_MS

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Any:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key

        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(headers=headers) as session:
                async with session.get(url, params=params, timeout=timeout) as response:
                    if response.status != 200:
                        logger.warning(f"📉 PRICE_API_ERROR: {path} returned HTTP {response.status}")
                        raise UpstreamUnavailableError("Price service unavailable")
                    return await response.json(content_type=None)
        except asyncio.TimeoutError:
            logger.warning(f"⏰ PRICE_API_TIMEOUT: {path} after {self.timeout_seconds}s")
            raise UpstreamUnavailableError("Price service timed out")
        except aiohttp.ClientError as e:
            logger.warning(f"📉 PRICE_API_NETWORK_ERROR: {path}: {e}")
            raise UpstreamUnavailableError("Price service unavailable")

    async def get_spot(self, symbol: str) -> PriceQuote:
        coin_id = symbol_to_coin_id(symbol)
        payload = await self._get_json("/simple/price", {"ids": coin_id, "vs_currencies": "usd"})

        entry = payload.get(coin_id) if isinstance(payload, dict) else None
        usd = entry.get("usd") if isinstance(entry, dict) else None
        if usd is None:
            raise UpstreamUnavailableError(f"Symbol not found: {symbol.upper()}")

        quote = PriceQuote(symbol=symbol.upper(), price=_to_price(usd, symbol), at=get_naive_utc_now())
        logger.debug(f"Spot {quote.symbol} = {quote.price}")
        return quote

    async def get_historical(self, symbol: str, timestamp_ms: int) -> PriceQuote:
        """Price point closest to timestamp_ms within the configured window"""
        coin_id = symbol_to_coin_id(symbol)
        params = {
            "vs_currency": "usd",
            "from": (timestamp_ms - self.history_window_ms) // 1000,
            "to": (timestamp_ms + self.history_window_ms) // 1000,
        }
        payload = await self._get_json(f"/coins/{coin_id}/market_chart/range", params)

        points = _usable_points(payload.get("prices") if isinstance(payload, dict) else None)
        if not points:
            raise UpstreamUnavailableError(f"No price data for {symbol.upper()}")

        closest = min(points, key=lambda point: abs(point[0] - timestamp_ms))
        try:
            at = from_timestamp_ms(int(closest[0]))
        except (OverflowError, ValueError, OSError):
            raise UpstreamUnavailableError(f"Invalid price timestamp for {symbol.upper()}")
        return PriceQuote(symbol=symbol.upper(), price=_to_price(closest[1], symbol), at=at)


_default_oracle: Optional[PriceOracle] = None


def get_price_oracle() -> PriceOracle:
    global _default_oracle
    if _default_oracle is None:
        _default_oracle = CoinGeckoPriceOracle()
    return _default_oracle
