"""
Market data service — OHLCV candles from a ccxt exchange.
Every call returns a FetchResult; ccxt errors never escape.
"""
import logging
import time
from typing import Dict, List, Optional

import ccxt

from perpbot.services.results import FetchResult
from perpbot.services.strategies.models import Candle

logger = logging.getLogger(__name__)


class MarketDataService:
    """Candle source backed by ccxt public endpoints (no API keys needed)."""

    def __init__(self, exchange_id: str = "binance", exchange=None,
                 max_retries: int = 3, retry_delay: float = 1.0):
        if exchange is None:
            exchange_cls = getattr(ccxt, exchange_id, None)
            if exchange_cls is None:
                raise ValueError(f"Unknown ccxt exchange '{exchange_id}'")
            exchange = exchange_cls({"enableRateLimit": True})
        self._exchange = exchange
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._consecutive_failures = 0

    # ── Candles ───────────────────────────────────────────────────────────

    def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> FetchResult[List[Candle]]:
        """Fetch ``limit`` candles, oldest first."""
        for attempt in range(self._max_retries):
            try:
                rows = self._exchange.fetch_ohlcv(symbol, timeframe, limit=limit)
                candles = sorted((Candle.from_ohlcv(r) for r in rows or []),
                                 key=lambda c: c.timestamp)
                if not candles:
                    return FetchResult.fail("ccxt", f"no candles for {symbol} {timeframe}")
                self._consecutive_failures = 0
                return FetchResult.ok(candles)

            except (ccxt.NetworkError, ccxt.RequestTimeout) as e:
                logger.warning(f"{symbol} {timeframe} fetch failed "
                               f"(attempt {attempt + 1}/{self._max_retries}): {e}")
            except ccxt.BaseError as e:
                # Bad symbol, exchange-side rejection: retrying won't help
                self._consecutive_failures += 1
                logger.error(f"{symbol} {timeframe} fetch error: {e}")
                return FetchResult.fail("ccxt", str(e))

            if attempt < self._max_retries - 1:
                time.sleep(self._retry_delay * 2 ** attempt)

        self._consecutive_failures += 1
        logger.error(f"{symbol} {timeframe} failed after {self._max_retries} retries "
                     f"(consecutive failures: {self._consecutive_failures})")
        return FetchResult.fail("ccxt", f"{symbol} {timeframe} unavailable after retries")

    def fetch_timeframes(self, symbol: str,
                         limits: Dict[str, int]) -> FetchResult[Dict[str, List[Candle]]]:
        """Fetch several timeframes; any single failure fails the whole set."""
        out: Dict[str, List[Candle]] = {}
        for timeframe, limit in limits.items():
            result = self.fetch_candles(symbol, timeframe, limit)
            if not result.success:
                return FetchResult(success=False, error=result.error)
            out[timeframe] = result.data
        return FetchResult.ok(out)

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures
