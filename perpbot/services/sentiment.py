"""
Sentiment service — Fear & Greed index blended with headline tone.
===================================================================
Score is 0 (extreme fear) … 100 (extreme greed):

    score = 0.6 × FearGreed + 0.4 × news

The news component counts bullish vs bearish keyword hits per headline
(CryptoCompare news feed).  Results are cached per base asset.  Failures
come back as a FetchResult error; the caller decides to go neutral.
"""
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, Iterable, List, Optional

import requests
from pydantic import BaseModel, Field, ValidationError

from perpbot.services.results import FetchResult

logger = logging.getLogger(__name__)

FEAR_GREED_URL = "https://api.alternative.me/fng/"
NEWS_URL = "https://min-api.cryptocompare.com/data/v2/news/"

FEAR_GREED_WEIGHT = 0.6
NEWS_WEIGHT = 0.4
NEUTRAL_SCORE = 50

BULLISH_WORDS = frozenset({
    "surge", "soar", "rally", "bull", "bullish", "breakout", "pump", "gain", "gains",
    "rise", "rising", "higher", "ath", "buy", "buying", "accumulate", "adoption",
    "institutional", "etf", "approved", "profit", "growth", "positive", "optimism",
    "strong", "recover", "recovery", "rebound", "bounce", "partnership", "upgrade",
})
BEARISH_WORDS = frozenset({
    "crash", "plunge", "dump", "bear", "bearish", "breakdown", "fall", "falling",
    "drop", "drops", "decline", "lower", "sell", "selling", "selloff", "fear",
    "panic", "liquidation", "liquidated", "loss", "losses", "negative", "weak",
    "ban", "banned", "lawsuit", "investigation", "fraud", "hack", "hacked",
    "exploit", "scam", "collapse", "bankrupt", "warning", "correction", "dip",
})

_WORD_RE = re.compile(r"[a-z][a-z\-]*")


# ── API payloads ────────────────────────────────────────────────────────────

class FearGreedEntry(BaseModel):
    value: int = Field(ge=0, le=100)
    value_classification: str = ""


class FearGreedResponse(BaseModel):
    data: List[FearGreedEntry]


class NewsArticle(BaseModel):
    title: Optional[str] = ""
    body: Optional[str] = ""


class NewsResponse(BaseModel):
    Data: List[NewsArticle] = []


# ── Reading ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SentimentReading:
    score: int
    classification: str
    trading_bias: float         # +1 strong contrarian buy … -1 strong contrarian sell
    fear_greed: Optional[int] = None
    news_score: Optional[int] = None

    @classmethod
    def neutral(cls) -> "SentimentReading":
        return cls(NEUTRAL_SCORE, classify(NEUTRAL_SCORE), 0.0)


def classify(score: float) -> str:
    if score >= 80:
        return "Extreme Greed"
    if score >= 60:
        return "Greed"
    if score >= 40:
        return "Neutral"
    if score >= 20:
        return "Fear"
    return "Extreme Fear"


def trading_bias(score: float) -> float:
    return (50 - score) / 50


def score_headlines(articles: Iterable[NewsArticle]) -> int:
    """50 + (bullish share − bearish share) × 50, clamped to 0..100."""
    bullish = bearish = total = 0
    for article in articles:
        words = set(_WORD_RE.findall(f"{article.title or ''} {article.body or ''}".lower()))
        up, down = len(words & BULLISH_WORDS), len(words & BEARISH_WORDS)
        total += 1
        if up > down:
            bullish += 1
        elif down > up:
            bearish += 1
    if total == 0:
        return NEUTRAL_SCORE
    score = round(50 + (bullish / total - bearish / total) * 50)
    return max(0, min(100, score))


def combine(fear_greed: int, news: int) -> SentimentReading:
    score = round(FEAR_GREED_WEIGHT * fear_greed + NEWS_WEIGHT * news)
    return SentimentReading(score, classify(score), trading_bias(score), fear_greed, news)


class CacheEntry:
    """Cache entry with TTL"""

    def __init__(self, data, ttl_seconds: int):
        self.data = data
        self.expires_at = datetime.now() + timedelta(seconds=ttl_seconds)

    @property
    def is_valid(self) -> bool:
        return datetime.now() < self.expires_at


# ── Service ─────────────────────────────────────────────────────────────────

class SentimentService:
    """Best-effort market sentiment per base asset."""

    CACHE_TTL = 900

    def __init__(self, session: Optional[requests.Session] = None,
                 max_retries: int = 2, timeout: int = 10):
        self._session = session or requests.Session()
        self._session.headers.update({"Accept": "application/json",
                                      "User-Agent": "perpbot/1.0"})
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = Lock()
        self._max_retries = max_retries
        self._timeout = timeout

    def _get_json(self, url: str, params: Optional[dict] = None) -> Optional[dict]:
        for attempt in range(self._max_retries):
            try:
                response = self._session.get(url, params=params, timeout=self._timeout)
                response.raise_for_status()
                return response.json()
            except requests.exceptions.Timeout:
                logger.warning(f"Sentiment timeout {url} (attempt {attempt + 1}/{self._max_retries})")
            except requests.exceptions.RequestException as e:
                logger.warning(f"Sentiment request error {url}: {e} "
                               f"(attempt {attempt + 1}/{self._max_retries})")
            except ValueError as e:
                logger.warning(f"Sentiment response from {url} is not JSON: {e}")
                return None
            if attempt < self._max_retries - 1:
                time.sleep(2 ** attempt)
        return None

    def fetch_fear_greed(self) -> FetchResult[int]:
        payload = self._get_json(FEAR_GREED_URL, params={"limit": 1})
        if payload is None:
            return FetchResult.fail("alternative.me", "fear & greed index unavailable")
        try:
            parsed = FearGreedResponse.model_validate(payload)
        except ValidationError as e:
            return FetchResult.fail("alternative.me", f"bad payload: {e.error_count()} errors")
        if not parsed.data:
            return FetchResult.fail("alternative.me", "empty fear & greed payload")
        return FetchResult.ok(parsed.data[0].value)

    def fetch_news_score(self, base_asset: str) -> FetchResult[int]:
        payload = self._get_json(NEWS_URL, params={"categories": base_asset, "lang": "EN"})
        if payload is None:
            return FetchResult.fail("cryptocompare", "news feed unavailable")
        try:
            parsed = NewsResponse.model_validate(payload)
        except ValidationError as e:
            return FetchResult.fail("cryptocompare", f"bad payload: {e.error_count()} errors")
        return FetchResult.ok(score_headlines(parsed.Data[:20]))

    def get_sentiment(self, symbol: str) -> FetchResult[SentimentReading]:
        base = symbol.split("/")[0].upper()
        with self._lock:
            entry = self._cache.get(base)
            if entry and entry.is_valid:
                return FetchResult.ok(entry.data)

        fear_greed = self.fetch_fear_greed()
        if not fear_greed.success:
            return FetchResult(success=False, error=fear_greed.error)

        news = self.fetch_news_score(base)
        if not news.success:
            logger.info(f"News sentiment for {base} unavailable ({news.error}), using neutral")

        reading = combine(fear_greed.data, news.unwrap_or(NEUTRAL_SCORE))
        with self._lock:
            self._cache[base] = CacheEntry(reading, self.CACHE_TTL)
        logger.debug(f"Sentiment {base}: {reading.classification} ({reading.score})")
        return FetchResult.ok(reading)
