from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional, Tuple

import requests

from .mock import MockMarketData
from .models import (
    ApiUsage,
    CandleSeries,
    DataSource,
    InstrumentSpec,
    MarketSnapshot,
    PriceQuote,
)
from .rate_limiter import SlidingWindowRateLimiter
from .twelvedata import MarketDataConfig, MarketDataError, TwelveDataClient

# Transport, HTTP status and payload problems all degrade to mock data.
FALLBACK_ERRORS = (requests.RequestException, MarketDataError, ValueError)


class MarketDataProvider:
    """Candles and spot prices with rate limiting, a price cache and a mock fallback.

    The provider never raises for upstream problems: every failure is logged and
    answered with synthetic data tagged ``DataSource.MOCK``.
    """

    def __init__(
        self,
        config: MarketDataConfig,
        *,
        instruments: Mapping[str, InstrumentSpec] | None = None,
        client: Optional[TwelveDataClient] = None,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        mock: Optional[MockMarketData] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._config = config
        self._log = logger or logging.getLogger(__name__)
        self._clock = clock
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._client = client
        if self._client is None and config.live:
            self._client = TwelveDataClient(config, logger=self._log)
        self._limiter = limiter or SlidingWindowRateLimiter(
            config.rate_limit_per_minute, 60.0, clock=clock, logger=self._log
        )
        self._mock = mock or MockMarketData(instruments, now=self._now)
        self._price_cache: Dict[str, Tuple[float, float]] = {}

        if not config.live:
            self._log.warning("Market data API key not set - using mock data")

    @property
    def live(self) -> bool:
        return self._config.live and self._client is not None

    def fetch_candles(self, symbol: str, interval: str = "1h", count: int = 100) -> CandleSeries:
        if not self.live:
            return self._mock_candles(symbol, interval, count)

        self._limiter.acquire()
        self._log.info(
            "API call: time_series %s (%s/%s in last min)",
            symbol,
            self._limiter.calls_in_window(),
            self._limiter.max_calls,
        )
        try:
            candles = self._client.fetch_time_series(
                symbol=symbol, interval=interval, output_size=count
            )
        except FALLBACK_ERRORS as exc:
            self._log.warning("Failed to fetch candles for %s, using mock data: %s", symbol, exc)
            return self._mock_candles(symbol, interval, count)
        return CandleSeries(symbol=symbol, interval=interval, candles=candles, source=DataSource.LIVE)

    def get_current_price(self, symbol: str) -> PriceQuote:
        if not self.live:
            return self._mock_price(symbol)

        cached = self._price_cache.get(symbol)
        if cached is not None:
            price, stored_at = cached
            if self._clock() - stored_at < self._config.price_cache_ttl_seconds:
                self._log.debug("Using cached price for %s: %.2f", symbol, price)
                return PriceQuote(symbol=symbol, price=price, source=DataSource.LIVE, cached=True)

        self._limiter.acquire()
        self._log.info(
            "API call: price %s (%s/%s in last min)",
            symbol,
            self._limiter.calls_in_window(),
            self._limiter.max_calls,
        )
        try:
            price = self._client.fetch_price(symbol)
        except FALLBACK_ERRORS as exc:
            self._log.warning("Failed to fetch price for %s, using mock price: %s", symbol, exc)
            return self._mock_price(symbol)

        self._price_cache[symbol] = (price, self._clock())
        return PriceQuote(symbol=symbol, price=price, source=DataSource.LIVE)

    def get_market_data(self, symbol: str, interval: str = "1h", count: int = 100) -> MarketSnapshot:
        """Candles then price, fetched one after the other to respect the limiter."""
        series = self.fetch_candles(symbol, interval, count)
        quote = self.get_current_price(symbol)
        source = DataSource.LIVE
        if DataSource.MOCK in (series.source, quote.source):
            source = DataSource.MOCK
        return MarketSnapshot(
            symbol=symbol,
            candles=series.candles,
            price=quote.price,
            source=source,
            timestamp=self._now(),
        )

    def api_usage(self) -> ApiUsage:
        return ApiUsage(
            calls_in_last_minute=self._limiter.calls_in_window(),
            limit=self._limiter.max_calls,
        )

    def close(self) -> None:
        if self._client is not None:
            self._client.close()

    def _mock_candles(self, symbol: str, interval: str, count: int) -> CandleSeries:
        return CandleSeries(
            symbol=symbol,
            interval=interval,
            candles=self._mock.candles(symbol, interval, count),
            source=DataSource.MOCK,
        )

    def _mock_price(self, symbol: str) -> PriceQuote:
        price = self._mock.price(symbol)
        self._log.debug("Mock price for %s: %.2f", symbol, price)
        return PriceQuote(symbol=symbol, price=price, source=DataSource.MOCK)
