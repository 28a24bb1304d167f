"""Market data access: Twelve Data client, rate limiting and mock fallback."""

from .mock import MockMarketData
from .models import (
    ApiUsage,
    Candle,
    CandleSeries,
    DataSource,
    DEFAULT_INSTRUMENTS,
    GOLD,
    InstrumentSpec,
    MarketSnapshot,
    NAS100,
    PriceQuote,
)
from .provider import MarketDataProvider
from .rate_limiter import SlidingWindowRateLimiter
from .twelvedata import MarketDataConfig, MarketDataError, TwelveDataClient

__all__ = [
    "ApiUsage",
    "Candle",
    "CandleSeries",
    "DataSource",
    "DEFAULT_INSTRUMENTS",
    "GOLD",
    "InstrumentSpec",
    "MarketDataConfig",
    "MarketDataError",
    "MarketDataProvider",
    "MarketSnapshot",
    "MockMarketData",
    "NAS100",
    "PriceQuote",
    "SlidingWindowRateLimiter",
    "TwelveDataClient",
]
