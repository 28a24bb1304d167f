from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import requests

from .models import Candle

TWELVE_DATA_BASE_URL = "https://api.twelvedata.com"
MAX_OUTPUT_SIZE = 5000


class MarketDataError(RuntimeError):
    """Raised when the quote API answers with an error payload or unusable data."""


def interval_to_milliseconds(interval: str) -> int:
    """Translate Twelve Data interval strings into millisecond durations."""
    normalized = interval.strip()
    mapping = {
        "1min": 60_000,
        "5min": 300_000,
        "15min": 900_000,
        "30min": 1_800_000,
        "45min": 2_700_000,
        "1h": 3_600_000,
        "2h": 7_200_000,
        "4h": 14_400_000,
        "8h": 28_800_000,
        "1day": 86_400_000,
        "1week": 604_800_000,
        "1month": 2_592_000_000,  # 30 days
    }
    if normalized not in mapping:
        raise ValueError(f"Unsupported interval: {interval}")
    return mapping[normalized]


@dataclass(frozen=True)
class MarketDataConfig:
    api_key: str = ""
    base_url: str = TWELVE_DATA_BASE_URL
    timeout: float = 10.0
    proxies: Dict[str, str] | None = None
    rate_limit_per_minute: int = 8
    price_cache_ttl_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.rate_limit_per_minute < 1:
            raise ValueError("rate_limit_per_minute must be at least 1")
        if self.price_cache_ttl_seconds < 0:
            raise ValueError("price_cache_ttl_seconds cannot be negative")

    @property
    def live(self) -> bool:
        return bool(self.api_key.strip())


class TwelveDataClient:
    """Minimal Twelve Data REST client for bars and spot quotes."""

    def __init__(
        self,
        config: MarketDataConfig,
        logger: logging.Logger | None = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base_url = config.base_url.rstrip("/")
        self._api_key = config.api_key
        self._timeout = config.timeout
        self._log = logger or logging.getLogger(__name__)
        self._session = session or requests.Session()
        if config.proxies:
            self._session.proxies = config.proxies
            self._log.debug("Twelve Data: using proxies %s", config.proxies)

    def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        query = dict(params)
        query["apikey"] = self._api_key
        resp = self._session.get(f"{self._base_url}{path}", params=query, timeout=self._timeout)
        resp.raise_for_status()
        payload = resp.json()
        if not isinstance(payload, dict):
            raise MarketDataError(f"Unexpected payload type from {path}: {type(payload).__name__}")
        if payload.get("status") == "error":
            raise MarketDataError(f"Twelve Data error on {path}: {payload.get('message', 'unknown error')}")
        return payload

    def fetch_time_series(self, *, symbol: str, interval: str, output_size: int) -> List[Candle]:
        """Return candles for ``symbol`` ordered oldest first."""
        if output_size <= 0 or output_size > MAX_OUTPUT_SIZE:
            raise ValueError(f"output_size must be in 1..{MAX_OUTPUT_SIZE}")
        payload = self._get(
            "/time_series",
            {"symbol": symbol, "interval": interval, "outputsize": output_size},
        )
        values = payload.get("values") or []
        if not isinstance(values, list):
            raise MarketDataError(f"Malformed candle payload for {symbol}: values is not a list")
        if not values:
            raise MarketDataError(f"No candle data received for {symbol}")
        if not all(isinstance(item, Mapping) for item in values):
            raise MarketDataError(f"Malformed candle payload for {symbol}: non-object entry in values")
        try:
            candles = [Candle.from_twelvedata(symbol, interval, item) for item in values]
        except (KeyError, TypeError, ValueError) as exc:
            raise MarketDataError(f"Malformed candle payload for {symbol}: {exc}") from exc
        # The API answers newest first.
        candles.reverse()
        return candles

    def fetch_price(self, symbol: str) -> float:
        payload = self._get("/price", {"symbol": symbol})
        raw = payload.get("price")
        if raw in (None, ""):
            raise MarketDataError(f"No price data for {symbol}")
        try:
            price = float(raw)
        except (TypeError, ValueError) as exc:
            raise MarketDataError(f"Invalid price for {symbol}: {raw!r}") from exc
        if price != price or price <= 0:
            raise MarketDataError(f"Invalid price for {symbol}: {raw!r}")
        return price

    def close(self) -> None:
        self._session.close()
