"""Deterministic synthetic market data used when the quote API is unavailable."""

from __future__ import annotations

import hashlib
import random
from datetime import datetime, timezone
from typing import Callable, List, Mapping, Optional

from .models import Candle, InstrumentSpec, to_datetime, to_milliseconds
from .twelvedata import interval_to_milliseconds

DEFAULT_BASE_PRICE = 100.0
PRICE_JITTER = 0.001
STEP_RANGE = 0.002
PRICE_BUCKET_MS = 60_000
DEFAULT_STEP_MS = 3_600_000


def _seeded_rng(*parts: object) -> random.Random:
    key = ":".join(str(part) for part in parts).encode("utf-8")
    seed = int.from_bytes(hashlib.sha256(key).digest()[:8], "big")
    return random.Random(seed)


class MockMarketData:
    """Random walk around a per-symbol base price.

    The generator is seeded from the symbol and the current time bucket, so the
    same symbol asked at the same moment always yields the same data.
    """

    def __init__(
        self,
        instruments: Mapping[str, InstrumentSpec] | None = None,
        *,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._instruments = dict(instruments or {})
        self._now = now or (lambda: datetime.now(timezone.utc))

    def base_price(self, symbol: str) -> float:
        spec = self._instruments.get(symbol)
        return spec.mock_base_price if spec else DEFAULT_BASE_PRICE

    def price(self, symbol: str, at: Optional[datetime] = None) -> float:
        moment = at or self._now()
        bucket = to_milliseconds(moment) // PRICE_BUCKET_MS
        rng = _seeded_rng(symbol, "price", bucket)
        base = self.base_price(symbol)
        return base + (rng.random() - 0.5) * base * PRICE_JITTER

    def candles(self, symbol: str, interval: str = "1h", count: int = 100) -> List[Candle]:
        if count <= 0:
            return []
        try:
            step_ms = interval_to_milliseconds(interval)
        except ValueError:
            step_ms = DEFAULT_STEP_MS
        now_ms = to_milliseconds(self._now())
        last_open_ms = now_ms - now_ms % step_ms
        rng = _seeded_rng(symbol, interval, last_open_ms)

        price = self.price(symbol)
        candles: List[Candle] = []
        for idx in range(count - 1, -1, -1):
            change = (rng.random() - 0.5) * price * STEP_RANGE
            open_ = price
            close = price + change
            high = max(open_, close) + rng.random() * abs(change)
            low = min(open_, close) - rng.random() * abs(change)
            candles.append(
                Candle(
                    symbol=symbol,
                    interval=interval,
                    open_time=to_datetime(last_open_ms - idx * step_ms),
                    open=open_,
                    high=high,
                    low=low,
                    close=close,
                    volume=float(rng.randrange(10_000)),
                )
            )
            price = close
        return candles
