"""Builders and fakes shared by the test modules."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Sequence

from market_data import Candle, DataSource, PriceQuote
from signal_bot.models import CachedSignal, SignalDirection, SignalStatus

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock that also serves as a ``sleep`` replacement."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeMarket:
    """Stands in for MarketDataProvider.get_current_price."""

    def __init__(self, prices: Dict[str, float], source: DataSource = DataSource.LIVE) -> None:
        self.prices = dict(prices)
        self.source = source
        self.calls: List[str] = []

    def get_current_price(self, symbol: str) -> PriceQuote:
        self.calls.append(symbol)
        if symbol not in self.prices:
            raise RuntimeError(f"no price for {symbol}")
        return PriceQuote(symbol=symbol, price=self.prices[symbol], source=self.source)


def make_candles(closes: Sequence[float], symbol: str = "XAU/USD") -> List[Candle]:
    return [
        Candle(
            symbol=symbol,
            interval="1h",
            open_time=T0 + timedelta(hours=idx),
            open=close,
            high=close,
            low=close,
            close=close,
        )
        for idx, close in enumerate(closes)
    ]


def make_signal(**overrides) -> CachedSignal:
    fields = {
        "id": "sig-1",
        "symbol": "XAU/USD",
        "direction": SignalDirection.BUY,
        "entry_price": 2050.0,
        "stop_loss": 2045.0,
        "take_profit1": 2055.0,
        "take_profit2": 2060.0,
        "take_profit3": 2065.0,
        "confidence": 65,
        "created_at": T0,
        "expires_at": T0 + timedelta(hours=4),
        "status": SignalStatus.ACTIVE,
    }
    fields.update(overrides)
    return CachedSignal(**fields)


def make_sell_signal(**overrides) -> CachedSignal:
    fields = {
        "direction": SignalDirection.SELL,
        "stop_loss": 2055.0,
        "take_profit1": 2045.0,
        "take_profit2": 2040.0,
        "take_profit3": 2035.0,
    }
    fields.update(overrides)
    return make_signal(**fields)


