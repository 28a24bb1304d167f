from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Mapping, Optional


def to_datetime(milliseconds: int) -> datetime:
    """Convert milliseconds since epoch to an aware UTC datetime."""
    return datetime.fromtimestamp(milliseconds / 1000, tz=timezone.utc)


def to_milliseconds(moment: datetime) -> int:
    """Convert a datetime to integer milliseconds since epoch."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def parse_quote_time(raw: str) -> datetime:
    """Parse the ``datetime`` field of a Twelve Data bar (exchange-local, treated as UTC)."""
    moment = datetime.fromisoformat(raw.strip())
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


class DataSource(str, Enum):
    """Which path produced a piece of market data."""

    LIVE = "live"
    MOCK = "mock"


@dataclass(frozen=True, slots=True)
class Candle:
    """Domain model representing a single OHLC(V) candle."""

    symbol: str
    interval: str
    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: Optional[float] = None

    @classmethod
    def from_twelvedata(cls, symbol: str, interval: str, payload: Mapping[str, str]) -> "Candle":
        """Build a candle from one entry of the Twelve Data ``values`` array."""
        raw_volume = payload.get("volume")
        return cls(
            symbol=symbol,
            interval=interval,
            open_time=parse_quote_time(payload["datetime"]),
            open=float(payload["open"]),
            high=float(payload["high"]),
            low=float(payload["low"]),
            close=float(payload["close"]),
            volume=float(raw_volume) if raw_volume not in (None, "") else None,
        )


@dataclass(frozen=True)
class CandleSeries:
    """Candles returned by the provider together with the path that produced them."""

    symbol: str
    interval: str
    candles: List[Candle]
    source: DataSource


@dataclass(frozen=True)
class PriceQuote:
    symbol: str
    price: float
    source: DataSource
    cached: bool = False


@dataclass(frozen=True)
class MarketSnapshot:
    """Candles plus the latest price for one symbol."""

    symbol: str
    candles: List[Candle]
    price: float
    source: DataSource
    timestamp: datetime


@dataclass(frozen=True)
class ApiUsage:
    calls_in_last_minute: int
    limit: int


@dataclass(frozen=True)
class InstrumentSpec:
    """Per-instrument pricing conventions."""

    symbol: str
    pip_size: float
    stop_loss_pips: float
    price_decimals: int = 2
    mock_base_price: float = 100.0

    def __post_init__(self) -> None:
        if self.pip_size <= 0:
            raise ValueError("pip_size must be positive")
        if self.stop_loss_pips <= 0:
            raise ValueError("stop_loss_pips must be positive")
        if self.price_decimals < 0:
            raise ValueError("price_decimals cannot be negative")
        if self.mock_base_price <= 0:
            raise ValueError("mock_base_price must be positive")


GOLD = InstrumentSpec(
    symbol="XAU/USD",
    pip_size=0.01,
    stop_loss_pips=150,
    price_decimals=3,
    mock_base_price=2650.50,
)
NAS100 = InstrumentSpec(
    symbol="NAS100",
    pip_size=1.0,
    stop_loss_pips=50,
    price_decimals=2,
    mock_base_price=21500.00,
)
DEFAULT_INSTRUMENTS = {spec.symbol: spec for spec in (GOLD, NAS100)}
