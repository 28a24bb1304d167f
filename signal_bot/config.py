"""Runtime configuration for the signal bot."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from market_data import DEFAULT_INSTRUMENTS, InstrumentSpec, MarketDataConfig
from market_data.mock import DEFAULT_BASE_PRICE

from .signal_cache import SIGNALS_FILE
from .telegram_client import TelegramConfig

DEFAULT_SYMBOLS: Tuple[str, ...] = ("XAU/USD",)
FALLBACK_PIP_SIZE = 0.0001
FALLBACK_STOP_LOSS_PIPS = 150.0
FALLBACK_PRICE_DECIMALS = 5


@dataclass(frozen=True)
class SignalSettings:
    symbols: Tuple[str, ...] = DEFAULT_SYMBOLS
    instruments: Mapping[str, InstrumentSpec] = field(
        default_factory=lambda: dict(DEFAULT_INSTRUMENTS)
    )
    risk_reward_ratio: float = 2.5
    expiry_minutes: int = 240
    candle_interval: str = "1h"
    candle_count: int = 100

    def __post_init__(self) -> None:
        if not self.symbols:
            raise ValueError("at least one symbol is required")
        if self.risk_reward_ratio <= 0:
            raise ValueError("risk_reward_ratio must be positive")
        if self.expiry_minutes <= 0:
            raise ValueError("expiry_minutes must be positive")
        if self.candle_count < 30:
            raise ValueError("candle_count must be at least 30 for MACD warm-up")

    def instrument(self, symbol: str) -> InstrumentSpec:
        spec = self.instruments.get(symbol)
        if spec is not None:
            return spec
        return InstrumentSpec(
            symbol=symbol,
            pip_size=FALLBACK_PIP_SIZE,
            stop_loss_pips=FALLBACK_STOP_LOSS_PIPS,
            price_decimals=FALLBACK_PRICE_DECIMALS,
        )

    def pip_size(self, symbol: str) -> float:
        return self.instrument(symbol).pip_size


@dataclass(frozen=True)
class SchedulerSettings:
    generation_interval_minutes: int = 240
    generation_offset_minutes: int = 120
    tracker_interval_minutes: int = 15
    review_offset_minutes: int = 5
    recap_hour_utc: int = 18
    idle_sleep_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.generation_interval_minutes <= 0:
            raise ValueError("generation_interval_minutes must be positive")
        if self.generation_offset_minutes < 0:
            raise ValueError("generation_offset_minutes cannot be negative")
        if self.tracker_interval_minutes <= 0:
            raise ValueError("tracker_interval_minutes must be positive")
        if not 0 <= self.review_offset_minutes < self.generation_interval_minutes:
            raise ValueError("review_offset_minutes must fall inside the generation interval")
        if not 0 <= self.recap_hour_utc <= 23:
            raise ValueError("recap_hour_utc must be within 0..23")
        if self.idle_sleep_seconds <= 0:
            raise ValueError("idle_sleep_seconds must be positive")


@dataclass(frozen=True)
class CacheSettings:
    data_dir: Path = Path("./data")
    max_history: int = 100
    save_debounce_seconds: float = 0.1

    def __post_init__(self) -> None:
        if self.max_history < 1:
            raise ValueError("max_history must be at least 1")
        if self.save_debounce_seconds < 0:
            raise ValueError("save_debounce_seconds cannot be negative")

    @property
    def signals_file(self) -> Path:
        return self.data_dir / SIGNALS_FILE


@dataclass(frozen=True)
class BotConfig:
    market_data: MarketDataConfig
    signals: SignalSettings
    scheduler: SchedulerSettings
    cache: CacheSettings
    telegram: Optional[TelegramConfig] = None
    dry_run: bool = False
    publish_mock_signals: bool = False

    def __post_init__(self) -> None:
        if self.telegram is None and not self.dry_run:
            raise ValueError("Telegram settings are required unless running in dry-run mode")


def load_env_config(env_file: Path | None = None) -> Dict[str, str]:
    """Collect recognised settings from the environment, falling back to an env file."""
    file_values = load_env_file(env_file)

    def get(name: str) -> str:
        return os.getenv(name, file_values.get(name, "")).strip()

    return {
        "api_key": get("TWELVE_DATA_API_KEY"),
        "base_url": get("TWELVE_DATA_BASE_URL"),
        "rate_limit": get("MARKET_DATA_RATE_LIMIT"),
        "price_cache_ttl": get("PRICE_CACHE_TTL_SECONDS"),
        "symbols": get("SIGNAL_SYMBOLS"),
        "risk_reward": get("RISK_REWARD_RATIO"),
        "expiry_minutes": get("SIGNAL_EXPIRY_MINUTES"),
        "gold_stop_loss_pips": get("GOLD_STOP_LOSS_PIPS"),
        "instruments": get("SIGNAL_INSTRUMENTS"),
        "data_dir": get("SIGNAL_DATA_DIR"),
        "max_history": get("SIGNAL_MAX_HISTORY"),
        "save_debounce": get("SAVE_DEBOUNCE_SECONDS"),
        "generation_interval": get("GENERATION_INTERVAL_MINUTES"),
        "generation_offset": get("GENERATION_OFFSET_MINUTES"),
        "tracker_interval": get("TRACKER_INTERVAL_MINUTES"),
        "telegram_token": get("TELEGRAM_BOT_TOKEN"),
        "telegram_chat_id": get("TELEGRAM_CHAT_ID"),
        "telegram_proxy": get("TELEGRAM_PROXY"),
    }


def load_env_file(path: Path | None) -> Dict[str, str]:
    if path is None or not path.exists() or not path.is_file():
        return {}

    values: Dict[str, str] = {}
    for raw_line in path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].strip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key:
            values[key] = value
    return values


def parse_instrument_override(
    value: str, instruments: Mapping[str, InstrumentSpec]
) -> InstrumentSpec:
    """Parse ``SYMBOL=PIP_SIZE:STOP_LOSS_PIPS[:PRICE_DECIMALS]``.

    Fields not given keep the known instrument's values; unknown symbols start
    from the fallback conventions.
    """
    symbol, sep, rest = value.partition("=")
    symbol = symbol.strip().upper()
    parts = [part.strip() for part in rest.split(":")]
    if not sep or not symbol or len(parts) not in (2, 3) or not all(parts):
        raise ValueError(
            f"Invalid instrument setting {value!r}, expected SYMBOL=PIP_SIZE:STOP_LOSS_PIPS[:PRICE_DECIMALS]"
        )
    base = instruments.get(symbol)
    decimals = base.price_decimals if base else FALLBACK_PRICE_DECIMALS
    if len(parts) == 3:
        decimals = int(parts[2])
    return InstrumentSpec(
        symbol=symbol,
        pip_size=float(parts[0]),
        stop_loss_pips=float(parts[1]),
        price_decimals=decimals,
        mock_base_price=base.mock_base_price if base else DEFAULT_BASE_PRICE,
    )


def apply_instrument_overrides(
    instruments: Mapping[str, InstrumentSpec], values: Iterable[str]
) -> Dict[str, InstrumentSpec]:
    result = dict(instruments)
    for value in values:
        spec = parse_instrument_override(value, result)
        result[spec.symbol] = spec
    return result


def split_instrument_settings(raw: str) -> List[str]:
    return [token.strip() for token in raw.split(";") if token.strip()]
