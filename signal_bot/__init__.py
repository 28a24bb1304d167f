"""Signal lifecycle bot: generate, cache, track and report trading signals."""

from .config import BotConfig, CacheSettings, SchedulerSettings, SignalSettings
from .generator import SignalGenerator, analyze_market, calculate_levels
from .models import CachedSignal, SignalDirection, SignalStateError, SignalStats, SignalStatus
from .price_tracker import PriceTracker, check_levels
from .scheduler import IntervalJob, SignalScheduler
from .signal_cache import SignalCache
from .telegram_client import DryRunPublisher, TelegramClient, TelegramConfig

__all__ = [
    "BotConfig",
    "CacheSettings",
    "CachedSignal",
    "DryRunPublisher",
    "IntervalJob",
    "PriceTracker",
    "SchedulerSettings",
    "SignalCache",
    "SignalDirection",
    "SignalGenerator",
    "SignalScheduler",
    "SignalSettings",
    "SignalStateError",
    "SignalStats",
    "SignalStatus",
    "TelegramClient",
    "TelegramConfig",
    "analyze_market",
    "calculate_levels",
    "check_levels",
]
