from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from market_data import DataSource, MarketDataProvider, PriceQuote

from .config import SignalSettings
from .models import CachedSignal, SignalDirection, SignalStats, SignalStatus
from .signal_cache import SignalCache


@dataclass(frozen=True)
class LevelHit:
    status: SignalStatus
    label: str


@dataclass(frozen=True)
class TrackingResult:
    signal: CachedSignal
    previous_status: SignalStatus
    new_status: SignalStatus
    hit_price: float
    pnl_pips: float
    hit_level: str


@dataclass(frozen=True)
class ExpiryResult:
    signal: CachedSignal
    price: float
    pnl_pips: float


def calculate_pips(signal: CachedSignal, price: float, pip_size: float) -> float:
    """Price move in the signal's favour, in pips (negative when against it)."""
    if signal.direction is SignalDirection.BUY:
        diff = price - signal.entry_price
    else:
        diff = signal.entry_price - price
    return round(diff / pip_size, 1)


def check_levels(signal: CachedSignal, price: float) -> Optional[LevelHit]:
    """Return the level reached by ``price``.

    Stop-loss wins over any take-profit touched in the same tick, and the
    farthest take-profit reached is reported.
    """
    if signal.direction is SignalDirection.BUY:
        def reached(level: float) -> bool:
            return price >= level

        stopped = price <= signal.stop_loss
    else:
        def reached(level: float) -> bool:
            return price <= level

        stopped = price >= signal.stop_loss

    if stopped:
        return LevelHit(SignalStatus.LOSS_SL, "Stop Loss")
    if signal.take_profit3 is not None and reached(signal.take_profit3):
        return LevelHit(SignalStatus.WIN_TP3, "TP3")
    if signal.take_profit2 is not None and reached(signal.take_profit2):
        return LevelHit(SignalStatus.WIN_TP2, "TP2")
    if reached(signal.take_profit1):
        return LevelHit(SignalStatus.WIN_TP1, "TP1")
    return None


class PriceTracker:
    """Closes cached signals when price reaches their levels or they expire."""

    def __init__(
        self,
        cache: SignalCache,
        market_data: MarketDataProvider,
        settings: SignalSettings,
        *,
        now: Callable[[], datetime] | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._cache = cache
        self._market_data = market_data
        self._settings = settings
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._log = logger or logging.getLogger(__name__)

    def _usable(self, signal: CachedSignal, quote: PriceQuote) -> bool:
        """A live signal is only settled against a live price."""
        if signal.data_source is DataSource.LIVE and quote.source is DataSource.MOCK:
            self._log.warning(
                "Skipping signal %s this cycle: only a mock price is available for %s",
                signal.id,
                signal.symbol,
            )
            return False
        return True

    def check_signal(self, signal: CachedSignal) -> Optional[TrackingResult]:
        try:
            quote = self._market_data.get_current_price(signal.symbol)
            if not self._usable(signal, quote):
                return None
            price = quote.price
            hit = check_levels(signal, price)
            if hit is None:
                return None

            pnl_pips = calculate_pips(signal, price, self._settings.pip_size(signal.symbol))
            updated = self._cache.update(
                signal.id,
                status=hit.status,
                closed_at=self._now(),
                closed_price=price,
                pnl_pips=pnl_pips,
            )
            if updated is None:
                self._log.warning("Signal %s vanished from the cache before closing", signal.id)
                return None
        except Exception:
            self._log.exception("Failed to check signal %s", signal.id)
            return None

        self._log.info(
            "Signal %s closed: %s @ %s (%s pips)", signal.id, hit.label, price, pnl_pips
        )
        return TrackingResult(
            signal=updated,
            previous_status=signal.status,
            new_status=hit.status,
            hit_price=price,
            pnl_pips=pnl_pips,
            hit_level=hit.label,
        )

    def check_all_signals(self) -> List[TrackingResult]:
        active = self._cache.get_active()
        if not active:
            self._log.info("No active signals to check")
            return []

        self._log.info("Checking %s active signals...", len(active))
        results: List[TrackingResult] = []
        for signal in active:
            result = self.check_signal(signal)
            if result is not None:
                results.append(result)
        return results

    def review_expired_signals(self, now: Optional[datetime] = None) -> List[ExpiryResult]:
        moment = now or self._now()
        expired = self._cache.get_expired(moment)
        if not expired:
            self._log.info("No expired signals to review")
            return []

        self._log.info("Reviewing %s expired signals...", len(expired))
        results: List[ExpiryResult] = []
        for signal in expired:
            try:
                quote = self._market_data.get_current_price(signal.symbol)
                if not self._usable(signal, quote):
                    continue
                price = quote.price
                pnl_pips = calculate_pips(signal, price, self._settings.pip_size(signal.symbol))
                updated = self._cache.update(
                    signal.id,
                    status=SignalStatus.EXPIRED,
                    closed_at=moment,
                    closed_price=price,
                    pnl_pips=pnl_pips,
                )
            except Exception:
                self._log.exception("Failed to review expired signal %s", signal.id)
                continue
            if updated is None:
                continue
            self._log.info(
                "Signal %s marked EXPIRED @ %s (%s pips unrealized)", signal.id, price, pnl_pips
            )
            results.append(ExpiryResult(signal=updated, price=price, pnl_pips=pnl_pips))
        return results

    def get_stats(
        self, since: Optional[datetime] = None, source: Optional[DataSource] = None
    ) -> SignalStats:
        return self._cache.get_stats(since, source)
