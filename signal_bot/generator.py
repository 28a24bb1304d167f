from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, List, Optional, Sequence
from uuid import uuid4

from market_data import Candle, InstrumentSpec, MarketDataProvider

from .config import SignalSettings
from .indicators import Crossover, analyze_indicators
from .models import CachedSignal, SignalDirection, SignalStatus

MIN_CONFIDENCE = 50
RSI_WEIGHT = 30
MACD_WEIGHT = 35
EMA_WEIGHT = 35
PARTIAL_WEIGHT = 15
TAKE_PROFIT_MULTIPLIERS = (0.5, 1.0, 1.5)


@dataclass(frozen=True)
class SignalAnalysis:
    direction: Optional[SignalDirection]
    confidence: int
    reasons: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SignalLevels:
    stop_loss: float
    take_profit1: float
    take_profit2: float
    take_profit3: float


def analyze_market(candles: Sequence[Candle]) -> SignalAnalysis:
    """Score bullish and bearish evidence; below ``MIN_CONFIDENCE`` no direction is given."""
    indicators = analyze_indicators(candles)
    reasons: List[str] = []
    bullish = 0
    bearish = 0

    rsi = indicators.rsi
    if rsi.oversold:
        bullish += RSI_WEIGHT
        reasons.append("RSI oversold (<=30)")
    elif rsi.overbought:
        bearish += RSI_WEIGHT
        reasons.append("RSI overbought (>=70)")
    elif rsi.value < 45:
        bullish += PARTIAL_WEIGHT
        reasons.append("RSI showing bullish momentum")
    elif rsi.value > 55:
        bearish += PARTIAL_WEIGHT
        reasons.append("RSI showing bearish momentum")

    macd = indicators.macd
    if macd.bullish and macd.histogram > 0:
        bullish += MACD_WEIGHT
        reasons.append("MACD histogram positive")
    elif not macd.bullish and macd.histogram < 0:
        bearish += MACD_WEIGHT
        reasons.append("MACD histogram negative")

    ema = indicators.ema
    if ema.crossover is Crossover.BULLISH:
        bullish += EMA_WEIGHT
        reasons.append("EMA bullish crossover (9 > 21)")
    elif ema.crossover is Crossover.BEARISH:
        bearish += EMA_WEIGHT
        reasons.append("EMA bearish crossover (9 < 21)")
    elif ema.fast > ema.slow:
        bullish += PARTIAL_WEIGHT
        reasons.append("Fast EMA above slow EMA")
    else:
        bearish += PARTIAL_WEIGHT
        reasons.append("Fast EMA below slow EMA")

    confidence = min(max(abs(bullish - bearish), 0), 100)
    if confidence < MIN_CONFIDENCE:
        return SignalAnalysis(direction=None, confidence=confidence, reasons=reasons)

    direction = SignalDirection.BUY if bullish > bearish else SignalDirection.SELL
    return SignalAnalysis(direction=direction, confidence=confidence, reasons=reasons)


def _round_price(value: Decimal, decimals: int) -> float:
    quantum = Decimal(1).scaleb(-decimals)
    return float(value.quantize(quantum, rounding=ROUND_HALF_UP))


def calculate_levels(
    entry_price: float,
    direction: SignalDirection,
    instrument: InstrumentSpec,
    risk_reward: float,
) -> SignalLevels:
    """Stop-loss from the instrument's pip distance, take-profits at 0.5/1.0/1.5 x reward."""
    entry = Decimal(str(entry_price))
    sl_distance = Decimal(str(instrument.stop_loss_pips)) * Decimal(str(instrument.pip_size))
    tp_distance = sl_distance * Decimal(str(risk_reward))
    sign = Decimal(1) if direction is SignalDirection.BUY else Decimal(-1)

    tp1, tp2, tp3 = (
        _round_price(entry + sign * tp_distance * Decimal(str(mult)), instrument.price_decimals)
        for mult in TAKE_PROFIT_MULTIPLIERS
    )
    return SignalLevels(
        stop_loss=_round_price(entry - sign * sl_distance, instrument.price_decimals),
        take_profit1=tp1,
        take_profit2=tp2,
        take_profit3=tp3,
    )


class SignalGenerator:
    """Turns market snapshots into cached-signal records."""

    def __init__(
        self,
        market_data: MarketDataProvider,
        settings: SignalSettings,
        *,
        now: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._market_data = market_data
        self._settings = settings
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._id_factory = id_factory or (lambda: uuid4().hex)
        self._log = logger or logging.getLogger(__name__)

    def generate_signal(self, symbol: str) -> Optional[CachedSignal]:
        try:
            snapshot = self._market_data.get_market_data(
                symbol, self._settings.candle_interval, self._settings.candle_count
            )
            analysis = analyze_market(snapshot.candles)
            if analysis.direction is None:
                self._log.info(
                    "No clear signal for %s (confidence: %s%%)", symbol, analysis.confidence
                )
                return None

            instrument = self._settings.instrument(symbol)
            entry_price = _round_price(Decimal(str(snapshot.price)), instrument.price_decimals)
            levels = calculate_levels(
                entry_price, analysis.direction, instrument, self._settings.risk_reward_ratio
            )
            created_at = self._now()
            signal = CachedSignal(
                id=self._id_factory(),
                symbol=symbol,
                direction=analysis.direction,
                entry_price=entry_price,
                stop_loss=levels.stop_loss,
                take_profit1=levels.take_profit1,
                take_profit2=levels.take_profit2,
                take_profit3=levels.take_profit3,
                confidence=analysis.confidence,
                created_at=created_at,
                expires_at=created_at + timedelta(minutes=self._settings.expiry_minutes),
                status=SignalStatus.ACTIVE,
                data_source=snapshot.source,
            )
        except Exception:
            self._log.exception("Failed to generate signal for %s", symbol)
            return None

        self._log.info(
            "Signal generated: %s %s @ %s (%s data) - %s",
            symbol,
            signal.direction.value,
            signal.entry_price,
            signal.data_source.value,
            ", ".join(analysis.reasons),
        )
        return signal

    def generate_all_signals(self) -> List[CachedSignal]:
        signals: List[CachedSignal] = []
        for symbol in self._settings.symbols:
            signal = self.generate_signal(symbol)
            if signal is not None:
                signals.append(signal)
        return signals
