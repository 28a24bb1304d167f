from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Sequence

from market_data.models import Candle


# ======================
# Result types
# ======================

class Crossover(str, Enum):
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    NONE = "NONE"


@dataclass(frozen=True)
class RSIResult:
    value: float
    overbought: bool
    oversold: bool


@dataclass(frozen=True)
class MACDResult:
    macd: float
    signal: float
    histogram: float
    bullish: bool


@dataclass(frozen=True)
class EMAResult:
    fast: float
    slow: float
    crossover: Crossover


@dataclass(frozen=True)
class IndicatorSnapshot:
    rsi: RSIResult
    macd: MACDResult
    ema: EMAResult


NEUTRAL_RSI = RSIResult(value=50.0, overbought=False, oversold=False)
EMPTY_MACD = MACDResult(macd=0.0, signal=0.0, histogram=0.0, bullish=False)
EMPTY_EMA = EMAResult(fast=0.0, slow=0.0, crossover=Crossover.NONE)


# ======================
# Indicator helpers
# ======================

def calculate_ema(values: Sequence[float], period: int) -> List[float]:
    """Exponential moving average seeded with a simple average.

    Element ``i`` of the result lines up with input index ``period - 1 + i``.
    Inputs shorter than ``period`` yield a single value: the mean of what exists.
    """
    if period <= 0:
        raise ValueError("period must be positive")
    if not values:
        return []

    seed_count = min(period, len(values))
    ema_prev = sum(values[:seed_count]) / seed_count
    result = [ema_prev]
    k = 2.0 / (period + 1)

    for i in range(period, len(values)):
        ema_prev = (values[i] - ema_prev) * k + ema_prev
        result.append(ema_prev)

    return result


def calculate_rsi(candles: Sequence[Candle], period: int = 14) -> RSIResult:
    if period <= 0:
        raise ValueError("period must be positive")
    if len(candles) < period + 1:
        return NEUTRAL_RSI

    closes = [c.close for c in candles]
    gains: List[float] = []
    losses: List[float] = []
    for i in range(1, len(closes)):
        change = closes[i] - closes[i - 1]
        gains.append(change if change > 0 else 0.0)
        losses.append(-change if change < 0 else 0.0)

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period

    # Wilder's smoothing
    for i in range(period, len(gains)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period

    if avg_loss == 0 and avg_gain == 0:
        value = 50.0
    elif avg_loss == 0:
        value = 100.0
    else:
        rs = avg_gain / avg_loss
        value = 100.0 - (100.0 / (1.0 + rs))

    return RSIResult(
        value=round(value, 2),
        overbought=value >= 70,
        oversold=value <= 30,
    )


def calculate_macd(
    candles: Sequence[Candle],
    fast_period: int = 12,
    slow_period: int = 26,
    signal_period: int = 9,
) -> MACDResult:
    if not 0 < fast_period < slow_period:
        raise ValueError("fast_period must be positive and below slow_period")
    closes = [c.close for c in candles]
    if len(closes) < slow_period:
        return EMPTY_MACD

    fast_ema = calculate_ema(closes, fast_period)
    slow_ema = calculate_ema(closes, slow_period)

    offset = slow_period - fast_period
    macd_line = [fast_ema[i + offset] - slow_ema[i] for i in range(len(slow_ema))]
    signal_line = calculate_ema(macd_line, signal_period)

    macd = macd_line[-1]
    signal = signal_line[-1]
    histogram = macd - signal

    return MACDResult(
        macd=round(macd, 4),
        signal=round(signal, 4),
        histogram=round(histogram, 4),
        bullish=histogram > 0,
    )


def calculate_ema_crossover(
    candles: Sequence[Candle],
    fast_period: int = 9,
    slow_period: int = 21,
) -> EMAResult:
    if not 0 < fast_period < slow_period:
        raise ValueError("fast_period must be positive and below slow_period")
    closes = [c.close for c in candles]
    if len(closes) < slow_period + 2:
        return EMPTY_EMA

    fast_ema = calculate_ema(closes, fast_period)
    slow_ema = calculate_ema(closes, slow_period)

    current_fast, prev_fast = fast_ema[-1], fast_ema[-2]
    current_slow, prev_slow = slow_ema[-1], slow_ema[-2]

    crossover = Crossover.NONE
    if prev_fast <= prev_slow and current_fast > current_slow:
        crossover = Crossover.BULLISH
    elif prev_fast >= prev_slow and current_fast < current_slow:
        crossover = Crossover.BEARISH

    return EMAResult(
        fast=round(current_fast, 2),
        slow=round(current_slow, 2),
        crossover=crossover,
    )


def analyze_indicators(candles: Sequence[Candle]) -> IndicatorSnapshot:
    return IndicatorSnapshot(
        rsi=calculate_rsi(candles),
        macd=calculate_macd(candles),
        ema=calculate_ema_crossover(candles),
    )
