"""Plain-text messages built from cached signal data."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from .models import CachedSignal, SignalStats
from .price_tracker import ExpiryResult, TrackingResult

SEPARATOR = "-" * 24


def format_duration(start: datetime, end: datetime) -> str:
    total_minutes = max(int((end - start).total_seconds() // 60), 0)
    hours, minutes = divmod(total_minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def _signed(pips: float) -> str:
    return f"{pips:+.1f}"


def format_signal(signal: CachedSignal, price_decimals: int = 2) -> str:
    def price(value: float) -> str:
        return f"{value:.{price_decimals}f}"

    lines: List[str] = [
        f"{signal.direction.value} SIGNAL - {signal.symbol}",
        SEPARATOR,
        f"Entry: {price(signal.entry_price)}",
        f"Stop Loss: {price(signal.stop_loss)}",
    ]
    for tier, level in enumerate(signal.take_profits, start=1):
        if level is not None:
            lines.append(f"Take Profit {tier}: {price(level)}")
    lines.extend(
        [
            f"Confidence: {signal.confidence}%",
            f"Valid until: {signal.expires_at:%Y-%m-%d %H:%M} UTC",
        ]
    )
    return "\n".join(lines)


def format_outcome(result: TrackingResult, price_decimals: int = 2) -> str:
    signal = result.signal
    closed_at = signal.closed_at or signal.created_at
    header = (
        f"{result.hit_level} HIT - {signal.symbol} {signal.direction.value}"
        if result.new_status.is_win
        else f"STOP LOSS HIT - {signal.symbol} {signal.direction.value}"
    )
    return "\n".join(
        [
            header,
            SEPARATOR,
            f"Entry: {signal.entry_price:.{price_decimals}f}",
            f"Closed: {result.hit_price:.{price_decimals}f}",
            f"Result: {_signed(result.pnl_pips)} pips",
            f"Duration: {format_duration(signal.created_at, closed_at)}",
        ]
    )


def format_expired(result: ExpiryResult, price_decimals: int = 2) -> str:
    signal = result.signal
    window = format_duration(signal.created_at, signal.expires_at)
    return "\n".join(
        [
            f"SIGNAL EXPIRED - {signal.symbol} {signal.direction.value}",
            SEPARATOR,
            f"Entry: {signal.entry_price:.{price_decimals}f}",
            f"Current: {result.price:.{price_decimals}f}",
            f"Unrealized: {_signed(result.pnl_pips)} pips",
            f"Neither TP nor SL was reached within {window}.",
        ]
    )


def format_recap(title: str, stats: SignalStats, period_end: Optional[datetime] = None) -> str:
    lines = [title.upper(), SEPARATOR]
    if period_end is not None:
        lines.append(f"Period ending {period_end:%Y-%m-%d}")
    if stats.completed == 0 and stats.expired == 0:
        lines.append("No signals closed in this period.")
        return "\n".join(lines)
    lines.extend(
        [
            f"Wins: {stats.wins}",
            f"Losses: {stats.losses}",
            f"Expired: {stats.expired}",
            f"Win rate: {stats.win_rate:.1f}%",
            f"Net result: {_signed(stats.total_pips)} pips",
        ]
    )
    return "\n".join(lines)
