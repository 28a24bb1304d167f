"""Signal records persisted by the cache."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator  # type: ignore[import-not-found]

from market_data.models import DataSource


class SignalDirection(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class SignalStatus(str, Enum):
    ACTIVE = "ACTIVE"
    WIN_TP1 = "WIN_TP1"
    WIN_TP2 = "WIN_TP2"
    WIN_TP3 = "WIN_TP3"
    LOSS_SL = "LOSS_SL"
    EXPIRED = "EXPIRED"

    @property
    def is_win(self) -> bool:
        return self in (SignalStatus.WIN_TP1, SignalStatus.WIN_TP2, SignalStatus.WIN_TP3)

    @property
    def is_closed(self) -> bool:
        return self is not SignalStatus.ACTIVE


class SignalStateError(ValueError):
    """Raised when an update would break the signal lifecycle."""


def _ensure_aware(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class CachedSignal(BaseModel):
    """A generated signal and its lifecycle outcome.

    Serialized with camelCase keys; Python code uses the snake_case names.
    Instances are immutable, changes go through ``SignalCache.update``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    symbol: str = Field(min_length=1)
    direction: SignalDirection
    entry_price: float = Field(alias="entryPrice", gt=0)
    stop_loss: float = Field(alias="stopLoss", gt=0)
    take_profit1: float = Field(alias="takeProfit1", gt=0)
    take_profit2: Optional[float] = Field(default=None, alias="takeProfit2", gt=0)
    take_profit3: Optional[float] = Field(default=None, alias="takeProfit3", gt=0)
    confidence: int = Field(ge=0, le=100)
    created_at: datetime = Field(alias="createdAt")
    expires_at: datetime = Field(alias="expiresAt")
    status: SignalStatus = SignalStatus.ACTIVE
    closed_at: Optional[datetime] = Field(default=None, alias="closedAt")
    closed_price: Optional[float] = Field(default=None, alias="closedPrice")
    pnl_pips: Optional[float] = Field(default=None, alias="pnlPips")
    data_source: DataSource = Field(default=DataSource.LIVE, alias="dataSource")

    @field_validator("created_at", "expires_at", "closed_at")
    @classmethod
    def _aware_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_aware(value) if value is not None else None

    @model_validator(mode="after")
    def _check_levels(self) -> "CachedSignal":
        if self.expires_at <= self.created_at:
            raise ValueError("expiresAt must be after createdAt")
        if self.take_profit3 is not None and self.take_profit2 is None:
            raise ValueError("takeProfit3 requires takeProfit2")

        # Order levels from adverse to most favourable, then require strict growth
        # in the favourable direction.
        levels = [self.stop_loss, self.entry_price, self.take_profit1]
        if self.take_profit2 is not None:
            levels.append(self.take_profit2)
        if self.take_profit3 is not None:
            levels.append(self.take_profit3)
        sign = 1.0 if self.direction is SignalDirection.BUY else -1.0
        for lower, upper in zip(levels, levels[1:]):
            if not sign * (upper - lower) > 0:
                raise ValueError(
                    f"{self.direction.value} levels out of order: "
                    f"SL={self.stop_loss} entry={self.entry_price} "
                    f"TP1={self.take_profit1} TP2={self.take_profit2} TP3={self.take_profit3}"
                )
        return self

    @property
    def take_profits(self) -> list[Optional[float]]:
        return [self.take_profit1, self.take_profit2, self.take_profit3]

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < _ensure_aware(now)

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


MUTABLE_FIELDS = frozenset({"status", "closed_at", "closed_price", "pnl_pips"})


@dataclass(frozen=True)
class SignalStats:
    wins: int
    losses: int
    expired: int
    win_rate: float
    total_pips: float

    @property
    def completed(self) -> int:
        return self.wins + self.losses


@dataclass(frozen=True)
class SignalCount:
    total: int
    active: int
    closed: int
