from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError  # type: ignore[import-not-found]

from market_data import DataSource

from .models import (
    MUTABLE_FIELDS,
    CachedSignal,
    SignalCount,
    SignalStateError,
    SignalStats,
    SignalStatus,
)

SIGNALS_FILE = "signals.json"
MAX_HISTORY = 100
SAVE_DEBOUNCE_SECONDS = 0.1
SAVE_RETRY_INITIAL_SECONDS = 1.0
SAVE_RETRY_MAX_SECONDS = 60.0


class SignalCache:
    """In-memory signal map mirrored to a single JSON file.

    Mutations only mark the cache dirty and arm one save deadline; the owner's
    loop calls ``save_if_due`` to write it out. ``flush`` writes immediately.
    Writes go to a temp file in the same directory and are renamed into place.
    """

    def __init__(
        self,
        path: Path,
        *,
        max_history: int = MAX_HISTORY,
        debounce_seconds: float = SAVE_DEBOUNCE_SECONDS,
        max_retry_seconds: float = SAVE_RETRY_MAX_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if max_history < 1:
            raise ValueError("max_history must be at least 1")
        if debounce_seconds < 0:
            raise ValueError("debounce_seconds cannot be negative")
        if max_retry_seconds <= 0:
            raise ValueError("max_retry_seconds must be positive")
        self._path = path
        self._max_history = max_history
        self._debounce = debounce_seconds
        self._max_retry = max_retry_seconds
        self._retry_delay = 0.0
        self._clock = clock
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._log = logger or logging.getLogger(__name__)
        self._signals: Dict[str, CachedSignal] = {}
        self._save_at: Optional[float] = None

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def pending_save_at(self) -> Optional[float]:
        """Clock value at which the deferred save becomes due, or None."""
        return self._save_at

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def get(self, signal_id: str) -> Optional[CachedSignal]:
        return self._signals.get(signal_id)

    def get_all(self) -> List[CachedSignal]:
        return list(self._signals.values())

    def get_active(self) -> List[CachedSignal]:
        return [s for s in self._signals.values() if s.status is SignalStatus.ACTIVE]

    def get_expired(self, now: Optional[datetime] = None) -> List[CachedSignal]:
        """Active signals past their expiry; the status is left untouched."""
        moment = now or self._now()
        return [s for s in self.get_active() if s.is_expired(moment)]

    def get_stats(
        self,
        since: Optional[datetime] = None,
        source: Optional[DataSource] = None,
    ) -> SignalStats:
        """Win/loss totals; ``since`` keeps signals closed at or after that moment."""
        signals = self.get_all()
        if source is not None:
            signals = [s for s in signals if s.data_source is source]
        if since is not None:
            signals = [s for s in signals if s.closed_at is not None and s.closed_at >= since]

        wins = sum(1 for s in signals if s.status.is_win)
        losses = sum(1 for s in signals if s.status is SignalStatus.LOSS_SL)
        expired = sum(1 for s in signals if s.status is SignalStatus.EXPIRED)
        total_pips = sum(s.pnl_pips or 0.0 for s in signals)

        completed = wins + losses
        win_rate = (wins / completed) * 100 if completed else 0.0
        return SignalStats(
            wins=wins,
            losses=losses,
            expired=expired,
            win_rate=round(win_rate, 1),
            total_pips=round(total_pips, 1),
        )

    def count(self) -> SignalCount:
        total = len(self._signals)
        active = len(self.get_active())
        return SignalCount(total=total, active=active, closed=total - active)

    # ------------------------------------------------------------------ #
    # Mutations
    # ------------------------------------------------------------------ #

    def add(self, signal: CachedSignal) -> None:
        self._signals[signal.id] = signal
        self._schedule_save()
        self.prune()

    def update(self, signal_id: str, **updates: Any) -> Optional[CachedSignal]:
        """Merge lifecycle fields into a stored signal and return the new record."""
        current = self._signals.get(signal_id)
        if current is None:
            return None

        unknown = set(updates) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        new_status = updates.get("status")
        if new_status is not None:
            new_status = SignalStatus(new_status)
            if current.status.is_closed and new_status is not current.status:
                raise SignalStateError(
                    f"Signal {signal_id} is already {current.status.value}, cannot move to {new_status.value}"
                )

        merged = current.model_dump()
        merged.update(updates)
        updated = CachedSignal.model_validate(merged)
        self._signals[signal_id] = updated
        self._schedule_save()
        return updated

    def remove(self, signal_id: str) -> None:
        self._signals.pop(signal_id, None)
        self._schedule_save()

    def prune(self) -> int:
        """Keep only the newest ``max_history`` signals by creation time."""
        if len(self._signals) <= self._max_history:
            return 0

        ordered = sorted(self._signals.values(), key=lambda s: s.created_at, reverse=True)
        dropped = ordered[self._max_history :]
        for signal in dropped:
            del self._signals[signal.id]

        if dropped:
            self._log.info("Pruned %s old signals", len(dropped))
            self._schedule_save()
        return len(dropped)

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #

    def _schedule_save(self) -> None:
        due = self._clock() + self._debounce
        if self._retry_delay and self._save_at is not None:
            # A failing disk keeps its backoff deadline.
            due = max(due, self._save_at)
        self._save_at = due

    def save_if_due(self) -> bool:
        """Run the deferred save when its deadline passed. Errors are logged, not raised."""
        if self._save_at is None or self._clock() < self._save_at:
            return False
        self._save_at = None
        try:
            self.save()
        except OSError:
            self._retry_delay = min(
                max(self._retry_delay * 2, SAVE_RETRY_INITIAL_SECONDS), self._max_retry
            )
            self._log.exception(
                "Debounced save of %s failed, retrying in %.1fs", self._path, self._retry_delay
            )
            self._save_at = self._clock() + self._retry_delay
            return False
        return True

    def flush(self) -> None:
        """Drop any pending deferred save and write the current state now."""
        self._save_at = None
        self.save()

    def save(self) -> None:
        payload = [signal.to_payload() for signal in self._signals.values()]
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            os.replace(tmp_name, self._path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
        self._retry_delay = 0.0
        self._log.debug("Saved %s signals to %s", len(payload), self._path)

    def load(self) -> None:
        if not self._path.exists():
            self._log.info("No existing signals file at %s, starting fresh", self._path)
            return

        try:
            with self._path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
            if not isinstance(data, list):
                raise ValueError("signals file must contain a JSON array")
            loaded = [CachedSignal.model_validate(item) for item in data]
        except (OSError, ValueError, ValidationError) as exc:
            self._log.error("Failed to load signals from %s: %s", self._path, exc)
            self._signals = {}
            return

        self._signals = {signal.id: signal for signal in loaded}
        self._log.info("Loaded %s signals from %s", len(self._signals), self._path)
