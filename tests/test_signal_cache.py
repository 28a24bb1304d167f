import json
import os
from datetime import timedelta

import pytest
from pydantic import ValidationError

from market_data import DataSource
from signal_bot.models import CachedSignal, SignalDirection, SignalStateError, SignalStatus
from signal_bot.signal_cache import SignalCache

from helpers import T0, make_sell_signal, make_signal


@pytest.fixture
def cache_path(tmp_path):
    return tmp_path / "data" / "signals.json"


@pytest.fixture
def cache(cache_path, clock):
    return SignalCache(cache_path, clock=clock, now=lambda: T0)


def close_signal(cache, signal_id, status, pnl_pips, closed_at=T0 + timedelta(hours=1)):
    return cache.update(
        signal_id,
        status=status,
        closed_at=closed_at,
        closed_price=2055.0,
        pnl_pips=pnl_pips,
    )


class TestCachedSignal:
    def test_buy_requires_stop_below_entry(self):
        with pytest.raises(ValidationError):
            make_signal(stop_loss=2051.0)

    def test_take_profits_must_increase_for_buy(self):
        with pytest.raises(ValidationError):
            make_signal(take_profit2=2054.0)

    def test_sell_levels_are_mirrored(self):
        signal = make_sell_signal()
        assert signal.direction is SignalDirection.SELL
        with pytest.raises(ValidationError):
            make_sell_signal(stop_loss=2045.0)

    def test_expiry_must_follow_creation(self):
        with pytest.raises(ValidationError):
            make_signal(expires_at=T0)

    def test_third_target_needs_second(self):
        with pytest.raises(ValidationError):
            make_signal(take_profit2=None)

    def test_optional_targets_may_be_absent(self):
        signal = make_signal(take_profit2=None, take_profit3=None)
        assert signal.take_profits == [2055.0, None, None]

    def test_payload_uses_camel_case_keys(self):
        payload = make_signal().to_payload()
        assert payload["entryPrice"] == 2050.0
        assert payload["takeProfit3"] == 2065.0
        assert payload["status"] == "ACTIVE"
        assert payload["dataSource"] == "live"
        assert payload["closedAt"] is None

    def test_naive_timestamps_are_treated_as_utc(self):
        signal = make_signal(created_at=T0.replace(tzinfo=None))
        assert signal.created_at == T0

    def test_expiry_is_strict(self):
        signal = make_signal()
        assert not signal.is_expired(signal.expires_at)
        assert signal.is_expired(signal.expires_at + timedelta(seconds=1))


class TestQueries:
    def test_starts_empty_and_creates_directory(self, cache, cache_path):
        assert cache.get_all() == []
        assert cache_path.parent.is_dir()
        assert not cache_path.exists()

    def test_add_and_get(self, cache):
        signal = make_signal()
        cache.add(signal)
        assert cache.get("sig-1") == signal
        assert cache.get("missing") is None
        assert cache.get_active() == [signal]

    def test_expired_lists_active_signals_past_expiry(self, cache):
        cache.add(make_signal(id="old"))
        cache.add(make_signal(id="fresh", created_at=T0 + timedelta(hours=3), expires_at=T0 + timedelta(hours=7)))
        expired = cache.get_expired(T0 + timedelta(hours=5))
        assert [s.id for s in expired] == ["old"]
        assert cache.get("old").status is SignalStatus.ACTIVE

    def test_count(self, cache):
        cache.add(make_signal(id="a"))
        cache.add(make_signal(id="b"))
        close_signal(cache, "b", SignalStatus.WIN_TP1, 500.0)
        counts = cache.count()
        assert (counts.total, counts.active, counts.closed) == (2, 1, 1)

    def test_stats(self, cache):
        cache.add(make_signal(id="w1"))
        cache.add(make_signal(id="w2"))
        cache.add(make_signal(id="l1"))
        cache.add(make_signal(id="e1"))
        cache.add(make_signal(id="open"))
        close_signal(cache, "w1", SignalStatus.WIN_TP1, 500.0)
        close_signal(cache, "w2", SignalStatus.WIN_TP3, 1500.0)
        close_signal(cache, "l1", SignalStatus.LOSS_SL, -500.0)
        close_signal(cache, "e1", SignalStatus.EXPIRED, 120.0)

        stats = cache.get_stats()
        assert stats.wins == 2
        assert stats.losses == 1
        assert stats.expired == 1
        assert stats.win_rate == 66.7
        assert stats.total_pips == 1620.0
        assert cache.get_stats() == stats

    def test_stats_since_and_source(self, cache):
        cache.add(make_signal(id="early"))
        cache.add(make_signal(id="late"))
        cache.add(make_signal(id="mock", data_source=DataSource.MOCK))
        close_signal(cache, "early", SignalStatus.LOSS_SL, -500.0, closed_at=T0 + timedelta(hours=1))
        close_signal(cache, "late", SignalStatus.WIN_TP2, 1000.0, closed_at=T0 + timedelta(hours=3))
        close_signal(cache, "mock", SignalStatus.WIN_TP1, 500.0, closed_at=T0 + timedelta(hours=3))

        recent = cache.get_stats(since=T0 + timedelta(hours=2))
        assert (recent.wins, recent.losses) == (2, 0)
        live = cache.get_stats(since=T0 + timedelta(hours=2), source=DataSource.LIVE)
        assert (live.wins, live.total_pips) == (1, 1000.0)

    def test_empty_stats(self, cache):
        stats = cache.get_stats()
        assert stats.win_rate == 0.0
        assert stats.completed == 0


class TestUpdate:
    def test_update_returns_new_record(self, cache):
        original = make_signal()
        cache.add(original)
        updated = close_signal(cache, "sig-1", SignalStatus.WIN_TP2, 1000.0)
        assert updated.status is SignalStatus.WIN_TP2
        assert updated.pnl_pips == 1000.0
        assert cache.get("sig-1") == updated
        assert original.status is SignalStatus.ACTIVE

    def test_missing_id(self, cache):
        assert cache.update("missing", status=SignalStatus.EXPIRED) is None

    def test_rejects_non_lifecycle_fields(self, cache):
        cache.add(make_signal())
        with pytest.raises(ValueError):
            cache.update("sig-1", entry_price=2000.0)

    def test_closed_signal_cannot_change_status(self, cache):
        cache.add(make_signal())
        close_signal(cache, "sig-1", SignalStatus.LOSS_SL, -500.0)
        with pytest.raises(SignalStateError):
            cache.update("sig-1", status=SignalStatus.ACTIVE)
        assert cache.get("sig-1").status is SignalStatus.LOSS_SL

    def test_remove(self, cache):
        cache.add(make_signal())
        cache.remove("sig-1")
        cache.remove("sig-1")
        assert cache.get_all() == []


class TestPersistence:
    def test_round_trip(self, cache, cache_path, clock):
        cache.add(make_signal(id="a"))
        cache.add(make_sell_signal(id="b", data_source=DataSource.MOCK))
        close_signal(cache, "a", SignalStatus.WIN_TP1, 500.0)
        cache.flush()

        reloaded = SignalCache(cache_path, clock=clock)
        assert sorted(reloaded.get_all(), key=lambda s: s.id) == sorted(cache.get_all(), key=lambda s: s.id)

    def test_file_is_json_array_with_camel_case_keys(self, cache, cache_path):
        cache.add(make_signal())
        cache.flush()
        data = json.loads(cache_path.read_text())
        assert isinstance(data, list)
        assert data[0]["id"] == "sig-1"
        assert data[0]["stopLoss"] == 2045.0
        assert data[0]["createdAt"].startswith("2024-01-01T00:00:00")

    def test_no_temp_files_left_behind(self, cache, cache_path):
        cache.add(make_signal())
        cache.flush()
        assert os.listdir(cache_path.parent) == ["signals.json"]

    def test_failed_save_keeps_previous_file(self, cache, cache_path, monkeypatch):
        cache.add(make_signal(id="first"))
        cache.flush()
        before = cache_path.read_text()

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", broken_replace)
        cache.add(make_signal(id="second"))
        with pytest.raises(OSError):
            cache.flush()
        assert cache_path.read_text() == before
        assert os.listdir(cache_path.parent) == ["signals.json"]

    def test_debounced_save_retries_after_failure(self, cache_path, clock, monkeypatch):
        cache = SignalCache(cache_path, clock=clock, max_retry_seconds=3.0)

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", broken_replace)
        cache.add(make_signal())
        clock.advance(1.0)

        gaps = []
        for _ in range(4):
            assert cache.save_if_due() is False
            gaps.append(cache.pending_save_at - clock.now)
            clock.now = cache.pending_save_at
        assert gaps == pytest.approx([1.0, 2.0, 3.0, 3.0])

        # Mutations during backoff keep the retry deadline.
        deadline = cache.pending_save_at
        cache.add(make_signal(id="other"))
        assert cache.pending_save_at == deadline

        monkeypatch.undo()
        clock.now = deadline
        assert cache.save_if_due() is True
        cache.add(make_signal(id="third"))
        assert cache.pending_save_at == pytest.approx(clock.now + 0.1)

    def test_corrupt_file_starts_empty(self, cache_path, clock):
        cache_path.parent.mkdir(parents=True)
        cache_path.write_text("{not json")
        cache = SignalCache(cache_path, clock=clock)
        assert cache.get_all() == []

    def test_invalid_record_starts_empty(self, cache_path, clock):
        cache_path.parent.mkdir(parents=True)
        cache_path.write_text(json.dumps([{"id": "x"}]))
        assert SignalCache(cache_path, clock=clock).get_all() == []


class TestDebounce:
    def test_burst_of_mutations_coalesces_into_one_write(self, cache, cache_path, clock):
        for idx in range(3):
            cache.add(make_signal(id=f"s{idx}"))
            clock.advance(0.05)
        assert not cache_path.exists()
        assert cache.save_if_due() is False

        clock.advance(0.1)
        assert cache.save_if_due() is True
        assert len(json.loads(cache_path.read_text())) == 3
        assert cache.pending_save_at is None
        assert cache.save_if_due() is False

    def test_flush_cancels_pending_save(self, cache, cache_path):
        cache.add(make_signal())
        assert cache.pending_save_at is not None
        cache.flush()
        assert cache.pending_save_at is None
        assert cache_path.exists()


class TestPrune:
    def test_keeps_newest_signals(self, cache):
        for idx in range(105):
            cache.add(
                make_signal(
                    id=f"s{idx:03d}",
                    created_at=T0 + timedelta(minutes=idx),
                    expires_at=T0 + timedelta(minutes=idx, hours=4),
                )
            )
        ids = {s.id for s in cache.get_all()}
        assert len(ids) == 100
        assert {f"s{idx:03d}" for idx in range(5)}.isdisjoint(ids)
        assert "s104" in ids

    def test_prune_under_limit_is_noop(self, cache):
        cache.add(make_signal())
        assert cache.prune() == 0

    def test_custom_history_limit(self, cache_path, clock):
        cache = SignalCache(cache_path, max_history=2, clock=clock)
        for idx in range(3):
            cache.add(make_signal(id=f"s{idx}", created_at=T0 + timedelta(minutes=idx)))
        assert sorted(s.id for s in cache.get_all()) == ["s1", "s2"]
