from datetime import datetime, timedelta, timezone

import pytest
import requests

from market_data import (
    DEFAULT_INSTRUMENTS,
    DataSource,
    MarketDataConfig,
    MarketDataError,
    MarketDataProvider,
    MockMarketData,
    SlidingWindowRateLimiter,
    TwelveDataClient,
)
from market_data.twelvedata import interval_to_milliseconds

from helpers import FakeClock, make_candles

NOW = datetime(2024, 3, 1, 12, 34, 56, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []
        self.closed = False

    def get(self, url, params=None, timeout=None):
        self.requests.append((url, dict(params or {}), timeout))
        return self.responses.pop(0)

    def close(self):
        self.closed = True


class StubClient:
    def __init__(self, price=2650.0, error=None):
        self.price = price
        self.error = error
        self.price_calls = 0
        self.series_calls = 0

    def fetch_price(self, symbol):
        self.price_calls += 1
        if self.error is not None:
            raise self.error
        return self.price

    def fetch_time_series(self, *, symbol, interval, output_size):
        self.series_calls += 1
        if self.error is not None:
            raise self.error
        return make_candles([self.price] * output_size, symbol=symbol)

    def close(self):
        pass


def live_provider(client, clock, **config):
    limiter = SlidingWindowRateLimiter(8, 60.0, clock=clock, sleep=clock.sleep)
    return MarketDataProvider(
        MarketDataConfig(api_key="secret", **config),
        instruments=DEFAULT_INSTRUMENTS,
        client=client,
        limiter=limiter,
        clock=clock,
        now=lambda: NOW,
    )


class TestRateLimiter:
    def test_calls_within_limit_do_not_wait(self, clock):
        limiter = SlidingWindowRateLimiter(2, 60.0, clock=clock, sleep=clock.sleep)
        assert limiter.acquire() == 0.0
        assert limiter.acquire() == 0.0
        assert limiter.calls_in_window() == 2
        assert clock.sleeps == []

    def test_blocks_until_oldest_call_leaves_window(self, clock):
        limiter = SlidingWindowRateLimiter(2, 60.0, clock=clock, sleep=clock.sleep)
        limiter.acquire()
        clock.advance(30.0)
        limiter.acquire()
        clock.advance(10.0)

        waited = limiter.acquire()

        assert waited == pytest.approx(20.1)
        assert clock.sleeps == [pytest.approx(20.1)]
        assert limiter.calls_in_window() == 2

    def test_window_slides(self, clock):
        limiter = SlidingWindowRateLimiter(1, 60.0, clock=clock, sleep=clock.sleep)
        limiter.acquire()
        clock.advance(60.0)
        assert limiter.calls_in_window() == 0

    def test_rejects_bad_limits(self):
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(0)
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(1, 0)


class TestTwelveDataClient:
    def make_client(self, *responses):
        session = FakeSession(*responses)
        client = TwelveDataClient(MarketDataConfig(api_key="secret"), session=session)
        return client, session

    def test_time_series_is_returned_oldest_first(self):
        client, session = self.make_client(
            FakeResponse(
                {
                    "status": "ok",
                    "values": [
                        {"datetime": "2024-03-01 12:00:00", "open": "2651", "high": "2653", "low": "2650", "close": "2652"},
                        {"datetime": "2024-03-01 11:00:00", "open": "2649", "high": "2652", "low": "2648", "close": "2651", "volume": "10"},
                    ],
                }
            )
        )

        candles = client.fetch_time_series(symbol="XAU/USD", interval="1h", output_size=2)

        assert [c.close for c in candles] == [2651.0, 2652.0]
        assert candles[0].open_time == datetime(2024, 3, 1, 11, tzinfo=timezone.utc)
        assert candles[0].volume == 10.0
        assert candles[1].volume is None
        url, params, _ = session.requests[0]
        assert url.endswith("/time_series")
        assert params == {"symbol": "XAU/USD", "interval": "1h", "outputsize": 2, "apikey": "secret"}

    def test_error_payload_raises(self):
        client, _ = self.make_client(FakeResponse({"status": "error", "message": "bad symbol"}))
        with pytest.raises(MarketDataError, match="bad symbol"):
            client.fetch_price("NOPE")

    def test_empty_series_raises(self):
        client, _ = self.make_client(FakeResponse({"status": "ok", "values": []}))
        with pytest.raises(MarketDataError):
            client.fetch_time_series(symbol="XAU/USD", interval="1h", output_size=10)

    def test_output_size_is_bounded(self):
        client, _ = self.make_client()
        with pytest.raises(ValueError):
            client.fetch_time_series(symbol="XAU/USD", interval="1h", output_size=0)

    def test_price(self):
        client, session = self.make_client(FakeResponse({"price": "2650.55"}))
        assert client.fetch_price("XAU/USD") == 2650.55
        client.close()
        assert session.closed

    @pytest.mark.parametrize("raw", [None, "", "abc", "-1", "0"])
    def test_invalid_price_raises(self, raw):
        client, _ = self.make_client(FakeResponse({"price": raw}))
        with pytest.raises(MarketDataError):
            client.fetch_price("XAU/USD")

    def test_http_error_propagates(self):
        client, _ = self.make_client(FakeResponse({}, status_code=500))
        with pytest.raises(requests.HTTPError):
            client.fetch_price("XAU/USD")

    @pytest.mark.parametrize("values", [["oops"], {"datetime": "2024-03-01 12:00:00"}, [None]])
    def test_malformed_values_raise_market_data_error(self, values):
        client, _ = self.make_client(FakeResponse({"status": "ok", "values": values}))
        with pytest.raises(MarketDataError, match="Malformed candle payload"):
            client.fetch_time_series(symbol="XAU/USD", interval="1h", output_size=10)


class TestMockMarketData:
    def test_same_moment_gives_same_data(self):
        first = MockMarketData(DEFAULT_INSTRUMENTS, now=lambda: NOW)
        second = MockMarketData(DEFAULT_INSTRUMENTS, now=lambda: NOW)
        assert first.candles("XAU/USD", "1h", 50) == second.candles("XAU/USD", "1h", 50)
        assert first.price("XAU/USD") == second.price("XAU/USD")

    def test_candles_are_ordered_and_aligned(self):
        candles = MockMarketData(DEFAULT_INSTRUMENTS, now=lambda: NOW).candles("XAU/USD", "1h", 50)
        assert len(candles) == 50
        times = [c.open_time for c in candles]
        assert times == sorted(times)
        assert times[-1] == datetime(2024, 3, 1, 12, tzinfo=timezone.utc)
        assert all(c.low <= min(c.open, c.close) and c.high >= max(c.open, c.close) for c in candles)

    def test_prices_stay_near_base(self):
        mock = MockMarketData(DEFAULT_INSTRUMENTS, now=lambda: NOW)
        assert mock.price("XAU/USD") == pytest.approx(2650.50, rel=0.001)
        assert mock.price("UNKNOWN") == pytest.approx(100.0, rel=0.001)

    def test_zero_count(self):
        assert MockMarketData(now=lambda: NOW).candles("XAU/USD", "1h", 0) == []

    def test_unknown_interval_uses_hourly_steps(self):
        candles = MockMarketData(DEFAULT_INSTRUMENTS, now=lambda: NOW).candles("XAU/USD", "3h", 3)
        gaps = {later.open_time - earlier.open_time for earlier, later in zip(candles, candles[1:])}
        assert gaps == {timedelta(hours=1)}


class TestMarketDataProvider:
    def test_without_api_key_everything_is_mock(self, clock):
        provider = MarketDataProvider(MarketDataConfig(), clock=clock, now=lambda: NOW)
        assert not provider.live
        assert provider.get_current_price("XAU/USD").source is DataSource.MOCK
        snapshot = provider.get_market_data("XAU/USD", "1h", 40)
        assert snapshot.source is DataSource.MOCK
        assert len(snapshot.candles) == 40
        assert provider.api_usage().calls_in_last_minute == 0

    def test_live_price_is_cached(self, clock):
        client = StubClient(price=2650.0)
        provider = live_provider(client, clock)

        first = provider.get_current_price("XAU/USD")
        clock.advance(10.0)
        second = provider.get_current_price("XAU/USD")

        assert (first.source, first.cached) == (DataSource.LIVE, False)
        assert (second.price, second.cached) == (2650.0, True)
        assert client.price_calls == 1
        assert provider.api_usage().calls_in_last_minute == 1

    def test_cache_expires_after_ttl(self, clock):
        client = StubClient()
        provider = live_provider(client, clock, price_cache_ttl_seconds=30.0)
        provider.get_current_price("XAU/USD")
        clock.advance(31.0)
        assert provider.get_current_price("XAU/USD").cached is False
        assert client.price_calls == 2

    @pytest.mark.parametrize(
        "error",
        [MarketDataError("bad symbol"), requests.ConnectionError("down"), ValueError("garbage")],
    )
    def test_upstream_errors_fall_back_to_mock(self, clock, error):
        provider = live_provider(StubClient(error=error), clock)
        quote = provider.get_current_price("XAU/USD")
        series = provider.fetch_candles("XAU/USD", "1h", 30)
        assert quote.source is DataSource.MOCK
        assert quote.price == pytest.approx(2650.50, rel=0.001)
        assert series.source is DataSource.MOCK
        assert len(series.candles) == 30

    def test_mock_prices_are_not_cached(self, clock):
        client = StubClient(error=MarketDataError("down"))
        provider = live_provider(client, clock)
        provider.get_current_price("XAU/USD")
        client.error = None
        assert provider.get_current_price("XAU/USD").source is DataSource.LIVE

    def test_snapshot_is_mock_when_any_leg_is_mock(self, clock):
        class CandlesOnly(StubClient):
            def fetch_price(self, symbol):
                raise MarketDataError("no price")

        snapshot = live_provider(CandlesOnly(), clock).get_market_data("XAU/USD", "1h", 30)
        assert snapshot.source is DataSource.MOCK
        assert snapshot.timestamp == NOW

    def test_live_snapshot(self, clock):
        snapshot = live_provider(StubClient(price=2650.0), clock).get_market_data("XAU/USD", "1h", 30)
        assert snapshot.source is DataSource.LIVE
        assert snapshot.price == 2650.0
        assert len(snapshot.candles) == 30

    def test_malformed_candle_payload_falls_back_to_mock(self, clock):
        session = FakeSession(FakeResponse({"status": "ok", "values": ["oops"]}))
        client = TwelveDataClient(MarketDataConfig(api_key="secret"), session=session)
        series = live_provider(client, clock).fetch_candles("XAU/USD", "1h", 30)
        assert series.source is DataSource.MOCK
        assert len(series.candles) == 30

    def test_monthly_interval_falls_back_to_mock(self, clock):
        provider = live_provider(StubClient(error=requests.ConnectionError("down")), clock)
        series = provider.fetch_candles("XAU/USD", "1month", 12)
        assert series.source is DataSource.MOCK
        assert len(series.candles) == 12
        assert series.candles[1].open_time - series.candles[0].open_time == timedelta(days=30)


def test_interval_to_milliseconds():
    assert interval_to_milliseconds("1h") == 3_600_000
    assert interval_to_milliseconds("1month") == 30 * 86_400_000
    with pytest.raises(ValueError):
        interval_to_milliseconds("3h")
