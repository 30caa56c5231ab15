import sys

sys.path.insert(0, '.')

import pytest

from analytics.candles import CandleAggregator, bucket_start
from ingest.normalizer import PriceTick
from strategy.errors import FeedError

MINUTE = 60_000


def test_bucket_start_aligns_to_timeframe():
    assert bucket_start(0, 5) == 0
    assert bucket_start(5 * MINUTE - 1, 5) == 0
    assert bucket_start(5 * MINUTE, 5) == 5 * MINUTE
    assert bucket_start(7 * MINUTE + 123, 1) == 7 * MINUTE


def test_ticks_in_same_bucket_overwrite_close():
    agg = CandleAggregator(timeframe_minutes=5, max_candles=60)
    first = agg.on_tick(PriceTick(timestamp=10 * MINUTE + 1_000, price=100.0))
    second = agg.on_tick(PriceTick(timestamp=10 * MINUTE + 90_000, price=101.5))

    assert first.is_new is True
    assert second.is_new is False
    assert len(agg) == 1
    assert agg.candles[0].open_time == 10 * MINUTE
    assert agg.candles[0].close == 101.5


def test_new_bucket_opens_candle():
    agg = CandleAggregator(timeframe_minutes=1, max_candles=60)
    agg.on_tick(PriceTick(timestamp=0, price=10.0))
    update = agg.on_tick(PriceTick(timestamp=MINUTE, price=11.0))

    assert update.is_new
    assert agg.closes() == [10.0, 11.0]


def test_tick_from_earlier_bucket_is_dropped():
    width = 5 * MINUTE
    agg = CandleAggregator(timeframe_minutes=5, max_candles=60)
    agg.on_tick(PriceTick(timestamp=width + 1, price=10.0))

    with pytest.raises(FeedError) as excinfo:
        agg.on_tick(PriceTick(timestamp=width - 1, price=9.0))
    assert excinfo.value.reason == 'stale_tick'

    update = agg.on_tick(PriceTick(timestamp=width + 2, price=11.0))
    assert update.is_new is False
    assert [c.open_time for c in agg.candles] == [width]
    assert agg.closes() == [11.0]


def test_late_tick_within_active_bucket_still_updates():
    agg = CandleAggregator(timeframe_minutes=1, max_candles=60)
    agg.on_tick(PriceTick(timestamp=5 * MINUTE + 30_000, price=10.0))
    update = agg.on_tick(PriceTick(timestamp=5 * MINUTE + 10_000, price=9.5))

    assert update.is_new is False
    assert agg.closes() == [9.5]


def test_tick_older_than_history_is_dropped():
    agg = CandleAggregator(timeframe_minutes=1, max_candles=60)
    agg.load_history([(0, 1.0), (MINUTE, 2.0)])

    with pytest.raises(FeedError):
        agg.on_tick(PriceTick(timestamp=10, price=0.5))
    assert agg.closes() == [1.0, 2.0]
    assert agg.active is None


def test_cap_evicts_oldest():
    agg = CandleAggregator(timeframe_minutes=1, max_candles=3)
    for i in range(5):
        update = agg.on_tick(PriceTick(timestamp=i * MINUTE, price=float(i)))

    assert update.evicted is not None
    assert update.evicted.close == 1.0
    assert agg.closes() == [2.0, 3.0, 4.0]


def test_load_history_trims_and_forces_new_candle():
    agg = CandleAggregator(timeframe_minutes=1, max_candles=2)
    agg.load_history([(0, 1.0), (MINUTE, 2.0), (2 * MINUTE, 3.0)])

    assert agg.closes() == [2.0, 3.0]
    assert agg.active is None

    # Same bucket as the newest history candle still opens a fresh candle.
    update = agg.on_tick(PriceTick(timestamp=2 * MINUTE + 5, price=3.5))
    assert update.is_new
    assert agg.closes() == [3.0, 3.5]
