from ib_harvester.aggregator import TimeSeriesAggregator
from ib_harvester.models import Candle, Snapshot


def candle(t, close=1.0):
    return Candle(t, close, close, close, close)


def test_index_stays_sorted_under_out_of_order_ingest(ts):
    agg = TimeSeriesAggregator()
    agg.ingest(1, candle(ts(30)))
    agg.ingest(2, candle(ts(10)))
    agg.ingest(3, candle(ts(20)))

    assert [gtp.timestamp for gtp in agg] == [ts(10), ts(20), ts(30)]
    assert agg.latest().timestamp == ts(30)


def test_same_instant_from_two_streams_shares_a_timepoint(ts):
    agg = TimeSeriesAggregator()
    a = Snapshot(ts(0), 1.0, 1.1)
    b = Snapshot(ts(0), 2.0, 2.1)
    agg.ingest(1, a)
    agg.ingest(2, b)

    assert len(agg) == 1
    gtp = agg.get(ts(0))
    assert gtp.stream_ids() == [1, 2]
    assert gtp.point_for(2) is b
    assert gtp.point_for(3) is None


class TestAllStreamsUpdated:
    def test_requires_every_open_stream(self, ts):
        agg = TimeSeriesAggregator()
        agg.track(1)
        agg.track(2)

        agg.ingest(1, candle(ts(0)))
        assert not agg.all_streams_updated()

        agg.ingest(2, candle(ts(1)))
        assert agg.all_streams_updated()
        # A positive answer resets the round
        assert not agg.all_streams_updated()

    def test_no_open_streams(self):
        agg = TimeSeriesAggregator()
        assert not agg.all_streams_updated()

    def test_untracked_stream_no_longer_awaited(self, ts):
        agg = TimeSeriesAggregator()
        agg.track(1)
        agg.track(2)
        agg.ingest(1, candle(ts(0)))
        agg.untrack(2)
        assert agg.all_streams_updated()


class TestCursor:
    def test_walks_forward_and_stops_at_end(self, ts):
        agg = TimeSeriesAggregator()
        for t in (0, 10, 20):
            agg.ingest(1, candle(ts(t)))

        assert agg.current is None
        assert agg.pending() == 3
        assert agg.advance_cursor().timestamp == ts(0)
        assert agg.advance_cursor().timestamp == ts(10)
        assert agg.advance_cursor().timestamp == ts(20)
        assert agg.advance_cursor() is None
        assert agg.current.timestamp == ts(20)
        assert agg.pending() == 0

    def test_points_behind_cursor_are_not_revisited(self, ts):
        agg = TimeSeriesAggregator()
        agg.ingest(1, candle(ts(10)))
        agg.advance_cursor()

        agg.ingest(2, candle(ts(5)))
        assert agg.pending() == 0
        assert agg.advance_cursor() is None
        assert agg.get(ts(5)) is not None

        agg.ingest(2, candle(ts(15)))
        assert agg.advance_cursor().timestamp == ts(15)
