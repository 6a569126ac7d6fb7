import pytest

from ib_harvester.exceptions import DataError
from ib_harvester.models import Candle, Greeks, OptionSnapshot, Snapshot, StreamKind
from ib_harvester.streams import StreamStatus


def test_duplicate_request_id_rejected(registry, aapl):
    registry.open_stream(1, aapl, StreamKind.SNAPSHOT)
    with pytest.raises(DataError):
        registry.open_stream(1, aapl, StreamKind.SNAPSHOT)


def test_quote_commits_once_both_sides_known(registry, aapl, ts):
    registry.open_stream(1, aapl, StreamKind.SNAPSHOT)

    assert registry.apply_size(1, 0, 300, ts(0)) is None
    assert registry.apply_price(1, 1, 189.5, ts(0)) is None
    point = registry.apply_price(1, 2, 189.6, ts(1))

    assert isinstance(point, Snapshot)
    assert point.bid_price == 189.5
    assert point.ask_price == 189.6
    assert point.bid_size == 300
    assert point.ask_size is None
    assert point.last_trade is False
    assert point.timestamp == ts(1)

    stream = registry.get(1)
    assert stream.points == [point]
    assert stream.quote.is_empty()


def test_trade_tick_sets_both_sides(registry, aapl, ts):
    registry.open_stream(1, aapl, StreamKind.SNAPSHOT)

    point = registry.apply_price(1, 4, 190.0, ts(0))

    assert point.bid_price == point.ask_price == 190.0
    assert point.last_trade is True
    # Trade ticks do not disturb a half-built quote
    assert registry.get(1).quote.is_empty()


def test_delayed_fields_route_like_live(registry, aapl, ts):
    registry.open_stream(1, aapl, StreamKind.SNAPSHOT)
    registry.apply_price(1, 66, 10.0, ts(0))
    point = registry.apply_price(1, 67, 10.1, ts(0))
    assert point.spread == pytest.approx(0.1)


def test_commit_uses_clock_without_timestamp(registry, aapl, clock, ts):
    registry.open_stream(1, aapl, StreamKind.SNAPSHOT)
    clock.advance(5)
    point = registry.apply_price(1, 4, 1.0)
    assert point.timestamp == ts(5)


def test_unknown_request_is_counted_and_ignored(registry, ts):
    assert registry.apply_price(999, 1, 1.0, ts(0)) is None
    assert registry.apply_candle(999, Candle(ts(0), 1, 1, 1, 1)) is False
    assert registry.unknown == 2


def test_unrouted_field_ignored(registry, aapl, ts):
    registry.open_stream(1, aapl, StreamKind.SNAPSHOT)
    assert registry.apply_price(1, 9, 1.0, ts(0)) is None
    assert registry.get(1).quote.is_empty()


def test_out_of_order_points_rejected(registry, aapl, ts):
    registry.open_stream(1, aapl, StreamKind.CANDLE, "1min")

    assert registry.apply_candle(1, Candle(ts(60), 10, 11, 9, 10.5))
    assert not registry.apply_candle(1, Candle(ts(0), 10, 11, 9, 10.5))
    assert registry.apply_candle(1, Candle(ts(60), 10.5, 12, 10, 11))

    assert registry.rejected == 1
    assert [c.timestamp for c in registry.get(1).points] == [ts(60), ts(60)]


def test_ended_stream_takes_no_updates(registry, aapl, ts):
    registry.open_stream(1, aapl, StreamKind.CANDLE, "1min")
    registry.apply_candle(1, Candle(ts(0), 1, 1, 1, 1))

    assert registry.end_stream(1, StreamStatus.COMPLETE)
    assert not registry.end_stream(1, StreamStatus.FAILED)
    assert not registry.apply_candle(1, Candle(ts(60), 1, 1, 1, 1))

    stream = registry.get(1)
    assert stream.status == StreamStatus.COMPLETE
    assert len(stream.points) == 1
    assert 1 not in registry.aggregator.open_streams


def test_price_on_candle_stream_ignored(registry, aapl, ts):
    registry.open_stream(1, aapl, StreamKind.CANDLE, "1min")
    assert registry.apply_price(1, 4, 1.0, ts(0)) is None
    assert registry.get(1).points == []


class TestOptionStreams:
    def test_greeks_fill_price_and_commit(self, registry, spy_call, ts):
        registry.open_stream(7, spy_call, StreamKind.OPTION)

        assert registry.apply_greeks(7, 0.21, 0.55, 3.10, 0.0, 0.04, 0.12, -0.05, 10, ts(0)) is None
        point = registry.apply_greeks(7, 0.22, 0.56, 3.20, 0.0, 0.04, 0.12, -0.05, 11, ts(0))

        assert isinstance(point, OptionSnapshot)
        assert point.bid_price == 3.10
        assert point.ask_price == 3.20
        assert point.bid_delta == 0.55
        assert point.ask_implied_vol == 0.22
        assert registry.get(7).quote.is_empty()

    @pytest.mark.parametrize("delta, gamma", [(1.7, 0.1), (-1.2, 0.1), (0.5, 1.4)])
    def test_insane_greeks_rejected(self, registry, aggregator, spy_call, ts, delta, gamma):
        registry.open_stream(7, spy_call, StreamKind.OPTION)
        # Ask side already known, so an accepted bid update would commit
        registry.apply_greeks(7, 0.2, 0.5, 3.2, 0.0, 0.1, 0.1, -0.1, 11, ts(0))

        assert registry.apply_greeks(7, 0.2, delta, 3.0, 0.0, gamma, 0.1, -0.1, 10, ts(0)) is None

        quote = registry.get(7).quote
        assert registry.rejected == 1
        assert quote.bid_price is None
        assert quote.bid_greeks == Greeks()
        assert registry.get(7).points == []
        assert len(aggregator) == 0

    def test_greeks_on_equity_stream_ignored(self, registry, aapl, ts):
        registry.open_stream(1, aapl, StreamKind.SNAPSHOT)
        assert registry.apply_greeks(1, 0.2, 0.5, 3.0, 0.0, 0.1, 0.1, -0.1, 10, ts(0)) is None
        assert registry.rejected == 0


def test_points_forwarded_to_aggregator(registry, aapl, msft, ts):
    registry.open_stream(1, aapl, StreamKind.SNAPSHOT)
    registry.open_stream(2, msft, StreamKind.SNAPSHOT)

    registry.apply_price(1, 4, 190.0, ts(0))
    registry.apply_price(2, 4, 410.0, ts(0))

    gtp = registry.aggregator.get(ts(0))
    assert sorted(gtp.stream_ids()) == [1, 2]


def test_live_streams_and_status_filter(registry, aapl, msft):
    registry.open_stream(1, aapl, StreamKind.SNAPSHOT)
    registry.open_stream(2, msft, StreamKind.CANDLE, "1min")
    registry.end_stream(2, StreamStatus.DROPPED)

    assert [s.req_id for s in registry.live_streams()] == [1]
    assert [s.req_id for s in registry.streams(StreamStatus.DROPPED)] == [2]
    assert registry.open_ids() == [1]
    assert len(registry) == 2 and 2 in registry
