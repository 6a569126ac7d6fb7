"""Pytest fixtures and configuration for the test suite."""

from collections import deque
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from ib_harvester.aggregator import TimeSeriesAggregator
from ib_harvester.config import Config, HarvestConfig, SessionConfig
from ib_harvester.events import (
    AccountDownloadEndEvent,
    AccountValueEvent,
    CandleEvent,
    CurrentTimeEvent,
    HistoryEndEvent,
    ManagedAccountsEvent,
    NextValidIdEvent,
    PriceEvent,
)
from ib_harvester.exceptions import GatewayDisconnectedError
from ib_harvester.gateway.base import Gateway
from ib_harvester.models import Candle, Instrument, SecurityKind
from ib_harvester.streams import StreamRegistry
from ib_harvester.utils.request_ids import RequestIdAllocator

EPOCH = datetime(2026, 3, 2, 14, 30, tzinfo=timezone.utc)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 0.0):
        self.t = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.t

    def utcnow(self) -> datetime:
        return EPOCH + timedelta(seconds=self.t)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)

    def advance(self, seconds: float) -> None:
        self.t += seconds


class FakeGateway(Gateway):
    """
    In-memory gateway recording every call and replaying queued events.

    With ``auto`` set it also answers account, history and market data
    requests the way a quiet gateway would.
    """

    def __init__(self):
        self.connected = False
        self.connect_results: List[bool] = []
        self.accounts = ("DU123456",)
        self.next_order_id = 1
        self.calls: List[tuple] = []
        self.events = deque()
        self.before_request = None
        self.answer_pings = True
        self.auto = False

    def push(self, *events) -> None:
        self.events.extend(events)

    def calls_named(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    def _require(self, name: str, req_id: int) -> None:
        if not self.connected:
            raise GatewayDisconnectedError("not connected")
        if self.before_request is not None:
            self.before_request(name, req_id)

    def connect(self, host, port, client_id, timeout=10.0, readonly=True):
        self.calls.append(("connect", host, port, client_id, readonly))
        ok = self.connect_results.pop(0) if self.connect_results else True
        if ok:
            self.connected = True
            self.push(ManagedAccountsEvent(self.accounts), NextValidIdEvent(self.next_order_id))
        return ok

    def disconnect(self):
        self.calls.append(("disconnect",))
        self.connected = False

    def is_connected(self):
        return self.connected

    def request_historical_data(
        self, req_id, instrument, lookback, bar_size, what_to_show="TRADES", use_rth=True
    ):
        self._require("history", req_id)
        self.calls.append(("history", req_id, instrument, lookback, bar_size))
        if self.auto:
            self.push(
                CandleEvent(req_id, Candle(EPOCH, 10.0, 11.0, 9.0, 10.5, 100)),
                CandleEvent(req_id, Candle(EPOCH + timedelta(minutes=1), 10.5, 11.0, 10.0, 10.8, 80)),
                HistoryEndEvent(req_id),
            )

    def cancel_historical_data(self, req_id):
        self.calls.append(("cancel_history", req_id))

    def request_market_data(self, req_id, instrument):
        self._require("market_data", req_id)
        self.calls.append(("market_data", req_id, instrument))
        if self.auto:
            self.push(PriceEvent(req_id, 4, 10.9, EPOCH + timedelta(minutes=5)))

    def cancel_market_data(self, req_id):
        self.calls.append(("cancel_market_data", req_id))

    def place_order(self, order_id, instrument, ticket):
        self._require("place_order", order_id)
        self.calls.append(("place_order", order_id, instrument, ticket))

    def cancel_order(self, order_id):
        self.calls.append(("cancel_order", order_id))

    def request_executions(self, req_id, query):
        self._require("executions", req_id)
        self.calls.append(("executions", req_id, query))

    def subscribe_account(self, req_id, account):
        self._require("account", req_id)
        self.calls.append(("account", req_id, account))
        if self.auto:
            self.push(
                AccountValueEvent("TotalCashValue", "100000", "USD", account),
                AccountDownloadEndEvent(account),
            )

    def unsubscribe_account(self, req_id, account):
        self.calls.append(("unsubscribe_account", req_id, account))

    def request_current_time(self):
        self._require("current_time", -1)
        self.calls.append(("current_time",))
        if self.answer_pings:
            self.push(CurrentTimeEvent(EPOCH))

    def wait_for_events(self, timeout):
        return bool(self.events)

    def drain_events(self):
        events = list(self.events)
        self.events.clear()
        return events


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def gateway():
    gw = FakeGateway()
    gw.connected = True
    return gw


@pytest.fixture
def ids():
    return RequestIdAllocator()


@pytest.fixture
def aggregator():
    return TimeSeriesAggregator()


@pytest.fixture
def registry(aggregator, clock):
    return StreamRegistry(aggregator, clock)


@pytest.fixture
def aapl():
    return Instrument("AAPL")


@pytest.fixture
def msft():
    return Instrument("MSFT")


@pytest.fixture
def spy_call():
    return Instrument(
        "SPY",
        kind=SecurityKind.OPTION,
        expiry="20261120",
        strike=450.0,
        right="C",
        multiplier="100",
    )


@pytest.fixture
def es_future():
    return Instrument("ES", kind=SecurityKind.FUTURE, exchange="CME", expiry="20261218")


@pytest.fixture
def two_phase_harvest():
    """Two phases of one tier each; the second goes live."""
    return HarvestConfig(
        ladder=[[("1 D", "1 min")], [("1 W", "5 mins")]],
        pacing=1.0,
        final_pacing=1.0,
        dwell=20.0,
        recheck=20.0,
        ceiling=5,
    )


@pytest.fixture
def config(two_phase_harvest, tmp_path):
    return Config(
        symbols=["AAPL", "MSFT"],
        harvest=two_phase_harvest,
        session=SessionConfig(
            main_loop_delay=0.1,
            event_wait_timeout=0.0,
            max_connect_attempts=3,
            reconnect_backoff=3.0,
            ping_interval=30.0,
            ping_deadline=2.0,
            init_timeout=10.0,
        ),
        export={"directory": str(tmp_path / "harvest"), "min_points": 1},
    )


def at(seconds: float) -> datetime:
    """Timestamp ``seconds`` after the test epoch."""
    return EPOCH + timedelta(seconds=seconds)


@pytest.fixture
def ts():
    return at
