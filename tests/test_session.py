from pathlib import Path

import pytest

from ib_harvester.events import (
    AccountDownloadEndEvent,
    AccountValueEvent,
    CandleEvent,
    ConnectionClosedEvent,
    ErrorEvent,
    ExecutionEvent,
    HistoryEndEvent,
    OrderStatusEvent,
    PositionEvent,
    PriceEvent,
)
from ib_harvester.models import Candle, ExecutionReport, OrderSide, OrderTicket
from ib_harvester.session import ExitCode, SessionState, SessionStateMachine
from ib_harvester.strategy import TradeIntent
from ib_harvester.streams import StreamStatus


@pytest.fixture
def gw(gateway):
    gateway.connected = False
    return gateway


@pytest.fixture
def session(config, gw, clock):
    return SessionStateMachine(config, gw, clock)


def step(session, gateway, clock, seconds=1.0):
    clock.advance(seconds)
    session.process_events(gateway.drain_events())
    return session.tick()


def start(session, gateway, clock):
    """Connect and finish the account download; the first phase is submitted."""
    assert session.connect()
    session.tick()
    gateway.push(AccountValueEvent("TotalCashValue", "100000", "USD"), AccountDownloadEndEvent())
    step(session, gateway, clock, 0.0)


def step_until(session, gateway, clock, state, limit=100):
    for _ in range(limit):
        if session.state == state:
            return
        step(session, gateway, clock)
    raise AssertionError(f"never reached {state}, stuck in {session.state}")


def history_ids(session, gateway):
    return [c[1] for c in gateway.calls_named("history") if c[1] in session.scheduler.outstanding_ids]


def finish_history(session, gateway, ts):
    for req_id in history_ids(session, gateway):
        gateway.push(
            CandleEvent(req_id, Candle(ts(0), 10.0, 11.0, 9.0, 10.5)),
            CandleEvent(req_id, Candle(ts(60), 10.5, 11.5, 10.0, 11.0)),
            HistoryEndEvent(req_id),
        )


def go_live(session, gateway, clock, ts):
    start(session, gateway, clock)
    step_until(session, gateway, clock, SessionState.HARVEST_TIMEOUT)
    finish_history(session, gateway, ts)
    step(session, gateway, clock, 20.0)
    step_until(session, gateway, clock, SessionState.LIVE)


class TestStartup:
    def test_handshake_then_account_subscription(self, session, gw, clock):
        assert session.connect()
        assert session.state == SessionState.CONNECTED
        assert session.managed_accounts == ["DU123456"]

        session.tick()
        assert session.state == SessionState.INITIALIZING
        assert gw.calls_named("account") == [("account", 10000, "DU123456")]
        assert session.tracker.account == "DU123456"

    def test_configured_account_wins(self, config, gw, clock):
        config.gateway.account = "U999"
        session = SessionStateMachine(config, gw, clock)
        session.connect()
        session.tick()
        assert gw.calls_named("account")[0][2] == "U999"

    def test_connect_failure(self, session, gw):
        gw.connect_results = [False]
        assert not session.connect()
        assert session.state == SessionState.CONNECT_FAILED
        assert session.needs_connection

    def test_harvest_waits_for_download(self, session, gw, clock):
        session.connect()
        session.tick()
        step(session, gw, clock)
        assert session.state == SessionState.INITIALIZING
        assert gw.calls_named("history") == []

        gw.push(AccountDownloadEndEvent())
        step(session, gw, clock)
        assert session.state == SessionState.HARVESTING
        assert session.phase == 0
        assert len(gw.calls_named("history")) == 1

    def test_account_download_timeout(self, session, gw, clock):
        session.connect()
        session.tick()
        step(session, gw, clock, 10.0)
        assert session.state == SessionState.INIT_FAILED

        assert step(session, gw, clock) == ExitCode.ACCOUNT_FAILURE
        assert session.state == SessionState.TERMINAL
        assert not gw.connected


class TestHarvest:
    def test_phases_advance_after_dwell(self, session, gw, clock, ts):
        start(session, gw, clock)
        step_until(session, gw, clock, SessionState.HARVEST_TIMEOUT)
        assert len(gw.calls_named("history")) == 2

        step(session, gw, clock, 5.0)
        assert session.state == SessionState.HARVEST_TIMEOUT

        step(session, gw, clock, 15.0)
        assert session.state == SessionState.HARVESTING
        assert session.phase == 1

        step_until(session, gw, clock, SessionState.LIVE)
        assert len(gw.calls_named("history")) == 4
        assert len(gw.calls_named("market_data")) == 2

    def test_ceiling_holds_next_phase(self, config, gw, clock, ts):
        config.harvest.ceiling = 1
        session = SessionStateMachine(config, gw, clock)
        start(session, gw, clock)
        step_until(session, gw, clock, SessionState.HARVEST_TIMEOUT)

        step(session, gw, clock, 20.0)
        assert session.state == SessionState.HARVEST_TIMEOUT
        assert session.phase == 0

        first = session.scheduler.outstanding_ids[0]
        gw.push(HistoryEndEvent(first))
        step(session, gw, clock, 20.0)
        assert session.phase == 1

    def test_exit_after_harvest(self, config, gw, clock, ts):
        config.session.exit_after_harvest = True
        session = SessionStateMachine(config, gw, clock)
        go_live(session, gw, clock, ts)
        assert session.tick() is None

        finish_history(session, gw, ts)
        assert step(session, gw, clock) == ExitCode.HARVEST_COMPLETE

        assert len(gw.calls_named("cancel_market_data")) == 2
        assert len(gw.calls_named("unsubscribe_account")) == 1
        exported = sorted(p.name for p in Path(config.export.directory).iterdir())
        assert len(exported) == 4
        assert all("live" not in name for name in exported)

    def test_idle_when_live_streams_fail(self, session, gw, clock, ts):
        go_live(session, gw, clock, ts)
        finish_history(session, gw, ts)
        for req_id in session.scheduler.live_ids:
            gw.push(ErrorEvent(req_id, 200, "No security definition"))
        step(session, gw, clock)
        assert session.state == SessionState.IDLE


class TestEvents:
    def test_rate_limited_request_dropped(self, session, gw, clock):
        start(session, gw, clock)
        req_id = gw.calls_named("history")[0][1]
        gw.push(ErrorEvent(req_id, 322, "Max number of requests exceeded"))
        step(session, gw, clock)
        assert session.registry.get(req_id).status == StreamStatus.DROPPED

    def test_informational_and_unknown_errors_ignored(self, session, gw, clock):
        start(session, gw, clock)
        req_id = gw.calls_named("history")[0][1]
        gw.push(
            ErrorEvent(req_id, 2104, "Market data farm connection is OK"),
            ErrorEvent(-1, 2158, "Sec-def data farm connection is OK"),
            ErrorEvent(55555, 162, "stale"),
        )
        step(session, gw, clock)
        assert session.registry.get(req_id).is_open
        assert session.state == SessionState.HARVESTING or session.state == SessionState.HARVEST_TIMEOUT

    def test_updates_for_unknown_requests_counted(self, session, gw, clock, ts):
        start(session, gw, clock)
        gw.push(PriceEvent(424242, 1, 1.0, ts(0)))
        step(session, gw, clock)
        assert session.registry.unknown == 1

    def test_position_events_reconcile(self, session, gw, clock, aapl):
        start(session, gw, clock)
        gw.push(PositionEvent(aapl, 15, 180.0))
        step(session, gw, clock)
        assert session.account.position_for(aapl) == 15


class TestConnectionLoss:
    def test_lost_mid_harvest_resumes_at_next_phase(self, session, gw, clock):
        start(session, gw, clock)
        step_until(session, gw, clock, SessionState.HARVEST_TIMEOUT)
        in_flight = session.scheduler.outstanding_ids

        gw.push(ErrorEvent(-1, 1100, "Connectivity between IB and TWS has been lost"))
        step(session, gw, clock)
        assert session.state == SessionState.DISCONNECTED
        assert session.needs_connection
        assert all(session.registry.get(i).status == StreamStatus.ABANDONED for i in in_flight)
        assert not gw.connected

        start(session, gw, clock)
        assert session.phase == 1
        assert session.state == SessionState.HARVESTING

    def test_lost_while_live_resubscribes(self, session, gw, clock, ts):
        go_live(session, gw, clock, ts)
        old_live = session.scheduler.live_ids

        gw.push(ConnectionClosedEvent())
        step(session, gw, clock)
        assert session.state == SessionState.DISCONNECTED
        assert all(session.registry.get(i).status == StreamStatus.ABANDONED for i in old_live)

        start(session, gw, clock)
        assert session.state == SessionState.LIVE
        step(session, gw, clock)
        assert len(gw.calls_named("market_data")) == 4
        assert not set(old_live) & set(session.scheduler.live_ids)

    def test_missed_heartbeat(self, session, gw, clock):
        gw.answer_pings = False
        start(session, gw, clock)
        step_until(session, gw, clock, SessionState.HARVEST_TIMEOUT)

        step(session, gw, clock, 30.0)
        assert gw.calls_named("current_time")
        assert session.state != SessionState.DISCONNECTED

        step(session, gw, clock, 2.0)
        assert session.state == SessionState.DISCONNECTED

    def test_answered_heartbeat_keeps_session(self, session, gw, clock, ts):
        go_live(session, gw, clock, ts)
        for _ in range(40):
            step(session, gw, clock)
        assert len(gw.calls_named("current_time")) >= 1
        assert session.state == SessionState.LIVE


def test_interrupt_exports_and_exits(session, gw, clock, config, ts):
    start(session, gw, clock)
    finish_history(session, gw, ts)
    step(session, gw, clock)

    session.request_interrupt()
    assert session.tick() == ExitCode.INTERRUPTED
    assert session.state == SessionState.TERMINAL
    assert len(list(Path(config.export.directory).iterdir())) >= 1
    # Further ticks are no-ops
    assert session.tick() == ExitCode.INTERRUPTED


class BuyOnce:
    def __init__(self, instrument):
        self.instrument = instrument
        self.timepoints = []

    def process_next_tick(self, timepoint, registry, account):
        self.timepoints.append(timepoint)
        if len(self.timepoints) > 1:
            return []
        return [TradeIntent(self.instrument, OrderTicket(OrderSide.BUY, 10))]


class TestTrading:
    def _live_with_quotes(self, session, gw, clock, ts):
        go_live(session, gw, clock, ts)
        finish_history(session, gw, ts)
        step(session, gw, clock)
        for req_id in session.scheduler.live_ids:
            gw.push(PriceEvent(req_id, 4, 190.0, ts(300)))

    def test_strategy_orders_are_placed(self, config, gw, clock, ts, aapl):
        config.gateway.readonly = False
        strategy = BuyOnce(aapl)
        session = SessionStateMachine(config, gw, clock, strategy=strategy)
        self._live_with_quotes(session, gw, clock, ts)
        step(session, gw, clock)

        assert len(strategy.timepoints) == 1
        assert strategy.timepoints[0].timestamp == ts(300)
        (call,) = gw.calls_named("place_order")
        assert call[1] == 1
        assert call[3].account == "DU123456"

    def test_readonly_session_skips_orders(self, config, gw, clock, ts, aapl):
        strategy = BuyOnce(aapl)
        session = SessionStateMachine(config, gw, clock, strategy=strategy)
        self._live_with_quotes(session, gw, clock, ts)
        step(session, gw, clock)

        assert len(strategy.timepoints) == 1
        assert gw.calls_named("place_order") == []
        assert session.state == SessionState.LIVE

    def test_fill_updates_account(self, config, gw, clock, ts, aapl):
        config.gateway.readonly = False
        session = SessionStateMachine(config, gw, clock, strategy=BuyOnce(aapl))
        self._live_with_quotes(session, gw, clock, ts)
        step(session, gw, clock)

        gw.push(OrderStatusEvent(1, "Submitted", 0, 10, 0.0))
        gw.push(OrderStatusEvent(1, "Filled", 10, 0, 190.0))
        step(session, gw, clock)
        (call,) = gw.calls_named("executions")

        report = ExecutionReport(
            exec_id="0000e1.01",
            order_id=1,
            time=ts(301),
            account="DU123456",
            side="BOT",
            shares=10,
            price=190.0,
        )
        gw.push(ExecutionEvent(call[1], report))
        step(session, gw, clock)

        assert session.account.position_for(aapl) == 10
        assert session.account.cash == 100000 - 1900
