from datetime import datetime, timezone
from decimal import Decimal

from ib_harvester.account import AccountState
from ib_harvester.models import ExecutionReport, Instrument, OrderSide, OrderTicket, SecurityKind
from ib_harvester.orders import PositionUpdate, TrackedOrder


def fill(instrument, shares, price, side="BOT", order_id=1):
    order = TrackedOrder(
        order_id=order_id,
        instrument=instrument,
        ticket=OrderTicket(OrderSide.BUY if side == "BOT" else OrderSide.SELL, shares),
    )
    report = ExecutionReport(
        exec_id=f"{order_id}.{shares}.{price}",
        order_id=order_id,
        time=datetime(2026, 3, 2, tzinfo=timezone.utc),
        account="DU1",
        side=side,
        shares=shares,
        price=price,
    )
    return PositionUpdate(order, report)


def test_subscribe_and_download(gateway, aapl):
    account = AccountState()
    account.subscribe(gateway, 10000, "DU123456")
    assert gateway.calls_named("account") == [("account", 10000, "DU123456")]
    assert not account.valid

    account.on_account_value("TotalCashValue", "100000.50", "USD")
    account.on_account_value("TotalCashValue", "1", "BASE")
    account.on_portfolio(aapl, 20, 150.0)
    account.on_download_end()

    assert account.valid
    assert account.cash == Decimal("100000.50")
    assert account.position_for(aapl) == Decimal("20")


def test_unsubscribe_only_when_connected(gateway):
    account = AccountState()
    account.subscribe(gateway, 10000, "DU1")
    account.unsubscribe()
    assert gateway.calls_named("unsubscribe_account") == [("unsubscribe_account", 10000, "DU1")]
    assert not account.subscribed

    account.subscribe(gateway, 10001, "DU1")
    gateway.connected = False
    account.unsubscribe()
    assert len(gateway.calls_named("unsubscribe_account")) == 1


def test_pnl_values_and_unparseable():
    account = AccountState()
    account.on_account_value("RealizedPnL", "12.5", "USD")
    account.on_account_value("UnrealizedPnL", "-3", "USD")
    account.on_account_value("AccountType", "INDIVIDUAL", "")
    assert account.realized_pnl == Decimal("12.5")
    assert account.unrealized_pnl == Decimal("-3")
    assert account.values[("AccountType", "")] == "INDIVIDUAL"


def test_position_reconciliation(aapl):
    account = AccountState()
    account.on_download_end()

    assert not account.on_position(aapl, 5, 100.0)
    assert account.position_for(aapl) == Decimal("5")
    assert account.mismatches == 1
    assert account.on_position(aapl, 5, 100.0)

    # After the download, portfolio rows reconcile rather than seed
    account.on_portfolio(aapl, 0, 0.0)
    assert account.position_for(aapl) == Decimal("0")
    assert account.mismatches == 2


def test_fills_update_cash_position_and_realized():
    account = AccountState()
    account.cash = Decimal("100000")
    aapl = Instrument("AAPL")

    account.apply_fill(fill(aapl, 10, 100.0))
    assert account.cash == Decimal("99000.0")
    assert account.positions[aapl.key].avg_price == Decimal("100.0")

    account.apply_fill(fill(aapl, 10, 110.0))
    assert account.position_for(aapl) == Decimal("20")
    assert account.positions[aapl.key].avg_price == Decimal("105")

    account.apply_fill(fill(aapl, 5, 115.0, side="SLD"))
    assert account.realized_pnl == Decimal("50")
    assert account.position_for(aapl) == Decimal("15")

    # Selling through zero flips to a short at the fill price
    account.apply_fill(fill(aapl, 20, 120.0, side="SLD"))
    assert account.realized_pnl == Decimal("275")
    position = account.positions[aapl.key]
    assert position.quantity == Decimal("-5")
    assert position.avg_price == Decimal("120.0")


def test_fill_uses_contract_multiplier():
    account = AccountState()
    option = Instrument(
        "SPY", kind=SecurityKind.OPTION, expiry="20261120", strike=450, right="C", multiplier="100"
    )
    account.apply_fill(fill(option, 2, 3.0))
    account.apply_fill(fill(option, 2, 3.5, side="SLD"))

    assert account.realized_pnl == Decimal("100")
    assert account.cash == Decimal("100")
    assert account.position_for(option) == Decimal("0")


def test_portfolio_average_cost_excludes_multiplier():
    account = AccountState()
    option = Instrument(
        "SPY", kind=SecurityKind.OPTION, expiry="20261120", strike=450, right="C", multiplier="100"
    )
    account.on_portfolio(option, 1, 300.0)
    assert account.positions[option.key].avg_price == Decimal("3")
