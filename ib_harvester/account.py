"""
Account state.

Subscribes to the account's value and portfolio updates. The initial
portfolio download seeds positions; the session waits for the download end
before it starts harvesting. Fills joined by the order tracker are applied
here with Decimal arithmetic.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

from .logger import LogEvent, get_logger, log_system_event
from .models import Instrument
from .utils.pricing import PrecisePricing

if TYPE_CHECKING:
    from .gateway.base import Gateway
    from .orders import PositionUpdate

logger = get_logger(__name__)

CASH_KEYS = ("TotalCashValue", "CashBalance")


@dataclass
class Position:
    instrument: Instrument
    quantity: Decimal
    avg_price: Decimal

    @property
    def multiplier(self) -> Decimal:
        return PrecisePricing.to_decimal(self.instrument.multiplier or 1)


class AccountState:
    """Cash, PnL and positions of the trading account."""

    def __init__(self) -> None:
        self.account: Optional[str] = None
        self.valid = False
        self.cash: Decimal = Decimal("0.0")
        self.realized_pnl: Decimal = Decimal("0.0")
        self.unrealized_pnl: Decimal = Decimal("0.0")
        self.values: Dict[Tuple[str, str], str] = {}
        self.positions: Dict[Tuple[Any, ...], Position] = {}
        self.mismatches = 0

        self._gateway: Optional[Gateway] = None
        self._req_id: Optional[int] = None

    @property
    def subscribed(self) -> bool:
        return self._req_id is not None

    def subscribe(self, gateway: Gateway, req_id: int, account: str) -> None:
        """Start the account download. The state is invalid until it ends."""
        self._gateway = gateway
        self._req_id = req_id
        self.account = account
        self.valid = False
        gateway.subscribe_account(req_id, account)
        logger.info(f"Subscribed to account updates for {account or 'default account'}")

    def unsubscribe(self) -> None:
        if self._gateway is None or self._req_id is None:
            return
        if self._gateway.is_connected():
            self._gateway.unsubscribe_account(self._req_id, self.account or "")
        self._req_id = None

    def reset(self) -> None:
        """Drop the subscription handle after the connection was lost."""
        self._req_id = None
        self.valid = False

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def on_account_value(self, key: str, value: str, currency: str = "") -> None:
        self.values[(key, currency)] = value
        if currency == "BASE":
            # Aggregated across currencies; the per-currency rows are authoritative
            return
        try:
            amount = PrecisePricing.to_decimal(value)
        except InvalidOperation:
            return

        if key in CASH_KEYS:
            self.cash = amount
        elif key == "RealizedPnL":
            self.realized_pnl = amount
        elif key == "UnrealizedPnL":
            self.unrealized_pnl = amount

    def on_portfolio(self, instrument: Instrument, position: float, average_cost: float) -> None:
        """Portfolio rows seed positions during the download, then reconcile."""
        if not self.valid:
            self._set_position(instrument, position, average_cost)
            return
        self.on_position(instrument, position, average_cost)

    def on_download_end(self) -> None:
        self.valid = True
        log_system_event(
            logger,
            LogEvent.ACCOUNT_READY,
            "Account download complete",
            account=self.account,
            cash=str(self.cash),
            positions=len(self.positions),
        )

    def on_position(self, instrument: Instrument, position: float, average_cost: float) -> bool:
        """Reconcile a broker-reported position. Returns True if it matched."""
        local = self.positions.get(instrument.key)
        local_qty = local.quantity if local is not None else Decimal("0")
        broker_qty = PrecisePricing.to_decimal(position)
        if local_qty == broker_qty:
            return True

        self.mismatches += 1
        logger.warning(
            f"Position mismatch for {instrument.describe()}: "
            f"local {local_qty}, broker {broker_qty}; adopting broker"
        )
        self._set_position(instrument, position, average_cost)
        return False

    def _set_position(self, instrument: Instrument, position: float, average_cost: float) -> None:
        quantity = PrecisePricing.to_decimal(position)
        if quantity == 0:
            self.positions.pop(instrument.key, None)
            return
        avg = PrecisePricing.to_decimal(average_cost)
        multiplier = PrecisePricing.to_decimal(instrument.multiplier or 1)
        if multiplier != 1:
            # Gateway average cost includes the multiplier
            avg = avg / multiplier
        self.positions[instrument.key] = Position(instrument, quantity, avg)

    # ------------------------------------------------------------------
    # Fills
    # ------------------------------------------------------------------

    def apply_fill(self, update: PositionUpdate) -> None:
        """Apply an execution to cash, position and realized PnL."""
        instrument = update.instrument
        qty = PrecisePricing.to_decimal(update.signed_quantity)
        price = PrecisePricing.to_decimal(update.price)
        if qty == 0 or price <= 0:
            return

        multiplier = PrecisePricing.to_decimal(instrument.multiplier or 1)
        self.cash -= PrecisePricing.calculate_notional(qty, price, multiplier)

        pos = self.positions.get(instrument.key)
        if pos is None or pos.quantity == 0:
            self.positions[instrument.key] = Position(instrument, qty, price)
            return

        if (pos.quantity > 0) == (qty > 0):
            new_qty = pos.quantity + qty
            new_avg = PrecisePricing.calculate_average_price(
                pos.quantity, pos.avg_price, qty, price
            )
            self.positions[instrument.key] = Position(instrument, new_qty, new_avg)
            return

        # Reducing or flipping
        closing = min(abs(qty), abs(pos.quantity))
        closed_signed = closing if pos.quantity > 0 else -closing
        self.realized_pnl += PrecisePricing.calculate_pnl(
            pos.avg_price, price, closed_signed, multiplier
        )

        remaining = pos.quantity + qty
        if remaining == 0:
            self.positions.pop(instrument.key, None)
        elif (remaining > 0) == (pos.quantity > 0):
            self.positions[instrument.key] = Position(instrument, remaining, pos.avg_price)
        else:
            self.positions[instrument.key] = Position(instrument, remaining, price)

    def position_for(self, instrument: Instrument) -> Decimal:
        pos = self.positions.get(instrument.key)
        return pos.quantity if pos is not None else Decimal("0")
