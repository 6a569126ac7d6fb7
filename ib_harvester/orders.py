"""
Order lifecycle tracking.

Orders move through the gateway's status strings along a fixed DAG:

    ApiPending / PendingSubmit / PreSubmitted  -> Submitted -> Filled
    ApiPending / PendingSubmit / PreSubmitted  -> ApiCancelled | Cancelled
    Submitted -> Cancelled | Inactive

An order lives in exactly one of the pending or open sets until it reaches a
terminal state. On Filled an execution lookup is issued and the returned
reports are joined back to the order as position updates.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from .events import is_order_rejection
from .exceptions import OrderError, ReadOnlySessionError
from .gateway.base import Gateway
from .logger import LogEvent, get_logger
from .models import ExecutionQuery, ExecutionReport, Instrument, OrderTicket
from .utils.request_ids import RequestIdAllocator

logger = get_logger(__name__)


class OrderState(str, Enum):
    """Order lifecycle states (gateway status strings)."""

    API_PENDING = "ApiPending"
    PENDING_SUBMIT = "PendingSubmit"
    PRE_SUBMITTED = "PreSubmitted"
    SUBMITTED = "Submitted"
    PENDING_CANCEL = "PendingCancel"
    FILLED = "Filled"
    API_CANCELLED = "ApiCancelled"
    CANCELLED = "Cancelled"
    INACTIVE = "Inactive"
    REJECTED = "Rejected"

    @property
    def is_pending(self) -> bool:
        return self in PENDING_RANK

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


PENDING_RANK = {
    OrderState.API_PENDING: 0,
    OrderState.PENDING_SUBMIT: 1,
    OrderState.PRE_SUBMITTED: 2,
}

TERMINAL_STATES = frozenset(
    {
        OrderState.FILLED,
        OrderState.CANCELLED,
        OrderState.API_CANCELLED,
        OrderState.INACTIVE,
        OrderState.REJECTED,
    }
)

_FROM_PENDING = frozenset(
    {
        OrderState.SUBMITTED,
        OrderState.API_CANCELLED,
        OrderState.CANCELLED,
        OrderState.REJECTED,
    }
)

_FROM_SUBMITTED = frozenset(
    {
        OrderState.FILLED,
        OrderState.CANCELLED,
        OrderState.INACTIVE,
        OrderState.REJECTED,
    }
)

# Reported straight from a pending state; recorded as passing through Submitted
_VIA_SUBMITTED = frozenset({OrderState.FILLED, OrderState.INACTIVE})


def can_transition(src: OrderState, dst: OrderState) -> bool:
    if src.is_terminal:
        return False
    if src.is_pending:
        if dst.is_pending:
            return PENDING_RANK[dst] > PENDING_RANK[src]
        return dst in _FROM_PENDING
    if src == OrderState.SUBMITTED:
        return dst in _FROM_SUBMITTED
    return False


@dataclass
class TrackedOrder:
    order_id: int
    instrument: Instrument
    ticket: OrderTicket
    state: OrderState = OrderState.API_PENDING
    filled: float = 0.0
    remaining: float = 0.0
    avg_fill_price: float = 0.0
    cancel_requested: bool = False
    history: List[OrderState] = field(default_factory=list)

    def __post_init__(self):
        if not self.remaining:
            self.remaining = self.ticket.quantity
        if not self.history:
            self.history.append(self.state)

    @property
    def is_complete(self) -> bool:
        return self.state.is_terminal


@dataclass(frozen=True)
class PositionUpdate:
    """An execution report joined to the order that produced it."""

    order: TrackedOrder
    report: ExecutionReport

    @property
    def instrument(self) -> Instrument:
        return self.order.instrument

    @property
    def signed_quantity(self) -> float:
        return self.report.shares if self.report.is_buy else -self.report.shares

    @property
    def price(self) -> float:
        return self.report.price


class OrderLifecycleTracker:
    """Tracks order state transitions and joins executions on fill."""

    def __init__(
        self,
        gateway: Gateway,
        ids: RequestIdAllocator,
        client_id: int = 0,
        account: str = "",
        readonly: bool = True,
    ):
        self.gateway = gateway
        self.ids = ids
        self.client_id = client_id
        self.account = account
        self.readonly = readonly

        self.orders: Dict[int, TrackedOrder] = {}
        self.pending: Set[int] = set()
        self.open: Set[int] = set()

        self._next_order_id: Optional[int] = None
        self._exec_requests: Dict[int, int] = {}
        self._seen_executions: Set[str] = set()

        self.stats = {"placed": 0, "filled": 0, "cancelled": 0, "rejected": 0, "invalid": 0}

    def __contains__(self, order_id: int) -> bool:
        return order_id in self.orders

    def get(self, order_id: int) -> Optional[TrackedOrder]:
        return self.orders.get(order_id)

    def owns_execution_request(self, req_id: int) -> bool:
        return req_id in self._exec_requests

    def on_next_valid_id(self, order_id: int) -> None:
        if self._next_order_id is None or order_id > self._next_order_id:
            self._next_order_id = order_id

    # ------------------------------------------------------------------
    # Placement
    # ------------------------------------------------------------------

    def place_order(self, instrument: Instrument, ticket: OrderTicket) -> TrackedOrder:
        """
        Assign the next valid order id and send the order.

        Raises:
            ReadOnlySessionError: the connection is read-only
            OrderError: no valid order id has been received yet
        """
        if self.readonly:
            raise ReadOnlySessionError("Cannot place orders on a read-only connection")
        if self._next_order_id is None:
            raise OrderError("No valid order id received from the gateway yet")

        order_id = self._next_order_id
        while self.ids.is_allocated(order_id) or order_id in self.orders:
            order_id += 1
        self.ids.mark_id_used(order_id)
        self._next_order_id = order_id + 1

        if not ticket.account and self.account:
            ticket = OrderTicket(
                action=ticket.action,
                quantity=ticket.quantity,
                order_type=ticket.order_type,
                limit_price=ticket.limit_price,
                account=self.account,
                tif=ticket.tif,
            )

        tracked = TrackedOrder(order_id=order_id, instrument=instrument, ticket=ticket)
        self.orders[order_id] = tracked
        self.pending.add(order_id)
        self.gateway.place_order(order_id, instrument, ticket)

        self.stats["placed"] += 1
        logger.info(
            LogEvent.ORDER_PLACED.value,
            order_id=order_id,
            symbol=instrument.symbol,
            side=ticket.action.value,
            quantity=ticket.quantity,
            order_type=ticket.order_type,
        )
        return tracked

    def cancel_order(self, order_id: int) -> bool:
        tracked = self.orders.get(order_id)
        if tracked is None or tracked.is_complete:
            return False
        tracked.cancel_requested = True
        self.gateway.cancel_order(order_id)
        return True

    # ------------------------------------------------------------------
    # Status callbacks
    # ------------------------------------------------------------------

    def on_status(
        self,
        order_id: int,
        status: str,
        filled: float = 0.0,
        remaining: float = 0.0,
        avg_fill_price: float = 0.0,
    ) -> bool:
        """Apply a status callback. Returns True if the order changed state."""
        tracked = self.orders.get(order_id)
        if tracked is None:
            logger.debug(f"Status {status} for untracked order {order_id}")
            return False

        try:
            state = OrderState(status)
        except ValueError:
            logger.warning(f"Unknown order status {status!r} for order {order_id}")
            return False

        if not tracked.is_complete:
            tracked.filled = filled
            tracked.remaining = remaining
            tracked.avg_fill_price = avg_fill_price

        if state == OrderState.PENDING_CANCEL:
            tracked.cancel_requested = True
            return False
        if state == tracked.state:
            return False

        if tracked.state.is_pending and state in _VIA_SUBMITTED:
            self._enter(tracked, OrderState.SUBMITTED)

        if not can_transition(tracked.state, state):
            self.stats["invalid"] += 1
            logger.warning(
                LogEvent.ORDER_STATUS.value,
                order_id=order_id,
                current=tracked.state.value,
                reported=state.value,
                accepted=False,
            )
            return False

        self._enter(tracked, state)
        return True

    def _enter(self, tracked: TrackedOrder, state: OrderState) -> None:
        tracked.state = state
        tracked.history.append(state)
        order_id = tracked.order_id

        if state == OrderState.SUBMITTED:
            self.pending.discard(order_id)
            self.open.add(order_id)
        elif state == OrderState.FILLED:
            self.open.discard(order_id)
            self.pending.discard(order_id)
            self.stats["filled"] += 1
            self._request_executions(tracked)
        elif state.is_terminal:
            self.open.discard(order_id)
            self.pending.discard(order_id)
            key = "rejected" if state == OrderState.REJECTED else "cancelled"
            self.stats[key] += 1

        logger.info(
            LogEvent.ORDER_STATUS.value,
            order_id=order_id,
            symbol=tracked.instrument.symbol,
            state=state.value,
            filled=tracked.filled,
            remaining=tracked.remaining,
        )

    def _request_executions(self, tracked: TrackedOrder) -> int:
        req_id = self.ids.next_id()
        self._exec_requests[req_id] = tracked.order_id
        query = ExecutionQuery(
            client_id=self.client_id,
            account=tracked.ticket.account or self.account,
            symbol=tracked.instrument.symbol,
            kind=tracked.instrument.kind.value,
            side=tracked.ticket.action.value,
        )
        self.gateway.request_executions(req_id, query)
        return req_id

    # ------------------------------------------------------------------
    # Executions and errors
    # ------------------------------------------------------------------

    def on_execution(self, req_id: int, report: ExecutionReport) -> Optional[PositionUpdate]:
        order_id = self._exec_requests.get(req_id)
        if order_id is None:
            logger.debug(f"Execution for unknown lookup {req_id}")
            return None
        if report.order_id != order_id:
            # The filter is per symbol/side, so other orders' fills come back too
            return None
        if report.exec_id in self._seen_executions:
            return None

        self._seen_executions.add(report.exec_id)
        update = PositionUpdate(order=self.orders[order_id], report=report)
        logger.info(
            LogEvent.EXECUTION_JOINED.value,
            order_id=order_id,
            exec_id=report.exec_id,
            shares=report.shares,
            price=report.price,
        )
        return update

    def on_execution_end(self, req_id: int) -> None:
        self._exec_requests.pop(req_id, None)

    def on_error(self, order_id: int, code: int, message: str = "") -> bool:
        """Handle an error keyed by order id. Returns False if the id is not an order."""
        tracked = self.orders.get(order_id)
        if tracked is None:
            return False

        if is_order_rejection(code) and not tracked.is_complete:
            self._enter(tracked, OrderState.REJECTED)
            logger.warning(
                LogEvent.ORDER_REJECTED.value,
                order_id=order_id,
                code=code,
                message=message,
            )
        else:
            logger.info(f"Order {order_id} notice {code}: {message}")
        return True
