"""
Narrow gateway interface.

This is everything the harvester needs from a TWS / IB Gateway connection.
Callbacks are not delivered through overridable methods; an implementation
queues :mod:`ib_harvester.events` instances which the control loop drains with
:meth:`Gateway.drain_events` on its own thread.
"""

from abc import ABC, abstractmethod
from typing import List

from ..events import GatewayEvent
from ..models import ExecutionQuery, Instrument, OrderTicket


class Gateway(ABC):
    """Connection, request and event-delivery surface of the gateway."""

    @abstractmethod
    def connect(
        self,
        host: str,
        port: int,
        client_id: int,
        timeout: float = 10.0,
        readonly: bool = True,
    ) -> bool:
        """Connect and complete the API handshake. Returns False on failure."""

    @abstractmethod
    def disconnect(self) -> None:
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        ...

    # Market data

    @abstractmethod
    def request_historical_data(
        self,
        req_id: int,
        instrument: Instrument,
        lookback: str,
        bar_size: str,
        what_to_show: str = "TRADES",
        use_rth: bool = True,
    ) -> None:
        """Deliver CandleEvents followed by one HistoryEndEvent (or an ErrorEvent)."""

    @abstractmethod
    def cancel_historical_data(self, req_id: int) -> None:
        ...

    @abstractmethod
    def request_market_data(self, req_id: int, instrument: Instrument) -> None:
        """Deliver Price/Size/Greeks events until cancelled."""

    @abstractmethod
    def cancel_market_data(self, req_id: int) -> None:
        ...

    # Orders

    @abstractmethod
    def place_order(self, order_id: int, instrument: Instrument, ticket: OrderTicket) -> None:
        ...

    @abstractmethod
    def cancel_order(self, order_id: int) -> None:
        ...

    @abstractmethod
    def request_executions(self, req_id: int, query: ExecutionQuery) -> None:
        """Deliver ExecutionEvents followed by an ExecutionEndEvent."""

    # Account

    @abstractmethod
    def subscribe_account(self, req_id: int, account: str) -> None:
        """Deliver account values and portfolio, then AccountDownloadEndEvent."""

    @abstractmethod
    def unsubscribe_account(self, req_id: int, account: str) -> None:
        ...

    # Liveness and event delivery

    @abstractmethod
    def request_current_time(self) -> None:
        """Heartbeat. Answered with a CurrentTimeEvent."""

    @abstractmethod
    def wait_for_events(self, timeout: float) -> bool:
        """Block until callback activity or timeout. Returns True if events are pending."""

    @abstractmethod
    def drain_events(self) -> List[GatewayEvent]:
        """Return and clear every queued event, in delivery order."""
