"""
Gateway adapter built on ib_async.

ib_async runs its own asyncio loop; every callback it raises is converted into
an :mod:`ib_harvester.events` instance and appended to a local queue. The
control loop lets the ib_async loop run inside :meth:`IBGateway.wait_for_events`
and then drains the queue, so all harvester state is mutated on one thread.

Requests that ib_async only offers as coroutines (historical bars, executions,
account download, current time) are scheduled as tasks on the ib_async loop;
their results are queued as events when the task completes.
"""

import asyncio
import math
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set

from ib_async import IB, Contract, ExecutionFilter, LimitOrder, MarketOrder, Order, util

from ..events import (
    AccountDownloadEndEvent,
    AccountValueEvent,
    CandleEvent,
    ConnectionClosedEvent,
    CurrentTimeEvent,
    ErrorEvent,
    ExecutionEndEvent,
    ExecutionEvent,
    GatewayEvent,
    GreeksEvent,
    HistoryEndEvent,
    ManagedAccountsEvent,
    NextValidIdEvent,
    OrderStatusEvent,
    PortfolioEvent,
    PositionEvent,
    PriceEvent,
    SizeEvent,
    is_informational,
)
from ..exceptions import GatewayDisconnectedError
from ..logger import LogEvent, get_logger, log_system_event
from ..models import (
    Candle,
    ExecutionQuery,
    ExecutionReport,
    Instrument,
    OrderTicket,
    SecurityKind,
    to_utc,
)
from ..utils.pricing import PrecisePricing
from .base import Gateway

logger = get_logger(__name__)

# Price tick type -> size tick type carried alongside it
PRICE_TO_SIZE_FIELD = {1: 0, 2: 3, 4: 5, 66: 69, 67: 70, 68: 71}
SIZE_FIELDS = frozenset(PRICE_TO_SIZE_FIELD.values())
GREEK_ATTRS = {10: "bidGreeks", 11: "askGreeks", 12: "lastGreeks"}

# Task key of the heartbeat request; request ids are always positive
CURRENT_TIME_TASK = -1


def _clean(value: Any) -> Optional[float]:
    """ib_async reports unset numeric fields as nan or None."""
    if value is None:
        return None
    value = float(value)
    return None if math.isnan(value) else value


def to_contract(instrument: Instrument) -> Contract:
    return Contract(
        secType=instrument.kind.value,
        conId=instrument.con_id,
        symbol=instrument.symbol,
        exchange=instrument.exchange,
        primaryExchange=instrument.primary_exchange,
        currency=instrument.currency,
        lastTradeDateOrContractMonth=instrument.expiry,
        strike=instrument.strike,
        right=instrument.right,
        multiplier=instrument.multiplier,
    )


def to_instrument(contract: Contract) -> Instrument:
    try:
        kind = SecurityKind(contract.secType)
    except ValueError:
        kind = SecurityKind.EQUITY
    return Instrument(
        symbol=contract.symbol,
        kind=kind,
        currency=contract.currency or "USD",
        exchange=contract.exchange or "SMART",
        primary_exchange=contract.primaryExchange or "",
        con_id=contract.conId or 0,
        expiry=contract.lastTradeDateOrContractMonth or "",
        strike=float(contract.strike or 0.0),
        right=contract.right or "",
        multiplier=contract.multiplier or "",
    )


def to_order(order_id: int, ticket: OrderTicket) -> Order:
    if ticket.order_type == "LMT":
        price = float(PrecisePricing.round_price(ticket.limit_price))
        order = LimitOrder(ticket.action.value, ticket.quantity, price)
    else:
        order = MarketOrder(ticket.action.value, ticket.quantity)
    order.orderId = order_id
    order.tif = ticket.tif
    if ticket.account:
        order.account = ticket.account
    return order


class IBGateway(Gateway):
    """
    :class:`Gateway` implementation over an ``ib_async.IB`` instance.

    Args:
        ib: Pre-built IB instance (tests pass a mock); a new one by default
    """

    def __init__(self, ib: Optional[IB] = None):
        self.ib = ib or IB()
        self.client_id = 0
        self._events: Deque[GatewayEvent] = deque()
        self._closing = False

        # Our request id by the identity of the Contract object sent with it.
        # ib_async hands that object back with errors, which is the only way
        # to attribute an error to a request it numbered itself.
        self._contract_req: Dict[int, int] = {}
        self._tasks: Dict[int, asyncio.Task] = {}
        self._failed: Set[int] = set()
        self._tickers: Dict[int, Any] = {}
        self._ticker_req: Dict[int, int] = {}
        self._greeks_seen: Dict[tuple, Any] = {}
        self._trades: Dict[int, Any] = {}

        self.ib.errorEvent += self._on_error
        self.ib.disconnectedEvent += self._on_disconnected
        self.ib.orderStatusEvent += self._on_order_status
        self.ib.pendingTickersEvent += self._on_pending_tickers
        self.ib.accountValueEvent += self._on_account_value
        self.ib.updatePortfolioEvent += self._on_portfolio
        self.ib.positionEvent += self._on_position

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(
        self,
        host: str,
        port: int,
        client_id: int,
        timeout: float = 10.0,
        readonly: bool = True,
    ) -> bool:
        log_system_event(
            logger,
            LogEvent.CONNECTION_ATTEMPT,
            f"Connecting to {host}:{port}",
            client_id=client_id,
            readonly=readonly,
        )
        try:
            self.ib.connect(host, port, clientId=client_id, timeout=timeout, readonly=readonly)
        except (OSError, asyncio.TimeoutError, ConnectionError) as e:
            log_system_event(
                logger, LogEvent.CONNECTION_FAILED, f"Connection failed: {e}", host=host, port=port
            )
            return False

        self.client_id = client_id
        self._closing = False
        self._events.append(ManagedAccountsEvent(tuple(self.ib.managedAccounts())))
        self._events.append(NextValidIdEvent(self.ib.client.getReqId()))
        log_system_event(logger, LogEvent.CONNECTION_ESTABLISHED, f"Connected to {host}:{port}")
        return True

    def disconnect(self) -> None:
        self._closing = True
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()
        if self.ib.isConnected():
            self.ib.disconnect()

    def is_connected(self) -> bool:
        return self.ib.isConnected()

    def _require_connection(self) -> None:
        if not self.ib.isConnected():
            raise GatewayDisconnectedError("Gateway is not connected")

    def _schedule(self, key: int, coro) -> None:
        task = util.getLoop().create_task(coro)
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._task_done(k, t))

    def _task_done(self, key: int, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Gateway request {key} failed: {error!r}")

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    def request_historical_data(
        self,
        req_id: int,
        instrument: Instrument,
        lookback: str,
        bar_size: str,
        what_to_show: str = "TRADES",
        use_rth: bool = True,
    ) -> None:
        self._require_connection()
        contract = to_contract(instrument)
        self._contract_req[id(contract)] = req_id
        self._schedule(
            req_id,
            self._fetch_history(req_id, contract, lookback, bar_size, what_to_show, use_rth),
        )

    async def _fetch_history(
        self,
        req_id: int,
        contract: Contract,
        lookback: str,
        bar_size: str,
        what_to_show: str,
        use_rth: bool,
    ) -> None:
        try:
            bars = await self.ib.reqHistoricalDataAsync(
                contract,
                endDateTime="",
                durationStr=lookback,
                barSizeSetting=bar_size,
                whatToShow=what_to_show,
                useRTH=use_rth,
                formatDate=2,
            )
        finally:
            self._contract_req.pop(id(contract), None)

        if req_id in self._failed:
            # Already reported through errorEvent
            self._failed.discard(req_id)
            return

        for bar in bars or []:
            self._events.append(
                CandleEvent(
                    req_id,
                    Candle(
                        timestamp=to_utc(bar.date),
                        open=bar.open,
                        high=bar.high,
                        low=bar.low,
                        close=bar.close,
                        volume=float(bar.volume),
                        average=float(bar.average),
                        bar_count=int(bar.barCount),
                    ),
                )
            )
        self._events.append(HistoryEndEvent(req_id))

    def cancel_historical_data(self, req_id: int) -> None:
        task = self._tasks.pop(req_id, None)
        if task is not None:
            task.cancel()

    def request_market_data(self, req_id: int, instrument: Instrument) -> None:
        self._require_connection()
        contract = to_contract(instrument)
        self._contract_req[id(contract)] = req_id
        ticker = self.ib.reqMktData(contract)
        self._tickers[req_id] = ticker
        self._ticker_req[id(ticker)] = req_id

    def cancel_market_data(self, req_id: int) -> None:
        ticker = self._tickers.pop(req_id, None)
        if ticker is None:
            return
        self._ticker_req.pop(id(ticker), None)
        self._contract_req.pop(id(ticker.contract), None)
        if self.ib.isConnected():
            self.ib.cancelMktData(ticker.contract)

    def _on_pending_tickers(self, tickers) -> None:
        for ticker in tickers:
            req_id = self._ticker_req.get(id(ticker))
            if req_id is None:
                continue

            for tick in ticker.ticks:
                timestamp = to_utc(tick.time) if tick.time else None
                if tick.tickType in PRICE_TO_SIZE_FIELD:
                    price = _clean(tick.price)
                    if price is None or price <= 0:
                        continue
                    size = _clean(tick.size)
                    if size:
                        self._events.append(
                            SizeEvent(req_id, PRICE_TO_SIZE_FIELD[tick.tickType], size, timestamp)
                        )
                    self._events.append(PriceEvent(req_id, tick.tickType, price, timestamp))
                elif tick.tickType in SIZE_FIELDS:
                    size = _clean(tick.size)
                    if size is not None:
                        self._events.append(SizeEvent(req_id, tick.tickType, size, timestamp))

            for field, attr in GREEK_ATTRS.items():
                greeks = getattr(ticker, attr, None)
                if greeks is None or self._greeks_seen.get((req_id, field)) is greeks:
                    continue
                self._greeks_seen[(req_id, field)] = greeks
                self._events.append(
                    GreeksEvent(
                        req_id,
                        field,
                        implied_vol=_clean(greeks.impliedVol),
                        delta=_clean(greeks.delta),
                        opt_price=_clean(greeks.optPrice),
                        pv_dividend=_clean(greeks.pvDividend),
                        gamma=_clean(greeks.gamma),
                        vega=_clean(greeks.vega),
                        theta=_clean(greeks.theta),
                        timestamp=to_utc(ticker.time) if ticker.time else None,
                    )
                )

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def place_order(self, order_id: int, instrument: Instrument, ticket: OrderTicket) -> None:
        self._require_connection()
        # Keep ib_async's own id sequence ahead of ours
        self.ib.client.updateReqId(order_id + 1)
        trade = self.ib.placeOrder(to_contract(instrument), to_order(order_id, ticket))
        self._trades[order_id] = trade

    def cancel_order(self, order_id: int) -> None:
        trade = self._trades.get(order_id)
        if trade is None:
            logger.warning(f"Cannot cancel unknown order {order_id}")
            return
        self.ib.cancelOrder(trade.order)

    def _on_order_status(self, trade) -> None:
        status = trade.orderStatus
        self._events.append(
            OrderStatusEvent(
                order_id=trade.order.orderId,
                status=status.status,
                filled=float(status.filled),
                remaining=float(status.remaining),
                avg_fill_price=float(status.avgFillPrice),
            )
        )

    def request_executions(self, req_id: int, query: ExecutionQuery) -> None:
        self._require_connection()
        exec_filter = ExecutionFilter(
            clientId=query.client_id,
            acctCode=query.account,
            symbol=query.symbol,
            secType=query.kind,
            side=query.side,
        )
        self._schedule(req_id, self._fetch_executions(req_id, exec_filter))

    async def _fetch_executions(self, req_id: int, exec_filter: ExecutionFilter) -> None:
        fills = await self.ib.reqExecutionsAsync(exec_filter)
        for fill in fills or []:
            execution = fill.execution
            self._events.append(
                ExecutionEvent(
                    req_id,
                    ExecutionReport(
                        exec_id=execution.execId,
                        order_id=execution.orderId,
                        time=to_utc(execution.time),
                        account=execution.acctNumber,
                        side=execution.side,
                        shares=float(execution.shares),
                        price=float(execution.price),
                        cum_qty=float(execution.cumQty),
                        avg_price=float(execution.avgPrice),
                        symbol=fill.contract.symbol,
                    ),
                )
            )
        self._events.append(ExecutionEndEvent(req_id))

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    def subscribe_account(self, req_id: int, account: str) -> None:
        self._require_connection()
        self._schedule(req_id, self._download_account(account))

    async def _download_account(self, account: str) -> None:
        await self.ib.reqAccountUpdatesAsync(account)
        self._events.append(AccountDownloadEndEvent(account))

    def unsubscribe_account(self, req_id: int, account: str) -> None:
        task = self._tasks.pop(req_id, None)
        if task is not None:
            task.cancel()
        if self.ib.isConnected():
            self.ib.client.reqAccountUpdates(False, account)

    def _on_account_value(self, value) -> None:
        self._events.append(
            AccountValueEvent(
                key=value.tag, value=value.value, currency=value.currency, account=value.account
            )
        )

    def _on_portfolio(self, item) -> None:
        self._events.append(
            PortfolioEvent(
                instrument=to_instrument(item.contract),
                position=float(item.position),
                average_cost=float(item.averageCost),
                market_price=float(item.marketPrice),
                unrealized_pnl=float(item.unrealizedPNL),
                realized_pnl=float(item.realizedPNL),
                account=item.account,
            )
        )

    def _on_position(self, position) -> None:
        self._events.append(
            PositionEvent(
                instrument=to_instrument(position.contract),
                position=float(position.position),
                average_cost=float(position.avgCost),
                account=position.account,
            )
        )

    # ------------------------------------------------------------------
    # Liveness and delivery
    # ------------------------------------------------------------------

    def request_current_time(self) -> None:
        self._require_connection()
        self._schedule(CURRENT_TIME_TASK, self._fetch_current_time())

    async def _fetch_current_time(self) -> None:
        now = await self.ib.reqCurrentTimeAsync()
        self._events.append(CurrentTimeEvent(to_utc(now)))

    def _on_error(self, req_id: int, code: int, message: str, contract=None) -> None:
        if req_id in self._trades:
            self._events.append(ErrorEvent(req_id, code, message))
            return
        if contract is not None and id(contract) in self._contract_req:
            ours = self._contract_req[id(contract)]
            if ours in self._tasks and not is_informational(code):
                self._failed.add(ours)
            self._events.append(ErrorEvent(ours, code, message))
            return
        self._events.append(ErrorEvent(req_id, code, message))

    def _on_disconnected(self) -> None:
        if self._closing:
            return
        self._events.append(ConnectionClosedEvent())

    def wait_for_events(self, timeout: float) -> bool:
        if self._events:
            return True
        self.ib.waitOnUpdate(timeout=timeout)
        return bool(self._events)

    def drain_events(self) -> List[GatewayEvent]:
        events = list(self._events)
        self._events.clear()
        return events
