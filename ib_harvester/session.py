"""
Session state machine.

Sequences connection, account initialization, the harvest phases, live mode
and shutdown. :meth:`SessionStateMachine.tick` is the only driver: the runner
calls it once per loop iteration, and between ticks feeds it the gateway
events drained since the last one.
"""

from enum import Enum, IntEnum
from typing import Callable, Dict, List, Optional

from .account import AccountState
from .aggregator import TimeSeriesAggregator
from .config import Config
from .events import (
    ErrorEvent,
    EventType,
    GatewayEvent,
    is_connection_lost,
    is_informational,
)
from .exceptions import (
    CeilingExceededError,
    ExportError,
    GatewayDisconnectedError,
    GatewayError,
    OrderError,
)
from .export import StreamExporter
from .gateway.base import Gateway
from .logger import LogEvent, get_logger, log_system_event
from .models import Instrument
from .orders import OrderLifecycleTracker
from .scheduler import PhaseCheck, RequestScheduler
from .strategy import Strategy
from .streams import StreamRegistry
from .utils.clock import Clock, SystemClock
from .utils.request_ids import RequestIdAllocator

logger = get_logger(__name__)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CONNECT_FAILED = "connect_failed"
    INITIALIZING = "initializing"
    INIT_FAILED = "init_failed"
    HARVESTING = "harvesting"
    HARVEST_TIMEOUT = "harvest_timeout"
    LIVE = "live"
    IDLE = "idle"
    DISCONNECTED = "disconnected"
    INTERRUPTED = "interrupted"
    TERMINAL = "terminal"


class ExitCode(IntEnum):
    """Process exit status, one per way a session can end."""

    HARVEST_COMPLETE = 0
    CONNECTION_FAILURE = 2
    ACCOUNT_FAILURE = 3
    INTERRUPTED = 130


class SessionStateMachine:
    """Top-level orchestrator owning every registry, set and map of the session."""

    def __init__(
        self,
        config: Config,
        gateway: Gateway,
        clock: Optional[Clock] = None,
        strategy: Optional[Strategy] = None,
        instruments: Optional[List[Instrument]] = None,
    ):
        self.config = config
        self.gateway = gateway
        self.clock = clock or SystemClock()
        self.strategy = strategy
        self.instruments = instruments if instruments is not None else config.instruments()

        self.ids = RequestIdAllocator()
        self.aggregator = TimeSeriesAggregator()
        self.registry = StreamRegistry(self.aggregator, self.clock)
        self.scheduler = RequestScheduler(
            gateway, self.registry, self.ids, config.harvest, self.clock
        )
        self.account = AccountState()
        self.tracker = OrderLifecycleTracker(
            gateway,
            self.ids,
            client_id=config.gateway.client_id,
            account=config.gateway.account or "",
            readonly=config.gateway.readonly,
        )
        self.exporter = StreamExporter(config.export)

        self.state = SessionState.CONNECTING
        self.phase: Optional[int] = None
        self.exit_code: Optional[ExitCode] = None
        self.managed_accounts: List[str] = []

        self._interrupt = False
        self._resume_phase: Optional[int] = None
        self._was_live = False
        self._exported = False
        self._init_deadline: Optional[float] = None
        self._next_ping_at = 0.0
        self._ping_deadline: Optional[float] = None

        self._tick_handlers: Dict[SessionState, Callable[[], None]] = {
            SessionState.CONNECTED: self.on_connected,
            SessionState.INITIALIZING: self._tick_initializing,
            SessionState.INIT_FAILED: self._tick_init_failed,
            SessionState.HARVESTING: self._tick_harvesting,
            SessionState.HARVEST_TIMEOUT: self._tick_harvest_timeout,
            SessionState.LIVE: self._tick_live,
            SessionState.IDLE: self._heartbeat,
            SessionState.INTERRUPTED: self._tick_interrupted,
        }
        self._event_handlers: Dict[EventType, Callable] = {
            EventType.CANDLE: lambda e: self.registry.apply_candle(e.req_id, e.candle),
            EventType.HISTORY_END: self._on_history_end,
            EventType.PRICE: lambda e: self.registry.apply_price(
                e.req_id, e.field, e.price, e.timestamp
            ),
            EventType.SIZE: lambda e: self.registry.apply_size(
                e.req_id, e.field, e.size, e.timestamp
            ),
            EventType.GREEKS: lambda e: self.registry.apply_greeks(
                e.req_id,
                e.implied_vol,
                e.delta,
                e.opt_price,
                e.pv_dividend,
                e.gamma,
                e.vega,
                e.theta,
                e.field,
                e.timestamp,
            ),
            EventType.ORDER_STATUS: lambda e: self.tracker.on_status(
                e.order_id, e.status, e.filled, e.remaining, e.avg_fill_price
            ),
            EventType.EXECUTION: self._on_execution,
            EventType.EXECUTION_END: lambda e: self.tracker.on_execution_end(e.req_id),
            EventType.ERROR: self._on_error,
            EventType.ACCOUNT_VALUE: lambda e: self.account.on_account_value(
                e.key, e.value, e.currency
            ),
            EventType.PORTFOLIO: lambda e: self.account.on_portfolio(
                e.instrument, e.position, e.average_cost
            ),
            EventType.POSITION: lambda e: self.account.on_position(
                e.instrument, e.position, e.average_cost
            ),
            EventType.ACCOUNT_DOWNLOAD_END: lambda e: self.account.on_download_end(),
            EventType.MANAGED_ACCOUNTS: self._on_managed_accounts,
            EventType.NEXT_VALID_ID: lambda e: self.tracker.on_next_valid_id(e.order_id),
            EventType.CURRENT_TIME: self._on_current_time,
            EventType.CONNECTION_CLOSED: lambda e: self.on_connection_lost("connection closed"),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.state == SessionState.TERMINAL

    def _set_state(self, state: SessionState) -> None:
        if state == self.state:
            return
        logger.info(
            LogEvent.SESSION_STATE.value,
            previous=self.state.value,
            state=state.value,
            phase=self.phase,
        )
        self.state = state

    def connect(self) -> bool:
        """Connect and absorb the handshake events (accounts, next order id)."""
        self._set_state(SessionState.CONNECTING)
        gw = self.config.gateway
        if not self.gateway.connect(gw.host, gw.port, gw.client_id, gw.timeout, gw.readonly):
            self._set_state(SessionState.CONNECT_FAILED)
            return False

        self._set_state(SessionState.CONNECTED)
        self.process_events(self.gateway.drain_events())
        return True

    def on_connected(self) -> None:
        self._set_state(SessionState.INITIALIZING)
        self.scheduler.reset()
        self.account.reset()

        now = self.clock.now()
        self._init_deadline = now + self.config.session.init_timeout
        self._next_ping_at = now + self.config.session.ping_interval
        self._ping_deadline = None

        account = self.config.gateway.account or (
            self.managed_accounts[0] if self.managed_accounts else ""
        )
        self.tracker.account = account
        self.account.subscribe(self.gateway, self.ids.next_id(), account)

    @property
    def interrupted(self) -> bool:
        return self._interrupt

    @property
    def needs_connection(self) -> bool:
        return self.state in (
            SessionState.CONNECTING,
            SessionState.CONNECT_FAILED,
            SessionState.DISCONNECTED,
        )

    def request_interrupt(self) -> None:
        self._interrupt = True

    def tick(self) -> Optional[ExitCode]:
        """Advance the session by one step. Returns the exit code once terminal."""
        if self.exit_code is not None:
            return self.exit_code

        if self._interrupt and self.state != SessionState.INTERRUPTED:
            log_system_event(
                logger,
                LogEvent.SESSION_INTERRUPTED,
                "Interrupt received",
                state=self.state.value,
                phase=self.phase,
            )
            self._set_state(SessionState.INTERRUPTED)

        handler = self._tick_handlers.get(self.state)
        if handler is None:
            return None

        try:
            handler()
        except GatewayDisconnectedError as e:
            self.on_connection_lost(str(e))
        return self.exit_code

    # ------------------------------------------------------------------
    # Per-state work
    # ------------------------------------------------------------------

    def _tick_initializing(self) -> None:
        if self.account.valid:
            self._start_harvest()
            return
        if self._init_deadline is not None and self.clock.now() >= self._init_deadline:
            log_system_event(
                logger,
                LogEvent.ACCOUNT_FAILED,
                "Account download did not complete",
                account=self.account.account,
                timeout=self.config.session.init_timeout,
            )
            self._set_state(SessionState.INIT_FAILED)

    def _tick_init_failed(self) -> None:
        self._shutdown(ExitCode.ACCOUNT_FAILURE)

    def _start_harvest(self) -> None:
        """First phase after (re)initialization."""
        if self._was_live:
            self.scheduler.subscribe_live(self.instruments)
            self._was_live = False
            self.scheduler.pump()
            self._set_state(SessionState.LIVE)
            return

        index = 0
        if self._resume_phase is not None:
            index = min(self._resume_phase + 1, self.scheduler.final_index)
            self._resume_phase = None
        self._submit_phase(index)

    def _submit_phase(self, index: int) -> bool:
        try:
            self.scheduler.submit_batch(index, self.instruments)
        except CeilingExceededError as e:
            logger.warning(f"Batch held back: {e}")
            return False

        if self.phase is not None and index > self.phase:
            log_system_event(
                logger, LogEvent.PHASE_ADVANCED, f"Advancing to phase {index}", phase=index
            )
        self.phase = index
        self._set_state(SessionState.HARVESTING)
        self._tick_harvesting()
        return True

    def _tick_harvesting(self) -> None:
        self.scheduler.pump()
        self._heartbeat()
        if self.state != SessionState.HARVESTING or self.scheduler.queued:
            return
        if self.phase == self.scheduler.final_index:
            log_system_event(
                logger,
                LogEvent.HARVEST_COMPLETE,
                "All harvest phases submitted, live",
                outstanding=self.scheduler.outstanding,
                live=len(self.scheduler.live_ids),
            )
            self._set_state(SessionState.LIVE)
        else:
            self._set_state(SessionState.HARVEST_TIMEOUT)

    def _tick_harvest_timeout(self) -> None:
        self.scheduler.pump()
        self._heartbeat()
        if self.state != SessionState.HARVEST_TIMEOUT:
            return
        if self.scheduler.check_phase() == PhaseCheck.READY:
            self._submit_phase(self.phase + 1)

    def _tick_live(self) -> None:
        self.scheduler.pump()
        self._heartbeat()
        if self.state != SessionState.LIVE:
            return

        if self.strategy is not None and self.aggregator.all_streams_updated():
            self._run_strategy()

        if self.scheduler.queued:
            return

        if self.config.session.exit_after_harvest:
            if self.scheduler.outstanding == 0:
                self._shutdown(ExitCode.HARVEST_COMPLETE)
            return

        if not self.registry.live_streams() and self.scheduler.outstanding == 0:
            self._set_state(SessionState.IDLE)

    def _run_strategy(self) -> None:
        timepoint = self.aggregator.latest()
        if timepoint is None:
            return
        for intent in self.strategy.process_next_tick(timepoint, self.registry, self.account):
            try:
                self.tracker.place_order(intent.instrument, intent.ticket)
            except OrderError as e:
                logger.warning(f"Order for {intent.instrument.symbol} not placed: {e}")

    def _tick_interrupted(self) -> None:
        self._shutdown(ExitCode.INTERRUPTED)

    def _heartbeat(self) -> None:
        now = self.clock.now()
        if self._ping_deadline is not None:
            if now >= self._ping_deadline:
                log_system_event(
                    logger,
                    LogEvent.HEARTBEAT_MISSED,
                    "No answer to heartbeat",
                    deadline=self.config.session.ping_deadline,
                )
                self.on_connection_lost("heartbeat missed")
            return

        if now >= self._next_ping_at:
            self.gateway.request_current_time()
            self._ping_deadline = now + self.config.session.ping_deadline
            self._next_ping_at = now + self.config.session.ping_interval

    # ------------------------------------------------------------------
    # Failure and shutdown
    # ------------------------------------------------------------------

    def on_connection_lost(self, reason: str) -> None:
        if self.state in (
            SessionState.DISCONNECTED,
            SessionState.INTERRUPTED,
            SessionState.TERMINAL,
            SessionState.CONNECT_FAILED,
        ):
            return

        log_system_event(
            logger, LogEvent.CONNECTION_LOST, f"Connection lost: {reason}", state=self.state.value
        )
        if self.state in (SessionState.LIVE, SessionState.IDLE):
            self._was_live = True
        elif self.state in (SessionState.HARVESTING, SessionState.HARVEST_TIMEOUT):
            self._resume_phase = self.phase

        self.scheduler.abandon_in_flight()
        self.account.reset()
        self._ping_deadline = None
        self.gateway.disconnect()
        self._set_state(SessionState.DISCONNECTED)

    def export(self) -> int:
        """Write every stream once. Returns the number of files written."""
        if self._exported:
            return 0
        self._exported = True
        try:
            return len(self.exporter.export_all(self.registry))
        except ExportError as e:
            logger.error(f"Export failed: {e}")
            return 0

    def _shutdown(self, code: ExitCode) -> None:
        self.export()
        if self.gateway.is_connected():
            try:
                self.scheduler.cancel_live()
                self.account.unsubscribe()
            except GatewayError as e:
                logger.warning(f"Error closing subscriptions: {e}")
        self.gateway.disconnect()
        self.terminate(code)

    def terminate(self, code: ExitCode) -> None:
        self._set_state(SessionState.TERMINAL)
        self.exit_code = code
        log_system_event(
            logger,
            LogEvent.SESSION_EXIT,
            f"Session finished with {code.name}",
            code=int(code),
            streams=len(self.registry),
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def process_events(self, events: List[GatewayEvent]) -> None:
        for event in events:
            self.handle(event)

    def handle(self, event: GatewayEvent) -> None:
        handler = self._event_handlers.get(event.event_type)
        if handler is not None:
            handler(event)

    def _on_history_end(self, event) -> None:
        if not self.scheduler.on_history_end(event.req_id):
            logger.warning(LogEvent.UNKNOWN_REQUEST.value, req_id=event.req_id, update="end")

    def _on_execution(self, event) -> None:
        update = self.tracker.on_execution(event.req_id, event.report)
        if update is not None:
            self.account.apply_fill(update)

    def _on_managed_accounts(self, event) -> None:
        self.managed_accounts = list(event.accounts)

    def _on_current_time(self, event) -> None:
        self._ping_deadline = None

    def _on_error(self, event: ErrorEvent) -> None:
        code = event.code
        if is_informational(code):
            logger.debug(f"Gateway notice {code}: {event.message}")
            return
        if is_connection_lost(code):
            self.on_connection_lost(f"error {code}: {event.message}")
            return
        if self.tracker.on_error(event.req_id, code, event.message):
            return
        if self.scheduler.owns(event.req_id):
            self.scheduler.on_request_error(event.req_id, code, event.message)
            return
        if event.req_id < 0:
            logger.warning(f"Gateway error {code}: {event.message}")
            return
        logger.warning(
            LogEvent.UNKNOWN_REQUEST.value, req_id=event.req_id, code=code, message=event.message
        )
