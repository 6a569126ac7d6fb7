"""
Request scheduler and rate limiter.

Issues the historical requests of one harvest phase (and, for the terminal
phase, the live subscriptions) under two constraints:

- pacing: at most one request per ``pacing`` seconds, enforced with a
  deadline checked on every :meth:`RequestScheduler.pump` call rather than a
  blocking sleep;
- ceiling: a phase is only reported complete once its minimum dwell has
  elapsed and the number of outstanding historical requests is at or below
  the ceiling.

Each request's Stream is registered before the gateway call is made.
"""

from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Deque, Dict, Iterable, List, Optional

from .config import HarvestConfig, RateLimitPolicy
from .events import ErrorCode
from .exceptions import CeilingExceededError, GatewayDisconnectedError, UnknownPhaseError
from .gateway.base import Gateway
from .logger import LogEvent, get_logger, log_system_event
from .models import BarTier, HarvestPhase, Instrument, StreamKind, has_history
from .streams import StreamRegistry, StreamStatus
from .utils.clock import Clock
from .utils.request_ids import RequestIdAllocator

logger = get_logger(__name__)


class PhaseCheck(str, Enum):
    """Why a phase is or is not ready to advance."""

    PENDING_QUEUE = "pending_queue"  # batch not fully sent yet
    DWELL = "dwell"  # minimum dwell not elapsed
    CEILING = "ceiling"  # too many outstanding; deadline re-armed
    READY = "ready"


@dataclass(frozen=True)
class PendingRequest:
    instrument: Instrument
    tier: Optional[BarTier] = None  # None for a live subscription
    requeues: int = 0

    @property
    def is_live(self) -> bool:
        return self.tier is None


class RequestScheduler:
    """Paced, ceiling-bounded issuer of harvest requests."""

    def __init__(
        self,
        gateway: Gateway,
        registry: StreamRegistry,
        ids: RequestIdAllocator,
        config: HarvestConfig,
        clock: Clock,
    ):
        self.gateway = gateway
        self.registry = registry
        self.ids = ids
        self.config = config
        self.clock = clock

        self.phases: List[HarvestPhase] = config.phases()
        self.phase: Optional[HarvestPhase] = None

        self._queue: Deque[PendingRequest] = deque()
        self._outstanding: Dict[int, PendingRequest] = {}
        self._live: Dict[int, PendingRequest] = {}
        self._next_send_at = 0.0
        self._dwell_deadline: Optional[float] = None

        self.stats = {"sent": 0, "completed": 0, "dropped": 0, "requeued": 0, "failed": 0}

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def outstanding(self) -> int:
        return len(self._outstanding)

    @property
    def outstanding_ids(self) -> List[int]:
        return list(self._outstanding)

    @property
    def live_ids(self) -> List[int]:
        return list(self._live)

    @property
    def queued(self) -> int:
        return len(self._queue)

    @property
    def dwell_deadline(self) -> Optional[float]:
        return self._dwell_deadline

    @property
    def final_index(self) -> int:
        return len(self.phases) - 1

    def phase_for(self, index: int) -> HarvestPhase:
        if index < 0 or index >= len(self.phases):
            raise UnknownPhaseError(f"Phase {index} not in ladder of {len(self.phases)}")
        return self.phases[index]

    def owns(self, req_id: int) -> bool:
        return req_id in self._outstanding or req_id in self._live

    def reset(self) -> None:
        """Forget pacing state and anything not yet sent (after a reconnect)."""
        self._queue.clear()
        self._next_send_at = 0.0
        self._dwell_deadline = None

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit_batch(self, index: int, instruments: Iterable[Instrument]) -> int:
        """
        Queue one request per tier per instrument for phase ``index``.

        The terminal phase also queues one live subscription per instrument.

        Raises:
            CeilingExceededError: non-initial phase while over the ceiling
            UnknownPhaseError: index outside the ladder
        """
        phase = self.phase_for(index)
        if index > 0 and self.outstanding > self.config.ceiling:
            raise CeilingExceededError(
                f"Phase {index} held back: {self.outstanding} outstanding, "
                f"ceiling {self.config.ceiling}"
            )

        queued = 0
        for instrument in instruments:
            if has_history(instrument):
                for tier in phase.tiers:
                    self._queue.append(PendingRequest(instrument, tier))
                    queued += 1
            if phase.live:
                self._queue.append(PendingRequest(instrument))
                queued += 1

        self.phase = phase
        self._dwell_deadline = None
        log_system_event(
            logger,
            LogEvent.PHASE_SUBMITTED,
            f"Phase {index} queued",
            phase=index,
            requests=queued,
            outstanding=self.outstanding,
        )
        return queued

    def subscribe_live(self, instruments: Iterable[Instrument]) -> int:
        """Queue live subscriptions outside of a harvest batch (after a reconnect)."""
        count = 0
        for instrument in instruments:
            self._queue.append(PendingRequest(instrument))
            count += 1
        return count

    def pump(self) -> int:
        """Send every queued request whose pacing deadline is due. Returns the number sent."""
        sent = 0
        now = self.clock.now()
        while self._queue and now >= self._next_send_at:
            request = self._queue.popleft()
            self._send(request)
            sent += 1
            pacing = self.phase.pacing if self.phase is not None else self.config.pacing
            self._next_send_at = now + pacing

        if not self._queue and self.phase is not None and self._dwell_deadline is None:
            self._dwell_deadline = now + self.phase.dwell
        return sent

    def _send(self, request: PendingRequest) -> int:
        req_id = self.ids.next_id()
        instrument = request.instrument

        if request.is_live:
            self.registry.open_stream(req_id, instrument, instrument.stream_kind)
            self._live[req_id] = request
        else:
            self.registry.open_stream(
                req_id, instrument, StreamKind.CANDLE, request.tier.resolution
            )
            self._outstanding[req_id] = request

        try:
            if request.is_live:
                self.gateway.request_market_data(req_id, instrument)
            else:
                self.gateway.request_historical_data(
                    req_id,
                    instrument,
                    request.tier.lookback,
                    request.tier.bar_size,
                    self.config.what_to_show,
                    self.config.use_rth,
                )
        except GatewayDisconnectedError:
            self._outstanding.pop(req_id, None)
            self._live.pop(req_id, None)
            self.registry.end_stream(req_id, StreamStatus.ABANDONED)
            raise

        self.stats["sent"] += 1
        logger.debug(
            LogEvent.REQUEST_SENT.value,
            req_id=req_id,
            symbol=instrument.symbol,
            resolution=request.tier.resolution if request.tier else "live",
            outstanding=self.outstanding,
        )
        return req_id

    # ------------------------------------------------------------------
    # Phase progression
    # ------------------------------------------------------------------

    def check_phase(self) -> PhaseCheck:
        if self._queue:
            return PhaseCheck.PENDING_QUEUE

        now = self.clock.now()
        if self._dwell_deadline is None or now < self._dwell_deadline:
            return PhaseCheck.DWELL

        if self.outstanding > self.config.ceiling:
            self._dwell_deadline = now + self.config.recheck
            log_system_event(
                logger,
                LogEvent.PHASE_WAITING,
                "Outstanding requests above ceiling, waiting again",
                phase=self.phase.index if self.phase else None,
                outstanding=self.outstanding,
                ceiling=self.config.ceiling,
            )
            return PhaseCheck.CEILING

        return PhaseCheck.READY

    def seconds_until_deadline(self) -> Optional[float]:
        if self._dwell_deadline is None:
            return None
        return max(0.0, self._dwell_deadline - self.clock.now())

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def on_history_end(self, req_id: int) -> bool:
        if self._outstanding.pop(req_id, None) is None:
            return False
        self.stats["completed"] += 1
        self.registry.end_stream(req_id, StreamStatus.COMPLETE)
        return True

    def on_request_error(self, req_id: int, code: int, message: str = "") -> bool:
        """Release the slot held by ``req_id``. Returns False if the id is not ours."""
        if req_id in self._live:
            self._live.pop(req_id)
            self.stats["failed"] += 1
            self.registry.end_stream(req_id, StreamStatus.FAILED)
            logger.warning(
                LogEvent.REQUEST_FAILED.value, req_id=req_id, code=code, message=message
            )
            return True

        request = self._outstanding.pop(req_id, None)
        if request is None:
            return False

        if code == ErrorCode.TOO_MANY_REQUESTS:
            self.registry.end_stream(req_id, StreamStatus.DROPPED)
            if (
                self.config.rate_limit_policy == RateLimitPolicy.REQUEUE
                and request.requeues < self.config.max_requeues
            ):
                self._queue.appendleft(replace(request, requeues=request.requeues + 1))
                self.stats["requeued"] += 1
                logger.info(
                    LogEvent.REQUEST_REQUEUED.value,
                    req_id=req_id,
                    symbol=request.instrument.symbol,
                    attempt=request.requeues + 1,
                )
            else:
                self.stats["dropped"] += 1
                logger.warning(
                    LogEvent.REQUEST_DROPPED.value,
                    req_id=req_id,
                    symbol=request.instrument.symbol,
                    outstanding=self.outstanding,
                )
            return True

        self.stats["failed"] += 1
        self.registry.end_stream(req_id, StreamStatus.FAILED)
        logger.warning(
            LogEvent.REQUEST_FAILED.value,
            req_id=req_id,
            symbol=request.instrument.symbol,
            code=code,
            message=message,
        )
        return True

    def abandon_in_flight(self) -> List[int]:
        """Connection lost: mark every unresolved stream abandoned and forget it."""
        abandoned = list(self._outstanding) + list(self._live)
        for req_id in abandoned:
            self.registry.end_stream(req_id, StreamStatus.ABANDONED)
        self._outstanding.clear()
        self._live.clear()
        self.reset()
        if abandoned:
            logger.warning(f"Abandoned {len(abandoned)} in-flight requests")
        return abandoned

    def cancel_live(self) -> None:
        """Cancel every live subscription; streams stay open until exported."""
        for req_id in list(self._live):
            self.gateway.cancel_market_data(req_id)
