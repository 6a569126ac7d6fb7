"""
Stream registry.

One Stream per outstanding request id. Partial price/size/greek updates are
routed into accumulators by tick field code and committed as points once the
accumulator is valid; candles commit directly. Every committed point is
forwarded to the aggregator by stream id.

Updates for unknown or terminated request ids are logged and discarded.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from .aggregator import TimeSeriesAggregator
from .exceptions import DataError
from .logger import LogEvent, get_logger
from .models import (
    Candle,
    Greeks,
    Instrument,
    OptionAccumulator,
    Point,
    SnapshotAccumulator,
    StreamKind,
    to_utc,
)
from .utils.clock import Clock, SystemClock

logger = get_logger(__name__)

QUOTE = "quote"
TRADE = "trade"

# field code -> (accumulator, side)
PRICE_FIELDS: Dict[int, Tuple[str, str]] = {
    1: (QUOTE, "bid"),
    2: (QUOTE, "ask"),
    4: (TRADE, "both"),
    # delayed data
    66: (QUOTE, "bid"),
    67: (QUOTE, "ask"),
    68: (TRADE, "both"),
}

SIZE_FIELDS: Dict[int, Tuple[str, str]] = {
    0: (QUOTE, "bid"),
    3: (QUOTE, "ask"),
    5: (TRADE, "both"),
    69: (QUOTE, "bid"),
    70: (QUOTE, "ask"),
    71: (TRADE, "both"),
}

GREEK_FIELDS: Dict[int, Tuple[str, str]] = {
    10: (QUOTE, "bid"),
    11: (QUOTE, "ask"),
    12: (TRADE, "both"),
}


class StreamStatus(str, Enum):
    OPEN = "open"
    COMPLETE = "complete"
    FAILED = "failed"
    DROPPED = "dropped"
    ABANDONED = "abandoned"


@dataclass
class Stream:
    """Accumulation and history unit for one request against one instrument."""

    req_id: int
    instrument: Instrument
    kind: StreamKind
    resolution: Optional[str] = None
    status: StreamStatus = StreamStatus.OPEN
    points: List[Point] = field(default_factory=list)
    quote: Optional[SnapshotAccumulator] = None
    trade: Optional[SnapshotAccumulator] = None

    def __post_init__(self):
        if self.kind == StreamKind.OPTION:
            self.quote = OptionAccumulator()
            self.trade = OptionAccumulator()
        elif self.kind == StreamKind.SNAPSHOT:
            self.quote = SnapshotAccumulator()
            self.trade = SnapshotAccumulator()

    @property
    def is_open(self) -> bool:
        return self.status == StreamStatus.OPEN

    @property
    def is_live(self) -> bool:
        return self.resolution is None

    @property
    def last_timestamp(self) -> Optional[datetime]:
        return self.points[-1].timestamp if self.points else None

    def accumulator(self, slot: str) -> Optional[SnapshotAccumulator]:
        return self.quote if slot == QUOTE else self.trade

    def label(self) -> str:
        return f"{self.instrument.describe()} [{self.resolution or 'live'}] #{self.req_id}"


class StreamRegistry:
    """Arena of Streams keyed by request id."""

    def __init__(self, aggregator: TimeSeriesAggregator, clock: Optional[Clock] = None):
        self.aggregator = aggregator
        self.clock = clock or SystemClock()
        self._streams: Dict[int, Stream] = {}
        self.rejected = 0
        self.unknown = 0

    def __contains__(self, req_id: int) -> bool:
        return req_id in self._streams

    def __len__(self) -> int:
        return len(self._streams)

    def __iter__(self) -> Iterator[Stream]:
        return iter(self._streams.values())

    def get(self, req_id: int) -> Optional[Stream]:
        return self._streams.get(req_id)

    def streams(self, status: Optional[StreamStatus] = None) -> List[Stream]:
        if status is None:
            return list(self._streams.values())
        return [s for s in self._streams.values() if s.status == status]

    def open_ids(self) -> List[int]:
        return [s.req_id for s in self._streams.values() if s.is_open]

    def live_streams(self) -> List[Stream]:
        return [s for s in self._streams.values() if s.is_open and s.is_live]

    def open_stream(
        self,
        req_id: int,
        instrument: Instrument,
        kind: StreamKind,
        resolution: Optional[str] = None,
    ) -> Stream:
        if req_id in self._streams:
            raise DataError(f"Stream {req_id} already registered")

        stream = Stream(req_id=req_id, instrument=instrument, kind=kind, resolution=resolution)
        self._streams[req_id] = stream
        self.aggregator.track(req_id)
        logger.debug(LogEvent.STREAM_OPENED.value, stream=stream.label())
        return stream

    def end_stream(self, req_id: int, status: StreamStatus = StreamStatus.COMPLETE) -> bool:
        """Mark a stream terminal. Returns False if it was unknown or already ended."""
        stream = self._lookup(req_id, "end")
        if stream is None or not stream.is_open:
            return False

        stream.status = status
        self.aggregator.untrack(req_id)
        logger.info(
            LogEvent.STREAM_ENDED.value,
            stream=stream.label(),
            status=status.value,
            points=len(stream.points),
        )
        return True

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def apply_price(
        self, req_id: int, field: int, value: float, timestamp: Optional[datetime] = None
    ) -> Optional[Point]:
        """Route a price tick; returns the committed point, if any."""
        route = PRICE_FIELDS.get(field)
        if route is None:
            return None
        stream = self._lookup_accumulating(req_id, "price")
        if stream is None:
            return None

        slot, side = route
        accumulator = stream.accumulator(slot)
        accumulator.set_price(side, value)
        return self._maybe_commit(stream, accumulator, timestamp)

    def apply_size(
        self, req_id: int, field: int, value: float, timestamp: Optional[datetime] = None
    ) -> Optional[Point]:
        route = SIZE_FIELDS.get(field)
        if route is None:
            return None
        stream = self._lookup_accumulating(req_id, "size")
        if stream is None:
            return None

        slot, side = route
        accumulator = stream.accumulator(slot)
        accumulator.set_size(side, value)
        return self._maybe_commit(stream, accumulator, timestamp)

    def apply_greeks(
        self,
        req_id: int,
        implied_vol: Optional[float],
        delta: Optional[float],
        opt_price: Optional[float],
        pv_dividend: Optional[float],
        gamma: Optional[float],
        vega: Optional[float],
        theta: Optional[float],
        field: int,
        timestamp: Optional[datetime] = None,
    ) -> Optional[Point]:
        route = GREEK_FIELDS.get(field)
        if route is None:
            return None
        stream = self._lookup_accumulating(req_id, "greeks")
        if stream is None:
            return None
        if stream.kind != StreamKind.OPTION:
            logger.debug(f"Ignoring option computation for non-option stream {req_id}")
            return None

        greeks = Greeks(
            implied_vol=implied_vol,
            delta=delta,
            gamma=gamma,
            vega=vega,
            theta=theta,
            pv_dividend=pv_dividend,
        )
        if not greeks.is_sane:
            self.rejected += 1
            logger.warning(
                LogEvent.DATA_REJECTED.value,
                stream=stream.label(),
                reason="greeks out of range",
                delta=delta,
                gamma=gamma,
            )
            return None

        slot, side = route
        accumulator = stream.accumulator(slot)
        accumulator.set_greeks(side, greeks, opt_price)
        return self._maybe_commit(stream, accumulator, timestamp)

    def apply_candle(self, req_id: int, candle: Candle) -> bool:
        stream = self._lookup(req_id, "candle")
        if stream is None:
            return False
        if not stream.is_open:
            logger.debug(f"Dropping candle for terminated stream {stream.label()}")
            return False
        return self._append(stream, candle)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lookup(self, req_id: int, what: str) -> Optional[Stream]:
        stream = self._streams.get(req_id)
        if stream is None:
            self.unknown += 1
            logger.warning(LogEvent.UNKNOWN_REQUEST.value, req_id=req_id, update=what)
        return stream

    def _lookup_accumulating(self, req_id: int, what: str) -> Optional[Stream]:
        stream = self._lookup(req_id, what)
        if stream is None or not stream.is_open:
            return None
        if stream.quote is None:
            logger.debug(f"Ignoring {what} update for candle stream {stream.label()}")
            return None
        return stream

    def _maybe_commit(
        self,
        stream: Stream,
        accumulator: SnapshotAccumulator,
        timestamp: Optional[datetime],
    ) -> Optional[Point]:
        if not accumulator.is_valid():
            return None
        when = to_utc(timestamp) if timestamp is not None else self.clock.utcnow()
        point = accumulator.commit(when)
        return point if self._append(stream, point) else None

    def _append(self, stream: Stream, point: Point) -> bool:
        last = stream.last_timestamp
        if last is not None and point.timestamp < last:
            self.rejected += 1
            logger.warning(
                LogEvent.DATA_REJECTED.value,
                stream=stream.label(),
                reason="out of order",
                timestamp=point.timestamp.isoformat(),
                last=last.isoformat(),
            )
            return False

        stream.points.append(point)
        self.aggregator.ingest(stream.req_id, point)
        return True
