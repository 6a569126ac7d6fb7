"""
Cross-stream time series aggregator.

Keeps one globally timestamp-ordered index over every committed point. The
index stores stream ids, never Stream objects; look streams up in the
registry.
"""

from bisect import bisect_right, insort
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Set, Tuple

from .models import Point


@dataclass
class GlobalTimePoint:
    """Every (stream id, point) pair observed at one instant."""

    timestamp: datetime
    entries: List[Tuple[int, Point]] = field(default_factory=list)

    def stream_ids(self) -> List[int]:
        return [stream_id for stream_id, _ in self.entries]

    def point_for(self, stream_id: int) -> Optional[Point]:
        for sid, point in self.entries:
            if sid == stream_id:
                return point
        return None


class TimeSeriesAggregator:
    """Timestamp-ordered fan-in of points from all streams."""

    def __init__(self):
        self._timestamps: List[datetime] = []
        self._index: Dict[datetime, GlobalTimePoint] = {}
        self._cursor: Optional[datetime] = None
        self._open: Set[int] = set()
        self._updated: Set[int] = set()

    def __len__(self) -> int:
        return len(self._timestamps)

    def __iter__(self) -> Iterator[GlobalTimePoint]:
        for ts in list(self._timestamps):
            yield self._index[ts]

    def get(self, timestamp: datetime) -> Optional[GlobalTimePoint]:
        return self._index.get(timestamp)

    def latest(self) -> Optional[GlobalTimePoint]:
        if not self._timestamps:
            return None
        return self._index[self._timestamps[-1]]

    # Open stream bookkeeping

    def track(self, stream_id: int) -> None:
        self._open.add(stream_id)

    def untrack(self, stream_id: int) -> None:
        self._open.discard(stream_id)
        self._updated.discard(stream_id)

    @property
    def open_streams(self) -> Set[int]:
        return set(self._open)

    def ingest(self, stream_id: int, point: Point) -> GlobalTimePoint:
        ts = point.timestamp
        gtp = self._index.get(ts)
        if gtp is None:
            gtp = GlobalTimePoint(ts)
            self._index[ts] = gtp
            insort(self._timestamps, ts)
        gtp.entries.append((stream_id, point))
        self._updated.add(stream_id)
        return gtp

    def all_streams_updated(self) -> bool:
        """
        True iff every open stream contributed since the last positive answer.

        A positive answer clears the updated-set. With no open streams there is
        nothing to wait for and the answer is False.
        """
        if not self._open or not self._open <= self._updated:
            return False
        self._updated.clear()
        return True

    # Sequential consumption

    @property
    def current(self) -> Optional[GlobalTimePoint]:
        if self._cursor is None:
            return None
        return self._index[self._cursor]

    def advance_cursor(self) -> Optional[GlobalTimePoint]:
        """
        Move to the next timestamp after the cursor and return it.

        Points ingested behind the cursor are still indexed but are never
        revisited. Returns None, leaving the cursor in place, at the end.
        """
        if self._cursor is None:
            pos = 0
        else:
            pos = bisect_right(self._timestamps, self._cursor)
        if pos >= len(self._timestamps):
            return None
        self._cursor = self._timestamps[pos]
        return self._index[self._cursor]

    def pending(self) -> int:
        """Number of timestamps ahead of the cursor."""
        if self._cursor is None:
            return len(self._timestamps)
        return len(self._timestamps) - bisect_right(self._timestamps, self._cursor)
