"""
Request id allocation.

One allocator is owned by the session and hands out ids for every gateway
request (historical, live, executions, account). Ids are never reused for the
lifetime of the process, including across reconnects.
"""

from dataclasses import dataclass
from typing import Dict, Set

from ..logger import get_logger

logger = get_logger(__name__)

FIRST_REQUEST_ID = 10000


@dataclass
class RequestIdStats:
    """Statistics for id allocation."""

    total_generated: int = 0
    collisions_detected: int = 0


class RequestIdAllocator:
    """
    Monotonic request id allocator with collision prevention.

    Ids registered externally through :meth:`mark_id_used` (for example order
    ids chosen by the gateway) are skipped.
    """

    def __init__(self, start: int = FIRST_REQUEST_ID):
        self._next = start
        self._used: Set[int] = set()
        self.stats = RequestIdStats()

    def next_id(self) -> int:
        while self._next in self._used:
            self.stats.collisions_detected += 1
            self._next += 1

        req_id = self._next
        self._used.add(req_id)
        self._next += 1
        self.stats.total_generated += 1
        logger.debug(f"Allocated request id: {req_id}")
        return req_id

    def mark_id_used(self, req_id: int) -> bool:
        """
        Register an id allocated elsewhere so it is never handed out.

        Returns:
            True if the id was not already in use
        """
        if req_id in self._used:
            return False
        self._used.add(req_id)
        return True

    def is_allocated(self, req_id: int) -> bool:
        return req_id in self._used

    def get_statistics(self) -> Dict[str, int]:
        return {
            "total_generated": self.stats.total_generated,
            "collisions_detected": self.stats.collisions_detected,
            "next_id": self._next,
            "tracked_ids": len(self._used),
        }
