"""
Strategy hook.

The harvester does not decide what to trade. A strategy object, when one is
configured, is asked for orders each time every open stream has contributed a
new point; whatever it returns is handed to the order tracker.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Protocol

from .models import Instrument, OrderTicket

if TYPE_CHECKING:
    from .account import AccountState
    from .aggregator import GlobalTimePoint
    from .streams import StreamRegistry


@dataclass(frozen=True)
class TradeIntent:
    instrument: Instrument
    ticket: OrderTicket


class Strategy(Protocol):
    def process_next_tick(
        self,
        timepoint: "GlobalTimePoint",
        registry: "StreamRegistry",
        account: "AccountState",
    ) -> Iterable[TradeIntent]:
        ...
