"""
Gateway events.

The gateway adapter turns every callback the harvester consumes into one of
the event types below. Callbacks the harvester does not care about simply have
no event type. The session dispatches on ``event.event_type``.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import ClassVar, Optional, Tuple

from .models import Candle, ExecutionReport, Instrument


class EventType(Enum):
    """Types of gateway events."""

    CANDLE = "candle"
    HISTORY_END = "history_end"
    PRICE = "price"
    SIZE = "size"
    GREEKS = "greeks"
    ORDER_STATUS = "order_status"
    EXECUTION = "execution"
    EXECUTION_END = "execution_end"
    ERROR = "error"
    ACCOUNT_VALUE = "account_value"
    PORTFOLIO = "portfolio"
    POSITION = "position"
    ACCOUNT_DOWNLOAD_END = "account_download_end"
    MANAGED_ACCOUNTS = "managed_accounts"
    NEXT_VALID_ID = "next_valid_id"
    CURRENT_TIME = "current_time"
    CONNECTION_CLOSED = "connection_closed"


class ErrorCode(IntEnum):
    """Gateway error codes the harvester reacts to."""

    DUPLICATE_ORDER_ID = 103
    ORDER_PRICE_INVALID = 110
    HISTORICAL_DATA_ERROR = 162
    NO_SECURITY_DEFINITION = 200
    ORDER_REJECTED = 201  # includes insufficient funds
    ORDER_CANCELLED = 202
    SECURITY_NOT_ALLOWED = 203
    TOO_MANY_REQUESTS = 322
    NOT_CONNECTED = 504
    CONNECTIVITY_LOST = 1100
    CONNECTIVITY_RESTORED_DATA_LOST = 1101
    CONNECTIVITY_RESTORED = 1102


ORDER_REJECTION_CODES = frozenset(
    {
        ErrorCode.DUPLICATE_ORDER_ID,
        ErrorCode.ORDER_PRICE_INVALID,
        ErrorCode.ORDER_REJECTED,
        ErrorCode.SECURITY_NOT_ALLOWED,
    }
)

CONNECTION_LOST_CODES = frozenset({ErrorCode.NOT_CONNECTED, ErrorCode.CONNECTIVITY_LOST})


def is_informational(code: int) -> bool:
    """Farm status notices (2104, 2106, 2158, ...) are not errors."""
    return 2100 <= code < 2200 or code in (
        ErrorCode.CONNECTIVITY_RESTORED,
        ErrorCode.CONNECTIVITY_RESTORED_DATA_LOST,
    )


def is_connection_lost(code: int) -> bool:
    return code in CONNECTION_LOST_CODES


def is_order_rejection(code: int) -> bool:
    return code in ORDER_REJECTION_CODES


@dataclass(frozen=True)
class GatewayEvent:
    """Base event class."""

    event_type: ClassVar[EventType]


@dataclass(frozen=True)
class CandleEvent(GatewayEvent):
    event_type: ClassVar[EventType] = EventType.CANDLE
    req_id: int
    candle: Candle


@dataclass(frozen=True)
class HistoryEndEvent(GatewayEvent):
    event_type: ClassVar[EventType] = EventType.HISTORY_END
    req_id: int


@dataclass(frozen=True)
class PriceEvent(GatewayEvent):
    event_type: ClassVar[EventType] = EventType.PRICE
    req_id: int
    field: int
    price: float
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SizeEvent(GatewayEvent):
    event_type: ClassVar[EventType] = EventType.SIZE
    req_id: int
    field: int
    size: float
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class GreeksEvent(GatewayEvent):
    event_type: ClassVar[EventType] = EventType.GREEKS
    req_id: int
    field: int
    implied_vol: Optional[float]
    delta: Optional[float]
    opt_price: Optional[float]
    pv_dividend: Optional[float]
    gamma: Optional[float]
    vega: Optional[float]
    theta: Optional[float]
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class OrderStatusEvent(GatewayEvent):
    event_type: ClassVar[EventType] = EventType.ORDER_STATUS
    order_id: int
    status: str
    filled: float = 0.0
    remaining: float = 0.0
    avg_fill_price: float = 0.0


@dataclass(frozen=True)
class ExecutionEvent(GatewayEvent):
    event_type: ClassVar[EventType] = EventType.EXECUTION
    req_id: int
    report: ExecutionReport


@dataclass(frozen=True)
class ExecutionEndEvent(GatewayEvent):
    event_type: ClassVar[EventType] = EventType.EXECUTION_END
    req_id: int


@dataclass(frozen=True)
class ErrorEvent(GatewayEvent):
    event_type: ClassVar[EventType] = EventType.ERROR
    req_id: int
    code: int
    message: str = ""


@dataclass(frozen=True)
class AccountValueEvent(GatewayEvent):
    event_type: ClassVar[EventType] = EventType.ACCOUNT_VALUE
    key: str
    value: str
    currency: str = ""
    account: str = ""


@dataclass(frozen=True)
class PortfolioEvent(GatewayEvent):
    event_type: ClassVar[EventType] = EventType.PORTFOLIO
    instrument: Instrument
    position: float
    average_cost: float
    market_price: float = 0.0
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    account: str = ""


@dataclass(frozen=True)
class PositionEvent(GatewayEvent):
    event_type: ClassVar[EventType] = EventType.POSITION
    instrument: Instrument
    position: float
    average_cost: float
    account: str = ""


@dataclass(frozen=True)
class AccountDownloadEndEvent(GatewayEvent):
    event_type: ClassVar[EventType] = EventType.ACCOUNT_DOWNLOAD_END
    account: str = ""


@dataclass(frozen=True)
class ManagedAccountsEvent(GatewayEvent):
    event_type: ClassVar[EventType] = EventType.MANAGED_ACCOUNTS
    accounts: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class NextValidIdEvent(GatewayEvent):
    event_type: ClassVar[EventType] = EventType.NEXT_VALID_ID
    order_id: int


@dataclass(frozen=True)
class CurrentTimeEvent(GatewayEvent):
    event_type: ClassVar[EventType] = EventType.CURRENT_TIME
    time: datetime


@dataclass(frozen=True)
class ConnectionClosedEvent(GatewayEvent):
    event_type: ClassVar[EventType] = EventType.CONNECTION_CLOSED
