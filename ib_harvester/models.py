"""
Core data model: instruments, committed points and the accumulators that
turn partial quote updates into points.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class SecurityKind(str, Enum):
    """Security kinds understood by the harvester (gateway secType codes)."""

    EQUITY = "STK"
    OPTION = "OPT"
    FUTURE = "FUT"

    @property
    def is_derivative(self) -> bool:
        return self in (SecurityKind.OPTION, SecurityKind.FUTURE)


class StreamKind(str, Enum):
    """Shape of the points a stream commits."""

    CANDLE = "candle"
    SNAPSHOT = "snapshot"
    OPTION = "option"


@dataclass(frozen=True)
class Instrument:
    """Tradable security descriptor. Immutable once a request is issued."""

    symbol: str
    kind: SecurityKind = SecurityKind.EQUITY
    currency: str = "USD"
    exchange: str = "SMART"
    primary_exchange: str = ""
    con_id: int = 0
    expiry: str = ""  # YYYYMMDD for derivatives
    strike: float = 0.0
    right: str = ""  # "C" or "P" for options
    multiplier: str = ""

    @property
    def key(self) -> Tuple[Any, ...]:
        """Identity used for position bookkeeping."""
        if self.con_id:
            return (self.con_id,)
        return (self.symbol, self.kind.value, self.expiry, self.strike, self.right)

    @property
    def stream_kind(self) -> StreamKind:
        """Kind of live snapshot stream this instrument produces."""
        return StreamKind.OPTION if self.kind == SecurityKind.OPTION else StreamKind.SNAPSHOT

    def describe(self) -> str:
        if self.kind == SecurityKind.OPTION:
            return f"{self.symbol} {self.expiry} {self.strike:g}{self.right}"
        if self.kind == SecurityKind.FUTURE:
            return f"{self.symbol} {self.expiry} FUT"
        return self.symbol

    def metadata(self) -> Dict[str, Any]:
        """Metadata written at the top of exported files."""
        meta: Dict[str, Any] = {
            "symbol": self.symbol,
            "kind": self.kind.value,
            "exchange": self.exchange,
            "currency": self.currency,
            "con_id": self.con_id,
        }
        if self.kind.is_derivative:
            meta["expiry"] = self.expiry
        if self.kind == SecurityKind.OPTION:
            meta["strike"] = self.strike
            meta["right"] = self.right
        return meta


def to_utc(value: Union[datetime, date, str, int, float, None]) -> datetime:
    """Normalize gateway timestamps to timezone-aware UTC datetimes.

    Naive datetimes are taken to be UTC already; bare dates (daily bars) map
    to midnight UTC; numbers are epoch seconds.
    """
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip()
    if text.isdigit() and len(text) > 8:
        return datetime.fromtimestamp(int(text), tz=timezone.utc)
    for fmt in ("%Y%m%d %H:%M:%S", "%Y%m%d  %H:%M:%S", "%Y%m%d"):
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return to_utc(datetime.fromisoformat(text))


# =============================================================================
# Committed points
# =============================================================================


@dataclass(frozen=True)
class Candle:
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    average: float = 0.0
    bar_count: int = 0

    def as_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Snapshot:
    timestamp: datetime
    bid_price: float
    ask_price: float
    bid_size: Optional[float] = None
    ask_size: Optional[float] = None
    last_trade: bool = False

    @property
    def mid(self) -> float:
        return (self.bid_price + self.ask_price) / 2.0

    @property
    def spread(self) -> float:
        return self.ask_price - self.bid_price

    def as_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class OptionSnapshot(Snapshot):
    bid_implied_vol: Optional[float] = None
    bid_delta: Optional[float] = None
    bid_gamma: Optional[float] = None
    bid_vega: Optional[float] = None
    bid_theta: Optional[float] = None
    bid_pv_dividend: Optional[float] = None
    ask_implied_vol: Optional[float] = None
    ask_delta: Optional[float] = None
    ask_gamma: Optional[float] = None
    ask_vega: Optional[float] = None
    ask_theta: Optional[float] = None
    ask_pv_dividend: Optional[float] = None


Point = Union[Candle, Snapshot, OptionSnapshot]

POINT_TYPES = {
    StreamKind.CANDLE: Candle,
    StreamKind.SNAPSHOT: Snapshot,
    StreamKind.OPTION: OptionSnapshot,
}


def point_columns(kind: StreamKind) -> List[str]:
    """Column names of the points a stream of ``kind`` commits."""
    return [f.name for f in fields(POINT_TYPES[kind])]


# =============================================================================
# Accumulators
# =============================================================================


@dataclass
class Greeks:
    implied_vol: Optional[float] = None
    delta: Optional[float] = None
    gamma: Optional[float] = None
    vega: Optional[float] = None
    theta: Optional[float] = None
    pv_dividend: Optional[float] = None

    @property
    def is_sane(self) -> bool:
        """Gateway warm-up values can carry |delta| or |gamma| above one."""
        if self.delta is not None and abs(self.delta) > 1:
            return False
        if self.gamma is not None and abs(self.gamma) > 1:
            return False
        return True


@dataclass
class SnapshotAccumulator:
    """Holds partial quote fields until both sides of the book are known."""

    bid_price: Optional[float] = None
    ask_price: Optional[float] = None
    bid_size: Optional[float] = None
    ask_size: Optional[float] = None
    last_trade: bool = False

    def set_price(self, side: str, value: float) -> None:
        if side in ("bid", "both"):
            self.bid_price = value
        if side in ("ask", "both"):
            self.ask_price = value
        if side == "both":
            self.last_trade = True

    def set_size(self, side: str, value: float) -> None:
        if side in ("bid", "both"):
            self.bid_size = value
        if side in ("ask", "both"):
            self.ask_size = value

    def is_valid(self) -> bool:
        return self.bid_price is not None and self.ask_price is not None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) in (None, False) for f in fields(SnapshotAccumulator))

    def clear(self) -> None:
        self.bid_price = None
        self.ask_price = None
        self.bid_size = None
        self.ask_size = None
        self.last_trade = False

    def commit(self, timestamp: datetime) -> Snapshot:
        point = Snapshot(
            timestamp=timestamp,
            bid_price=self.bid_price,
            ask_price=self.ask_price,
            bid_size=self.bid_size,
            ask_size=self.ask_size,
            last_trade=self.last_trade,
        )
        self.clear()
        return point


@dataclass
class OptionAccumulator(SnapshotAccumulator):
    """Snapshot accumulator that also carries per-side option computations."""

    bid_greeks: Greeks = field(default_factory=Greeks)
    ask_greeks: Greeks = field(default_factory=Greeks)

    def set_greeks(self, side: str, greeks: Greeks, opt_price: Optional[float]) -> None:
        if side in ("bid", "both"):
            self.bid_greeks = greeks
        if side in ("ask", "both"):
            self.ask_greeks = greeks
        if opt_price is not None:
            self.set_price(side, opt_price)

    def is_empty(self) -> bool:
        return (
            super().is_empty()
            and self.bid_greeks == Greeks()
            and self.ask_greeks == Greeks()
        )

    def clear(self) -> None:
        super().clear()
        self.bid_greeks = Greeks()
        self.ask_greeks = Greeks()

    def commit(self, timestamp: datetime) -> OptionSnapshot:
        bid, ask = self.bid_greeks, self.ask_greeks
        point = OptionSnapshot(
            timestamp=timestamp,
            bid_price=self.bid_price,
            ask_price=self.ask_price,
            bid_size=self.bid_size,
            ask_size=self.ask_size,
            last_trade=self.last_trade,
            bid_implied_vol=bid.implied_vol,
            bid_delta=bid.delta,
            bid_gamma=bid.gamma,
            bid_vega=bid.vega,
            bid_theta=bid.theta,
            bid_pv_dividend=bid.pv_dividend,
            ask_implied_vol=ask.implied_vol,
            ask_delta=ask.delta,
            ask_gamma=ask.gamma,
            ask_vega=ask.vega,
            ask_theta=ask.theta,
            ask_pv_dividend=ask.pv_dividend,
        )
        self.clear()
        return point


# =============================================================================
# Harvest ladder
# =============================================================================


@dataclass(frozen=True)
class BarTier:
    """One historical request shape: how far back and at what bar size."""

    lookback: str  # gateway duration string, e.g. "1 W"
    bar_size: str  # gateway bar size setting, e.g. "5 mins"

    @property
    def resolution(self) -> str:
        return "".join(self.bar_size.split())


@dataclass(frozen=True)
class HarvestPhase:
    index: int
    tiers: Tuple[BarTier, ...]
    dwell: float
    pacing: float
    live: bool = False


def has_history(instrument: Instrument) -> bool:
    """Options are only ever subscribed live; everything else is backfilled."""
    return instrument.kind != SecurityKind.OPTION


# =============================================================================
# Orders and executions
# =============================================================================


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


@dataclass(frozen=True)
class OrderTicket:
    """What a strategy asks for. The order id is assigned at placement."""

    action: OrderSide
    quantity: float
    order_type: str = "MKT"
    limit_price: Optional[float] = None
    account: str = ""
    tif: str = "DAY"

    def __post_init__(self):
        if self.order_type == "LMT" and (self.limit_price is None or self.limit_price <= 0):
            raise ValueError("Limit orders need a positive limit price")


@dataclass(frozen=True)
class ExecutionQuery:
    """Filter narrowing an execution lookup to one filled order."""

    client_id: int
    account: str
    symbol: str
    kind: str
    side: str


@dataclass(frozen=True)
class ExecutionReport:
    exec_id: str
    order_id: int
    time: datetime
    account: str
    side: str  # gateway reports BOT / SLD
    shares: float
    price: float
    cum_qty: float = 0.0
    avg_price: float = 0.0
    symbol: str = ""

    @property
    def is_buy(self) -> bool:
        return self.side.upper() in ("BOT", "BUY")
