"""
Configuration system with Pydantic validation and environment-based settings.

Every section can be populated from environment variables (or a ``.env`` file)
through :func:`load_config_from_env`; the CLI applies its overrides on top of
the returned object.
"""

import os
from enum import Enum
from typing import List, Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from .exceptions import InvalidConfigError
from .models import BarTier, HarvestPhase, Instrument, SecurityKind

# Resolution ladder: one entry per phase, each a list of (lookback, bar size).
# The last phase also opens live subscriptions.
DEFAULT_LADDER: List[List[Tuple[str, str]]] = [
    [
        ("1800 S", "1 secs"),
        ("3600 S", "5 secs"),
        ("14400 S", "10 secs"),
        ("14400 S", "15 secs"),
        ("28800 S", "30 secs"),
        ("1 D", "1 min"),
    ],
    [
        ("2 D", "2 mins"),
        ("1 W", "3 mins"),
        ("1 W", "5 mins"),
        ("1 W", "10 mins"),
        ("1 W", "15 mins"),
        ("1 W", "20 mins"),
    ],
    [
        ("1 M", "30 mins"),
        ("1 M", "1 hour"),
        ("1 M", "2 hours"),
        ("1 M", "3 hours"),
        ("1 M", "4 hours"),
        ("1 M", "8 hours"),
    ],
    [
        ("1 Y", "1 day"),
    ],
]

DEFAULT_SYMBOLS = ["MSFT", "AAPL", "NFLX", "AMZN", "GOOG", "TSLA", "BA", "INTC"]

_DURATION_UNITS = {"S", "D", "W", "M", "Y"}


class Environment(str, Enum):
    """Environment enumeration."""

    DEVELOPMENT = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class RateLimitPolicy(str, Enum):
    """What to do with a request the gateway refuses as too many simultaneous."""

    DROP = "drop"
    REQUEUE = "requeue"


class GatewayConfig(BaseModel):
    """Interactive Brokers gateway configuration."""

    host: str = Field(default="127.0.0.1", description="IBKR Gateway/TWS host")
    port: int = Field(default=7497, ge=1, le=65535, description="IBKR Gateway/TWS port")
    client_id: int = Field(default=0, ge=0, le=999, description="IBKR client ID")
    account: Optional[str] = Field(default=None, description="IBKR account number")
    readonly: bool = Field(default=True, description="Connect in read-only mode")
    timeout: float = Field(default=10.0, gt=0, description="Connection timeout in seconds")


class HarvestConfig(BaseModel):
    """Historical backfill configuration."""

    ladder: List[List[Tuple[str, str]]] = Field(
        default_factory=lambda: [list(phase) for phase in DEFAULT_LADDER],
        description="Per-phase (lookback, bar size) tiers",
    )
    ceiling: int = Field(default=5, ge=1, le=100, description="Max outstanding requests")
    pacing: float = Field(default=0.2, ge=0, description="Seconds between requests")
    final_pacing: float = Field(
        default=0.5, ge=0, description="Seconds between requests in the terminal phase"
    )
    dwell: float = Field(default=20.0, ge=0, description="Minimum seconds spent per phase")
    recheck: float = Field(
        default=20.0, gt=0, description="Seconds to wait again when the ceiling is exceeded"
    )
    what_to_show: str = Field(default="TRADES", description="Historical data type")
    use_rth: bool = Field(default=True, description="Regular trading hours only")
    rate_limit_policy: RateLimitPolicy = Field(
        default=RateLimitPolicy.DROP, description="Policy for 'too many requests' errors"
    )
    max_requeues: int = Field(default=3, ge=0, le=20, description="Max re-issues per request")

    @field_validator("ladder")
    @classmethod
    def validate_ladder(cls, v: List[List[Tuple[str, str]]]) -> List[List[Tuple[str, str]]]:
        if not v:
            raise ValueError("Ladder must have at least one phase")
        for phase in v:
            for lookback, bar_size in phase:
                parts = lookback.split()
                if len(parts) != 2 or not parts[0].isdigit() or parts[1] not in _DURATION_UNITS:
                    raise ValueError(f"Invalid lookback duration: {lookback!r}")
                if not bar_size.strip():
                    raise ValueError("Bar size cannot be empty")
        return v

    @field_validator("what_to_show")
    @classmethod
    def validate_what_to_show(cls, v: str) -> str:
        allowed = ["TRADES", "MIDPOINT", "BID", "ASK", "BID_ASK", "ADJUSTED_LAST"]
        v = v.upper()
        if v not in allowed:
            raise ValueError(f"what_to_show must be one of {allowed}")
        return v

    def phases(self) -> List[HarvestPhase]:
        """Build the phase progression; the last phase goes live."""
        last = len(self.ladder) - 1
        return [
            HarvestPhase(
                index=i,
                tiers=tuple(BarTier(lookback, bar_size) for lookback, bar_size in tiers),
                dwell=self.dwell,
                pacing=self.final_pacing if i == last else self.pacing,
                live=i == last,
            )
            for i, tiers in enumerate(self.ladder)
        ]


class SessionConfig(BaseModel):
    """Control loop and connection lifecycle configuration."""

    main_loop_delay: float = Field(default=0.1, ge=0, description="Sleep per loop iteration")
    event_wait_timeout: float = Field(
        default=0.5, ge=0, description="Max seconds to block waiting for gateway events"
    )
    max_connect_attempts: int = Field(default=10, ge=1, le=100, description="Reconnect ceiling")
    reconnect_backoff: float = Field(default=3.0, ge=0, description="Seconds between attempts")
    ping_interval: float = Field(default=30.0, gt=0, description="Seconds between heartbeats")
    ping_deadline: float = Field(default=2.0, gt=0, description="Heartbeat answer deadline")
    init_timeout: float = Field(
        default=30.0, gt=0, description="Seconds allowed for the account download"
    )
    exit_after_harvest: bool = Field(
        default=False, description="Export and exit once the backfill completes"
    )

    @model_validator(mode="after")
    def validate_heartbeat(self) -> "SessionConfig":
        if self.ping_deadline >= self.ping_interval:
            raise ValueError("ping_deadline must be shorter than ping_interval")
        return self


class ExportConfig(BaseModel):
    """CSV export configuration."""

    enabled: bool = Field(default=True, description="Write streams on shutdown")
    directory: str = Field(default="harvest", description="Export directory")
    min_points: int = Field(default=2, ge=1, description="Minimum points to export a stream")


class MonitoringConfig(BaseModel):
    """Logging configuration."""

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="Log format: console or json")
    log_file: Optional[str] = Field(default=None, description="Optional rotating log file")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v = v.upper()
        if v not in allowed:
            raise ValueError(f"Log level must be one of {allowed}")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        allowed = ["console", "json"]
        v = v.lower()
        if v not in allowed:
            raise ValueError(f"Log format must be one of {allowed}")
        return v


class Config(BaseModel):
    """Main configuration class combining all sub-configurations."""

    environment: Environment = Field(default=Environment.DEVELOPMENT)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    harvest: HarvestConfig = Field(default_factory=HarvestConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    export: ExportConfig = Field(default_factory=ExportConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    symbols: List[str] = Field(
        default_factory=lambda: list(DEFAULT_SYMBOLS),
        description="Instruments as SYMBOL[:KIND[:EXPIRY[:STRIKE:RIGHT]]][@EXCHANGE]",
    )
    currency: str = Field(default="USD", description="Default instrument currency")

    @field_validator("symbols")
    @classmethod
    def validate_symbols(cls, v: List[str]) -> List[str]:
        """Validate and clean symbols."""
        cleaned = [s.strip().upper() for s in v if s.strip()]
        if not cleaned:
            raise ValueError("At least one symbol must be specified")
        if len(cleaned) > 100:
            raise ValueError("Maximum 100 symbols allowed")
        for entry in cleaned:
            try:
                parse_instrument(entry)
            except InvalidConfigError as e:
                raise ValueError(str(e))
        return cleaned

    @model_validator(mode="after")
    def validate_config_consistency(self) -> "Config":
        """Validate configuration consistency across sections."""
        if self.environment == Environment.PRODUCTION and not self.gateway.readonly:
            if not self.gateway.account:
                raise ValueError("Trading in production requires an explicit account")
        return self

    def instruments(self) -> List[Instrument]:
        return [parse_instrument(s, currency=self.currency) for s in self.symbols]


def parse_instrument(text: str, currency: str = "USD") -> Instrument:
    """
    Parse an instrument descriptor.

    Examples:
        AAPL
        AAPL@NASDAQ
        ES:FUT:20261218@CME
        SPY:OPT:20261120:450:C
    """
    body, _, exchange = text.strip().upper().partition("@")
    parts = body.split(":")
    symbol = parts[0]
    if not symbol:
        raise InvalidConfigError(f"Missing symbol in {text!r}")

    try:
        kind = SecurityKind(parts[1]) if len(parts) > 1 else SecurityKind.EQUITY
    except ValueError:
        raise InvalidConfigError(f"Unknown security kind in {text!r}")

    expiry = ""
    strike = 0.0
    right = ""
    if kind.is_derivative:
        if len(parts) < 3 or not parts[2].isdigit():
            raise InvalidConfigError(f"Derivative {text!r} needs an expiry (YYYYMM[DD])")
        expiry = parts[2]
    if kind == SecurityKind.OPTION:
        if len(parts) != 5:
            raise InvalidConfigError(f"Option {text!r} needs EXPIRY:STRIKE:RIGHT")
        try:
            strike = float(parts[3])
        except ValueError:
            raise InvalidConfigError(f"Invalid strike in {text!r}")
        right = parts[4][:1]
        if right not in ("C", "P"):
            raise InvalidConfigError(f"Option right must be C or P in {text!r}")

    return Instrument(
        symbol=symbol,
        kind=kind,
        currency=currency,
        exchange=exchange or "SMART",
        expiry=expiry,
        strike=strike,
        right=right,
        multiplier="100" if kind == SecurityKind.OPTION else "",
    )


def load_config_from_env() -> Config:
    """
    Load configuration from environment variables with validation.

    Environment variables are prefixed with section names:
    - IBKR_HOST=127.0.0.1
    - HARVEST_CEILING=5
    - HARVEST_RATE_LIMIT_POLICY=requeue
    - SESSION_EXIT_AFTER_HARVEST=true
    - EXPORT_DIR=harvest
    - HARVESTER_LOG_LEVEL=INFO

    Returns:
        Config: Validated configuration object
    """
    load_dotenv()

    config_dict = {
        "environment": os.getenv("ENVIRONMENT", "dev"),
        "gateway": {
            "host": os.getenv("IBKR_HOST", "127.0.0.1"),
            "port": int(os.getenv("IBKR_PORT", "7497")),
            "client_id": int(os.getenv("IBKR_CLIENT_ID", "0")),
            "account": os.getenv("IBKR_ACCOUNT"),
            "readonly": os.getenv("IBKR_READONLY", "true").lower() == "true",
            "timeout": float(os.getenv("IBKR_TIMEOUT", "10.0")),
        },
        "harvest": {
            "ceiling": int(os.getenv("HARVEST_CEILING", "5")),
            "pacing": float(os.getenv("HARVEST_PACING", "0.2")),
            "final_pacing": float(os.getenv("HARVEST_FINAL_PACING", "0.5")),
            "dwell": float(os.getenv("HARVEST_DWELL", "20")),
            "recheck": float(os.getenv("HARVEST_RECHECK", "20")),
            "what_to_show": os.getenv("HARVEST_WHAT_TO_SHOW", "TRADES"),
            "use_rth": os.getenv("HARVEST_USE_RTH", "true").lower() == "true",
            "rate_limit_policy": os.getenv("HARVEST_RATE_LIMIT_POLICY", "drop").lower(),
            "max_requeues": int(os.getenv("HARVEST_MAX_REQUEUES", "3")),
        },
        "session": {
            "main_loop_delay": float(os.getenv("SESSION_MAIN_LOOP_DELAY", "0.1")),
            "event_wait_timeout": float(os.getenv("SESSION_EVENT_WAIT_TIMEOUT", "0.5")),
            "max_connect_attempts": int(os.getenv("SESSION_MAX_CONNECT_ATTEMPTS", "10")),
            "reconnect_backoff": float(os.getenv("SESSION_RECONNECT_BACKOFF", "3")),
            "ping_interval": float(os.getenv("SESSION_PING_INTERVAL", "30")),
            "ping_deadline": float(os.getenv("SESSION_PING_DEADLINE", "2")),
            "init_timeout": float(os.getenv("SESSION_INIT_TIMEOUT", "30")),
            "exit_after_harvest": os.getenv("SESSION_EXIT_AFTER_HARVEST", "false").lower()
            == "true",
        },
        "export": {
            "enabled": os.getenv("EXPORT_ENABLED", "true").lower() == "true",
            "directory": os.getenv("EXPORT_DIR", "harvest"),
            "min_points": int(os.getenv("EXPORT_MIN_POINTS", "2")),
        },
        "monitoring": {
            "log_level": os.getenv("HARVESTER_LOG_LEVEL", "INFO"),
            "log_format": os.getenv("HARVESTER_LOG_FORMAT", "console"),
            "log_file": os.getenv("LOG_FILE"),
        },
        "symbols": [
            s.strip()
            for s in os.getenv("HARVEST_SYMBOLS", ",".join(DEFAULT_SYMBOLS)).split(",")
            if s.strip()
        ],
        "currency": os.getenv("HARVEST_CURRENCY", "USD"),
    }

    return Config(**config_dict)
