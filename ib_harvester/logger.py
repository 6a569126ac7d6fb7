"""
Structured logging for the harvester.

Every module logs through ``get_logger(__name__)``. structlog renders both its
own events and plain stdlib records (ib_async logs through stdlib) with one
``ProcessorFormatter``, so console and file output share a format.

Settings come from the environment on first use and can be replaced later
with :func:`reconfigure` once the CLI and config are parsed:

- ``HARVESTER_LOG_LEVEL``: DEBUG, INFO, WARNING, ERROR
- ``HARVESTER_LOG_FORMAT``: ``console`` or ``json``
- ``LOG_FILE``: optional path of a rotating log file
"""

import logging
import os
import sys
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import NamedTuple, Optional

import structlog
from structlog.processors import CallsiteParameter

_CONFIGURED = False

SENSITIVE_KEYS = ("password", "secret", "token", "credential")
ACCOUNT_KEYS = ("account", "acct_code")


class LogEvent(str, Enum):
    """Stable event names, so log lines can be filtered without parsing messages."""

    # Connection
    CONNECTION_ATTEMPT = "connection.attempt"
    CONNECTION_ESTABLISHED = "connection.established"
    CONNECTION_FAILED = "connection.failed"
    CONNECTION_LOST = "connection.lost"
    HEARTBEAT_MISSED = "connection.heartbeat_missed"

    # Session
    SESSION_STATE = "session.state"
    SESSION_INTERRUPTED = "session.interrupted"
    SESSION_EXIT = "session.exit"
    ACCOUNT_READY = "account.ready"
    ACCOUNT_FAILED = "account.failed"

    # Harvest
    PHASE_SUBMITTED = "harvest.phase_submitted"
    PHASE_WAITING = "harvest.phase_waiting"
    PHASE_ADVANCED = "harvest.phase_advanced"
    HARVEST_COMPLETE = "harvest.complete"
    REQUEST_SENT = "harvest.request_sent"
    REQUEST_DROPPED = "harvest.request_dropped"
    REQUEST_REQUEUED = "harvest.request_requeued"
    REQUEST_FAILED = "harvest.request_failed"

    # Streams
    STREAM_OPENED = "data.stream_opened"
    STREAM_ENDED = "data.stream_ended"
    DATA_REJECTED = "data.rejected"
    UNKNOWN_REQUEST = "data.unknown_request"

    # Orders
    ORDER_PLACED = "order.placed"
    ORDER_STATUS = "order.status"
    ORDER_REJECTED = "order.rejected"
    EXECUTION_JOINED = "order.execution_joined"

    # Export
    STREAM_EXPORTED = "export.stream"
    EXPORT_COMPLETE = "export.complete"


class LogSettings(NamedTuple):
    level: str = "INFO"
    log_format: str = "console"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> "LogSettings":
        return cls(
            level=os.getenv("HARVESTER_LOG_LEVEL", "INFO").upper(),
            log_format=os.getenv("HARVESTER_LOG_FORMAT", "console").lower(),
            log_file=os.getenv("LOG_FILE") or None,
        )


def censor_sensitive(logger, method_name, event_dict):
    """Redact credentials and mask account numbers (DU123456 -> DU****56)."""
    for key in list(event_dict.keys()):
        lowered = key.lower()
        if any(s in lowered for s in SENSITIVE_KEYS):
            event_dict[key] = "***REDACTED***"
        elif lowered in ACCOUNT_KEYS and isinstance(event_dict[key], str):
            value = event_dict[key]
            if len(value) > 4:
                event_dict[key] = value[:2] + "*" * (len(value) - 4) + value[-2:]
    return event_dict


def _shared_processors():
    return [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        censor_sensitive,
    ]


def _renderer(log_format: str):
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=False)


def _configure(settings: LogSettings) -> None:
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_processors(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            _renderer(settings.log_format),
        ],
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(getattr(logging, settings.level, logging.INFO))

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    if settings.log_file:
        Path(settings.log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            settings.log_file, maxBytes=10 * 1024 * 1024, backupCount=5
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_shared_processors(),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.CallsiteParameterAdder(
                parameters=[CallsiteParameter.MODULE, CallsiteParameter.LINENO]
            ),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Structured logger for ``name``; configures logging from the environment on first use."""
    global _CONFIGURED

    if not _CONFIGURED:
        _configure(LogSettings.from_env())
        _CONFIGURED = True
    return structlog.get_logger(name)


def reconfigure(
    level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None,
) -> None:
    """Apply settings from the parsed config; unset arguments keep the environment's value."""
    global _CONFIGURED

    env = LogSettings.from_env()
    _configure(
        LogSettings(
            level=(level or env.level).upper(),
            log_format=(log_format or env.log_format).lower(),
            log_file=log_file or env.log_file,
        )
    )
    _CONFIGURED = True


def log_system_event(
    logger: structlog.stdlib.BoundLogger,
    event: LogEvent,
    message: str,
    **kwargs,
) -> None:
    """
    Log a lifecycle event at info level.

    Args:
        logger: Logger instance
        event: Event name
        message: Human readable summary
        **kwargs: Additional context
    """
    logger.info(event.value, message=message, **kwargs)


__all__ = [
    "LogEvent",
    "LogSettings",
    "get_logger",
    "log_system_event",
    "reconfigure",
]
