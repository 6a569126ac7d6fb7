"""
Custom exceptions for the harvester.

Only connection loss and account initialization failure are fatal to a
session. Everything else is raised at a component boundary and absorbed by
the session, which logs it and carries on.

Usage:
    from ib_harvester.exceptions import (
        GatewayConnectionError,
        CeilingExceededError,
        InvalidTransitionError,
    )

    try:
        scheduler.submit_batch(phase, instruments)
    except CeilingExceededError as e:
        logger.warning(f"Batch held back: {e}")
"""


class HarvesterError(Exception):
    """Base exception for all harvester errors."""

    pass


# =============================================================================
# Gateway Errors
# =============================================================================


class GatewayError(HarvesterError):
    """Base exception for gateway-related errors."""

    pass


class GatewayConnectionError(GatewayError):
    """Failed to connect to TWS / IB Gateway."""

    pass


class GatewayDisconnectedError(GatewayError):
    """The gateway connection was lost unexpectedly."""

    pass


class GatewayRateLimitError(GatewayError):
    """Too many simultaneous requests against the gateway."""

    pass


# =============================================================================
# Harvest Errors
# =============================================================================


class HarvestError(HarvesterError):
    """Base exception for harvesting errors."""

    pass


class CeilingExceededError(HarvestError):
    """A batch was submitted while outstanding requests exceed the ceiling."""

    pass


class UnknownPhaseError(HarvestError):
    """Phase index is outside the configured ladder."""

    pass


# =============================================================================
# Data Errors
# =============================================================================


class DataError(HarvesterError):
    """Base exception for data-related errors."""

    pass


class UnknownRequestError(DataError):
    """An update referenced a request id with no registered stream."""

    pass


class DataQualityError(DataError):
    """Data failed a sanity check (garbage greeks, out-of-order points)."""

    pass


class ExportError(DataError):
    """Failed to write exported stream data."""

    pass


# =============================================================================
# Trading Errors
# =============================================================================


class TradingError(HarvesterError):
    """Base exception for order-related errors."""

    pass


class OrderError(TradingError):
    """Error placing or managing an order."""

    pass


class OrderRejectedError(OrderError):
    """Order was rejected by the broker."""

    pass


class InvalidTransitionError(OrderError):
    """Status callback would move an order backwards in its lifecycle."""

    pass


class ReadOnlySessionError(OrderError):
    """Orders cannot be placed on a read-only connection."""

    pass


# =============================================================================
# Account Errors
# =============================================================================


class AccountError(HarvesterError):
    """Base exception for account-related errors."""

    pass


class AccountInitError(AccountError):
    """Account subscription did not complete during initialization."""

    pass


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(HarvesterError):
    """Error in configuration."""

    pass


class InvalidConfigError(ConfigurationError):
    """Configuration value is invalid."""

    pass
