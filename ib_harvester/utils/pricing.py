"""
Decimal-based pricing utilities.

Fill prices and quantities arrive as floats from the gateway; position
bookkeeping converts them here so averages and PnL do not accumulate float
error.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

# Type alias for numeric inputs
Numeric = Union[int, float, str, Decimal]


class PrecisePricing:
    """Handles all price and quantity calculations with decimal precision."""

    @staticmethod
    def to_decimal(value: Numeric) -> Decimal:
        """Convert any numeric value to Decimal safely."""
        if isinstance(value, Decimal):
            return value
        return Decimal(str(value))

    @staticmethod
    def round_price(price: Numeric, tick_size: Numeric = "0.01") -> Decimal:
        """Round price to valid tick size."""
        price_d = PrecisePricing.to_decimal(price)
        tick_d = PrecisePricing.to_decimal(tick_size)

        if tick_d <= 0:
            raise ValueError(f"Tick size must be positive, got {tick_d}")

        return (price_d / tick_d).quantize(Decimal("1"), rounding=ROUND_HALF_UP) * tick_d

    @staticmethod
    def calculate_notional(quantity: Numeric, price: Numeric, multiplier: Numeric = 1) -> Decimal:
        """Calculate exact notional value."""
        return (
            PrecisePricing.to_decimal(quantity)
            * PrecisePricing.to_decimal(price)
            * PrecisePricing.to_decimal(multiplier)
        )

    @staticmethod
    def calculate_pnl(
        entry_price: Numeric, exit_price: Numeric, quantity: Numeric, multiplier: Numeric = 1
    ) -> Decimal:
        """PnL of closing ``quantity`` (negative for shorts) opened at ``entry_price``."""
        entry_d = PrecisePricing.to_decimal(entry_price)
        exit_d = PrecisePricing.to_decimal(exit_price)
        return (
            (exit_d - entry_d)
            * PrecisePricing.to_decimal(quantity)
            * PrecisePricing.to_decimal(multiplier)
        )

    @staticmethod
    def calculate_average_price(
        existing_qty: Numeric, existing_avg: Numeric, added_qty: Numeric, added_price: Numeric
    ) -> Optional[Decimal]:
        """Weighted average after adding to a position on the same side."""
        qty_d = PrecisePricing.to_decimal(existing_qty)
        add_d = PrecisePricing.to_decimal(added_qty)
        total = qty_d + add_d
        if total == 0:
            return None
        return (
            qty_d * PrecisePricing.to_decimal(existing_avg)
            + add_d * PrecisePricing.to_decimal(added_price)
        ) / total
