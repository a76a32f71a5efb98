#!/usr/bin/env python3
"""
Decimal Precision Utilities for Ledger Calculations
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Any, Union

from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with ledger precision"""

    LEDGER_PRECISION = Decimal("0.00000001")  # Matches NUMERIC(20, 8)
    MAX_AMOUNT = Decimal("999999999999")

    @classmethod
    def to_decimal(cls, value: Any, field: str = "amount") -> Decimal:
        """
        Convert a request value to Decimal, rejecting anything non-numeric.

        Floats go through str() so 0.1 stays 0.1. Booleans, NaN and
        infinities are refused outright.
        """
        if value is None or isinstance(value, bool):
            raise ValidationError(f"{field} must be a number")

        if isinstance(value, Decimal):
            decimal_value = value
        else:
            try:
                decimal_value = Decimal(str(value).strip())
            except (InvalidOperation, ValueError):
                raise ValidationError(f"{field} must be a number")

        if not decimal_value.is_finite():
            raise ValidationError(f"{field} must be a finite number")

        if abs(decimal_value) > cls.MAX_AMOUNT:
            logger.warning(f"Rejected oversized monetary value for {field}: {decimal_value}")
            raise ValidationError(f"{field} is out of range")

        # Ledger columns are NUMERIC(20, 8)
        return decimal_value.quantize(cls.LEDGER_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def to_positive_decimal(cls, value: Any, field: str = "amount") -> Decimal:
        decimal_value = cls.to_decimal(value, field)
        if decimal_value <= 0:
            raise ValidationError(f"{field} must be greater than 0")
        return decimal_value

    @classmethod
    def quantize(cls, amount: Union[str, int, Decimal]) -> Decimal:
        """Quantize to ledger precision (8 decimal places)"""
        return Decimal(amount).quantize(cls.LEDGER_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def percent_of(cls, amount: Decimal, pct: Union[int, Decimal]) -> Decimal:
        """amount * pct / 100 at ledger precision"""
        return cls.quantize(Decimal(amount) * Decimal(pct) / Decimal(100))
