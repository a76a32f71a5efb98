"""
Monetary Decimal Tests
Request values are normalised to the ledger's 8 decimal places
"""

from decimal import Decimal

import pytest

from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import ValidationError


class TestToPositiveDecimal:

    @pytest.mark.parametrize("raw,expected", [
        ("0.123456789", Decimal("0.12345679")),
        ("0.000000005", Decimal("0.00000001")),
        (0.1, Decimal("0.1")),
        ("50", Decimal("50")),
    ])
    def test_rounded_to_ledger_precision(self, raw, expected):
        value = MonetaryDecimal.to_positive_decimal(raw)
        assert value == expected
        assert value.as_tuple().exponent == -8

    @pytest.mark.parametrize("raw", ["0.000000001", "0.000000004", "0", "-0.1"])
    def test_values_that_round_to_zero_rejected(self, raw):
        with pytest.raises(ValidationError):
            MonetaryDecimal.to_positive_decimal(raw)

    def test_signed_values_keep_sign(self):
        assert MonetaryDecimal.to_decimal("-2.123456789") == Decimal("-2.12345679")
