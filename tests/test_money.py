"""Tests for exact decimal-to-atomic-unit conversion."""

from decimal import Decimal

import pytest

from cronos402.errors import InvalidAmountError
from cronos402.money import format_units, parse_units


class TestParseUnits:
    def test_cent_on_six_decimals(self):
        assert parse_units("0.01", 6) == 10000

    def test_one_on_eighteen_decimals(self):
        assert parse_units("1", 18) == 1_000_000_000_000_000_000

    def test_smallest_unit(self):
        assert parse_units("0.000001", 6) == 1

    def test_no_float_drift(self):
        # 0.1 + 0.2 style amounts must stay exact
        assert parse_units("0.3", 6) == 300000
        assert parse_units("1234567.891011", 6) == 1234567891011

    def test_large_amount_on_eighteen_decimals(self):
        assert parse_units("123456789012.123456789012345678", 18) == 123456789012123456789012345678

    def test_leading_dot(self):
        assert parse_units(".5", 6) == 500000

    def test_int_and_decimal_inputs(self):
        assert parse_units(2, 6) == 2_000_000
        assert parse_units(Decimal("0.25"), 6) == 250000

    @pytest.mark.parametrize("amount", ["0", "0.000000", "-1", "-0.01", "abc", "", "1e3", "1,5", " "])
    def test_rejects_invalid(self, amount):
        with pytest.raises(InvalidAmountError):
            parse_units(amount, 6)

    def test_rejects_excess_precision(self):
        with pytest.raises(InvalidAmountError, match="fractional digits"):
            parse_units("0.0000001", 6)

    def test_rejects_float(self):
        with pytest.raises(InvalidAmountError):
            parse_units(0.01, 6)


class TestFormatUnits:
    def test_strips_trailing_zeros(self):
        assert format_units(10000, 6) == "0.01"
        assert format_units(1_000_000, 6) == "1"

    def test_zero(self):
        assert format_units(0, 6) == "0"

    def test_round_trip_exact(self):
        for amount in ("0.01", "1", "0.000001", "42.5"):
            assert format_units(parse_units(amount, 6), 6) == amount
        assert format_units(parse_units("1", 18), 18) == "1"

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            format_units(-1, 6)
