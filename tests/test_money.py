"""
Unit tests for exact money arithmetic.
"""
from decimal import Decimal

import pytest

from settlement_engine.core.exceptions import FinancialInvariantViolation
from settlement_engine.core.money import assert_split, compute_split, to_amount, to_minor_units


class TestCommissionSplit:
    """Commission and net always add up to gross."""

    @pytest.mark.unit
    def test_round_numbers(self) -> None:
        """1000.00 at 10% splits into 100.00 and 900.00."""
        assert compute_split(Decimal("1000.00"), Decimal("10.00")) == (
            Decimal("100.00"),
            Decimal("900.00"),
        )

    @pytest.mark.unit
    def test_half_cent_rounds_up(self) -> None:
        """Commission is rounded half-up to the cent."""
        commission, net = compute_split("0.05", "10")

        assert commission == Decimal("0.01")
        assert net == Decimal("0.04")

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "gross, rate",
        [
            ("333.33", "12.5"),
            ("0.01", "99.99"),
            ("1234567.89", "7.25"),
            ("0.00", "10"),
            ("100.00", "0"),
            ("100.00", "100"),
        ],
    )
    def test_split_reconciles(self, gross: str, rate: str) -> None:
        """commission + net == gross for awkward amounts and rates."""
        commission, net = compute_split(gross, rate)

        assert commission + net == Decimal(gross)
        assert commission == commission.quantize(Decimal("0.01"))

    @pytest.mark.unit
    def test_assert_split_detects_drift(self) -> None:
        """A one-cent discrepancy is a violation."""
        with pytest.raises(FinancialInvariantViolation):
            assert_split(Decimal("100.00"), Decimal("10.00"), Decimal("89.99"))


class TestAmounts:
    """Amount coercion and minor-unit conversion."""

    @pytest.mark.unit
    def test_float_rejected(self) -> None:
        """Floats never enter the arithmetic."""
        with pytest.raises(FinancialInvariantViolation, match="Float"):
            to_amount(10.1)

    @pytest.mark.unit
    def test_sub_cent_rejected(self) -> None:
        """Amounts carry at most two decimal places."""
        with pytest.raises(FinancialInvariantViolation, match="sub-cent"):
            to_amount("1.005")

    @pytest.mark.unit
    def test_minor_units(self) -> None:
        """900.00 rupees is 90000 paise."""
        assert to_minor_units(Decimal("900.00")) == 90000
        assert to_minor_units("0.07") == 7
        assert isinstance(to_minor_units(Decimal("12.30")), int)
