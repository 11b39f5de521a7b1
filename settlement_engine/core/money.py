"""
Exact money arithmetic for settlement amounts.

Amounts are Decimal major units with two decimal places everywhere inside
the engine. Only the gateway boundary uses integer minor units.
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Tuple, Union

from .exceptions import FinancialInvariantViolation

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

Amount = Union[Decimal, int, str]


def to_amount(value: Amount) -> Decimal:
    """
    Coerce a value to a two-decimal Decimal without losing precision.

    Floats are rejected: they are the source of the drift this module exists
    to prevent.
    """
    if isinstance(value, float):
        raise FinancialInvariantViolation(f"Float amount {value!r} is not allowed")
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError):
        raise FinancialInvariantViolation(f"Invalid amount: {value!r}")
    if amount != amount.quantize(CENT):
        raise FinancialInvariantViolation(f"Amount {amount} has sub-cent precision")
    return amount.quantize(CENT)


def compute_split(gross: Amount, commission_rate: Amount) -> Tuple[Decimal, Decimal]:
    """
    Split a gross amount into (commission, net).

    Commission is rounded half-up to the cent; net is derived from it so
    that commission + net == gross exactly.

    Example: compute_split("1000.00", "10") == (Decimal("100.00"), Decimal("900.00"))
    """
    gross_amount = to_amount(gross)
    rate = Decimal(commission_rate)
    commission = (gross_amount * rate / HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)
    net = gross_amount - commission
    assert_split(gross_amount, commission, net)
    return commission, net


def assert_split(gross: Decimal, commission: Decimal, net: Decimal) -> None:
    """
    Fail loudly when commission and net do not add up to gross.

    Raises:
        FinancialInvariantViolation: If the amounts do not reconcile to the cent
    """
    if Decimal(commission) + Decimal(net) != Decimal(gross):
        raise FinancialInvariantViolation(
            f"commission {commission} + net {net} != gross {gross}",
            gross=str(gross),
            commission=str(commission),
            net=str(net),
        )


def to_minor_units(amount: Amount) -> int:
    """
    Convert a major-unit amount to integer minor units (e.g. paise).

    Raises:
        FinancialInvariantViolation: If the amount is not representable exactly
    """
    major = to_amount(amount)
    minor = major * HUNDRED
    if minor != minor.to_integral_value():
        raise FinancialInvariantViolation(f"Amount {major} is not a whole number of minor units")
    return int(minor)
