"""
Minor/major unit conversion.

The gateway speaks integers in the currency's minor unit (cents); the ledger
stores Decimal major units. Every crossing of that boundary goes through here.
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from payment_ledger.errors import InvalidRequestError

# Currencies the gateway does not scale by 100
ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
        "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
    }
)

CENT = Decimal("0.01")


def _exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def to_decimal(amount: Union[Decimal, int, float, str]) -> Decimal:
    """Coerce an amount to Decimal without binary float artefacts."""
    if isinstance(amount, Decimal):
        return amount
    try:
        return Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise InvalidRequestError(f"Invalid amount: {amount!r}") from e


def to_minor_units(amount: Union[Decimal, int, float, str], currency: str) -> int:
    """
    Convert a major-unit amount to the gateway's integer representation.

    Rounds half-up to the nearest minor unit: 150.005 USD -> 15001.
    """
    value = to_decimal(amount)
    scale = Decimal(10) ** _exponent(currency)
    return int((value * scale).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, currency: str) -> Decimal:
    """Convert a gateway integer amount back to Decimal major units."""
    exponent = _exponent(currency)
    value = Decimal(int(amount)) / (Decimal(10) ** exponent)
    quantum = Decimal("1") if exponent == 0 else CENT
    return value.quantize(quantum, rounding=ROUND_HALF_UP)


def quantize(amount: Union[Decimal, int, float, str]) -> Decimal:
    """Round a major-unit amount to cents."""
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)
