"""
Monetary Amount Module

Fixed-precision Decimal handling for balances and operation amounts.
NEVER uses float for monetary values: floats are rejected at the boundary.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Union
import re

from .errors import InvalidArgument

# Set global decimal context for financial precision
getcontext().prec = 28

DEFAULT_PRECISION = 2

AmountLike = Union[Decimal, int, str]

ZERO = Decimal('0')

CURRENCY_SYMBOLS = "$€£¥"

GROUPED_NUMBER = re.compile(r'^[+-]?\d{1,3}(,\d{3})+(\.\d+)?$')


def _quantum(precision: int) -> Decimal:
    return Decimal('0.1') ** precision


def to_amount(value: AmountLike, precision: int = DEFAULT_PRECISION) -> Decimal:
    """
    Convert a caller-supplied value to a Decimal rounded to `precision` places

    Args:
        value: Decimal, int or numeric string
        precision: Number of decimal places to keep

    Returns:
        Properly rounded Decimal

    Raises:
        InvalidArgument: If the value is a float, bool, non-finite or unparsable
    """
    # bool is a subclass of int
    if isinstance(value, (bool, float)):
        raise InvalidArgument(
            f"Monetary amounts must be Decimal, int or str, got {type(value).__name__}"
        )

    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, int):
        amount = Decimal(value)
    elif isinstance(value, str):
        amount = decimal_from_string(value)
    else:
        raise InvalidArgument(f"Unsupported amount type: {type(value).__name__}")

    if not amount.is_finite():
        raise InvalidArgument(f"Amount must be finite, got {value!r}")

    try:
        return amount.quantize(_quantum(precision), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidArgument(f"Amount {value!r} exceeds the supported magnitude")


def to_positive_amount(value: AmountLike, precision: int = DEFAULT_PRECISION) -> Decimal:
    """Convert and require a strictly positive amount"""
    amount = to_amount(value, precision)
    if amount <= ZERO:
        raise InvalidArgument(f"Amount must be positive, got {amount}")
    return amount


def decimal_from_string(value: str) -> Decimal:
    """
    Parse a numeric string into a Decimal

    A single leading currency symbol and correctly grouped ``,`` thousands
    separators are tolerated; anything else must already be a plain number.

    Raises:
        InvalidArgument: If the string is not a number
    """
    if not value or not value.strip():
        raise InvalidArgument("Amount must be a non-empty string")

    text = value.strip()
    if text[0] in CURRENCY_SYMBOLS:
        text = text[1:].lstrip()
    if GROUPED_NUMBER.match(text):
        text = text.replace(',', '')

    try:
        return Decimal(text)
    except InvalidOperation:
        raise InvalidArgument(f"Cannot convert '{value}' to Decimal")


def format_amount(amount: Decimal, precision: int = DEFAULT_PRECISION) -> str:
    """Format for display"""
    return f"{amount:,.{precision}f}"
