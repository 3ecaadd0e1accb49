"""
Money utilities for wallet amounts and registrar prices
Fixed-point conversion and currency formatting
"""

import logging
from typing import Union
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from errors import ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')

CURRENCY_SYMBOLS = {
    'INR': '₹',
    'USD': '$',
    'EUR': '€',
    'GBP': '£',
}


def to_money(amount: Union[str, int, float, Decimal]) -> Decimal:
    """
    Convert an amount to a 2-decimal fixed-point Decimal

    Floats go through str() so 0.1 stays 0.10 instead of 0.1000000000000000055...

    Raises:
        ValidationError: amount is not a finite number
    """
    if isinstance(amount, bool):
        raise ValidationError(f"Invalid amount: {amount!r}")
    try:
        if isinstance(amount, float):
            decimal_amount = Decimal(str(amount))
        else:
            decimal_amount = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid amount: {amount!r}")

    if not decimal_amount.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}")

    return decimal_amount.quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(amount: Union[float, int, Decimal], currency: str = "INR", show_currency: bool = True) -> str:
    """
    Format monetary amount for display

    Args:
        amount: Amount to format
        currency: Currency code (default: INR)
        show_currency: Whether to show currency symbol

    Returns:
        str: Formatted money string, e.g. "₹1,000.00"
    """
    try:
        rounded_amount = to_money(amount)
    except ValidationError:
        logger.warning(f"Error formatting money: {amount!r}")
        return str(amount)

    formatted = f"{rounded_amount:,.2f}"
    if not show_currency:
        return formatted

    symbol = CURRENCY_SYMBOLS.get(currency.upper())
    if symbol is None:
        return f"{formatted} {currency.upper()}"
    return f"{symbol}{formatted}"
