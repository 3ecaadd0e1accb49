"""
Payment validation utilities for gateway wallet top-ups
Simple validation functions for payment amounts and notification data
"""

import logging
from decimal import Decimal
from typing import Any, Dict

from errors import ValidationError
from pricing_utils import to_money

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ('payment_id', 'owner_id', 'amount', 'currency')


def validate_payment_amount(expected: Decimal, received: Decimal, tolerance: Decimal = Decimal('0.01')) -> bool:
    """
    Validate payment amount with tolerance

    Args:
        expected: Expected payment amount
        received: Received payment amount
        tolerance: Tolerance fraction (default 1%)

    Returns:
        bool: True if payment amount is valid
    """
    if expected <= 0 or received <= 0:
        return False
    diff = abs(expected - received) / expected
    return diff <= tolerance


def validate_payment_notification(payment_data: Dict[str, Any], wallet_currency: str) -> Dict[str, Any]:
    """
    Validate a verified gateway notification and normalize its fields

    Args:
        payment_data: Notification payload from the payment gateway
        wallet_currency: Currency the wallets are kept in

    Returns:
        dict with payment_id, owner_id, amount (Decimal) and currency

    Raises:
        ValidationError: missing fields, bad amount or currency mismatch
    """
    if not isinstance(payment_data, dict):
        raise ValidationError("Payment notification must be an object")

    for field in REQUIRED_FIELDS:
        if payment_data.get(field) in (None, ''):
            logger.warning(f"Missing required field: {field}")
            raise ValidationError(f"Payment notification missing field: {field}")

    amount = to_money(payment_data['amount'])
    if amount <= 0:
        logger.warning(f"Invalid amount: {amount}")
        raise ValidationError(f"Payment amount must be positive, got {amount}")

    currency = str(payment_data['currency']).upper()
    if currency != wallet_currency.upper():
        logger.warning(f"Currency mismatch: {currency} (wallet currency {wallet_currency})")
        raise ValidationError(f"Payment currency {currency} does not match wallet currency {wallet_currency}")

    expected = payment_data.get('expected_amount')
    if expected is not None and not validate_payment_amount(to_money(expected), amount):
        logger.warning(f"Amount {amount} outside tolerance of expected {expected}")
        raise ValidationError(f"Payment amount {amount} does not match expected {expected}")

    return {
        'payment_id': str(payment_data['payment_id']),
        'owner_id': str(payment_data['owner_id']),
        'amount': amount,
        'currency': currency,
    }
