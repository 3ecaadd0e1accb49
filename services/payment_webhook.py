"""
Payment gateway webhook handling
Turns a verified payment notification into exactly one wallet credit
"""

import logging
from typing import Any, Dict

from payment_validation import validate_payment_notification
from pricing_utils import format_money
from services.wallet_ledger import LedgerResult, WalletLedger

logger = logging.getLogger(__name__)


async def handle_payment_notification(ledger: WalletLedger, data: Dict[str, Any]) -> LedgerResult:
    """
    Credit the owner's wallet for a payment notification

    Re-delivered notifications return the original transaction with
    duplicate=True. Signature verification happens before this is called.

    Raises:
        ValidationError: malformed notification or currency mismatch
    """
    payment = validate_payment_notification(data, ledger.currency)
    logger.info(f"💰 Payment {payment['payment_id']} received: "
                f"{format_money(payment['amount'], payment['currency'])} for {payment['owner_id']}")

    await ledger.open_account(payment['owner_id'])
    return await ledger.credit(
        payment['owner_id'],
        payment['amount'],
        f"Wallet top-up (payment {payment['payment_id']})",
        related_payment_id=payment['payment_id'],
    )
