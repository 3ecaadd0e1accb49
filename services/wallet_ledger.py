"""
Wallet ledger
The only component that creates wallet mutations. Every change is an atomic
balance update paired with an immutable transaction record.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Union

from errors import InsufficientFunds, LedgerError, ValidationError
from models import TransactionType, WalletAccount, WalletEntry, WalletTransaction
from pricing_utils import format_money, to_money
from storage.base import Store

logger = logging.getLogger(__name__)

DEFAULT_MAX_AMOUNT = Decimal('1000000.00')

Amount = Union[str, int, float, Decimal]


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of a debit or credit: a transaction or the ledger error that prevented it"""
    transaction: Optional[WalletTransaction] = None
    error: Optional[LedgerError] = None
    duplicate: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> WalletTransaction:
        if self.error is not None:
            raise self.error
        assert self.transaction is not None
        return self.transaction


class WalletLedger:

    def __init__(self, store: Store, currency: str = 'INR', max_amount: Decimal = DEFAULT_MAX_AMOUNT):
        self.store = store
        self.currency = currency.upper()
        self.max_amount = max_amount

    def _validate_amount(self, amount: Amount) -> Decimal:
        value = to_money(amount)
        if value <= 0:
            raise ValidationError(f"Amount must be positive, got {value}")
        if value > self.max_amount:
            raise ValidationError(f"Amount {value} exceeds maximum {self.max_amount}")
        return value

    def debit_entry(self, owner_id: str, amount: Amount, reason: str,
                    related_job_id: Optional[str] = None) -> WalletEntry:
        """Validated debit entry for a worker to commit together with its job outcome"""
        if not owner_id:
            raise ValidationError("owner_id is required")
        return WalletEntry(
            owner_id=owner_id,
            transaction_type=TransactionType.DEBIT,
            amount=self._validate_amount(amount),
            reason=reason,
            related_job_id=related_job_id,
        )

    def credit_entry(self, owner_id: str, amount: Amount, reason: str,
                     related_payment_id: Optional[str] = None,
                     related_job_id: Optional[str] = None) -> WalletEntry:
        if not owner_id:
            raise ValidationError("owner_id is required")
        return WalletEntry(
            owner_id=owner_id,
            transaction_type=TransactionType.CREDIT,
            amount=self._validate_amount(amount),
            reason=reason,
            related_job_id=related_job_id,
            related_payment_id=related_payment_id,
        )

    async def open_account(self, owner_id: str) -> WalletAccount:
        return await self.store.open_account(owner_id, self.currency)

    async def debit(self, owner_id: str, amount: Amount, reason: str,
                    related_job_id: Optional[str] = None) -> LedgerResult:
        """
        Atomically debit the wallet

        The balance check and the debit happen in the same store operation, so
        two concurrent debits can never both pass against the same balance.
        """
        entry = self.debit_entry(owner_id, amount, reason, related_job_id)
        try:
            txn, _ = await self.store.apply_wallet_entry(entry)
        except LedgerError as e:
            if isinstance(e, InsufficientFunds):
                logger.warning(f"💸 Insufficient funds for {owner_id}: balance "
                               f"{format_money(e.balance, self.currency)}, required "
                               f"{format_money(e.amount, self.currency)}")
            else:
                logger.warning(f"⚠️ Debit failed for {owner_id}: {e}")
            return LedgerResult(error=e)

        logger.info(f"💳 Debited {format_money(txn.amount, self.currency)} from {owner_id} "
                    f"({reason}) - balance {format_money(txn.balance_after, self.currency)}")
        return LedgerResult(transaction=txn)

    async def credit(self, owner_id: str, amount: Amount, reason: str,
                     related_payment_id: Optional[str] = None) -> LedgerResult:
        """Atomically credit the wallet; a replayed payment id returns the original transaction"""
        entry = self.credit_entry(owner_id, amount, reason, related_payment_id=related_payment_id)
        try:
            txn, duplicate = await self.store.apply_wallet_entry(entry)
        except LedgerError as e:
            logger.warning(f"⚠️ Credit failed for {owner_id}: {e}")
            return LedgerResult(error=e)

        if duplicate:
            logger.info(f"🔁 Payment {related_payment_id} already credited (transaction {txn.id})")
        else:
            logger.info(f"💰 Credited {format_money(txn.amount, self.currency)} to {owner_id} "
                        f"({reason}) - balance {format_money(txn.balance_after, self.currency)}")
        return LedgerResult(transaction=txn, duplicate=duplicate)

    async def balance(self, owner_id: str) -> Decimal:
        account = await self.store.get_account(owner_id)
        return account.balance if account else Decimal('0.00')

    async def transactions(self, owner_id: str) -> List[WalletTransaction]:
        return await self.store.list_transactions(owner_id)
