"""Wallet ledger service — every balance movement paired with a ledger row.

All functions run inside the caller's Unit of Work.

    hold      debit now, row `pending` until finalized or released
    finalize  pending -> available (irreversible)
    release   pending -> rejected, plus a matching credit row
    debit     direct debit, row `available`
    credit    direct credit, row `available`
"""

import structlog
from protean.utils.globals import current_domain

from commerce.errors import InsufficientWalletBalance
from commerce.ledger.primitives import credit_balance, debit_balance, wallet_for
from commerce.wallet.wallet import (
    TransactionSource,
    TransactionStatus,
    TransactionType,
    WalletTransaction,
)

logger = structlog.get_logger(__name__)


def balance_of(user_id) -> float:
    wallet = wallet_for(user_id)
    return wallet.balance if wallet else 0.0


def _debit(user_id, amount, ref_id, source, status, note):
    amount = round(amount, 2)
    wallet = debit_balance(user_id, amount)
    if wallet is None:
        raise InsufficientWalletBalance(user_id, available=balance_of(user_id), required=amount)

    transaction = WalletTransaction.record(
        user_id=user_id,
        entry_type=TransactionType.DEBIT.value,
        amount=amount,
        source=source,
        ref_id=ref_id,
        note=note,
        status=status,
        balance_after=wallet.balance,
    )
    current_domain.repository_for(WalletTransaction).add(transaction)
    return transaction


def hold(user_id, amount: float, ref_id, note: str | None = None) -> WalletTransaction:
    """Earmark funds: the balance drops now, the row stays pending."""
    transaction = _debit(
        user_id,
        amount,
        ref_id,
        source=TransactionSource.EXCHANGE_HOLD.value,
        status=TransactionStatus.PENDING.value,
        note=note or "Wallet hold",
    )
    logger.info("Wallet funds held", user_id=str(user_id), amount=amount, transaction_id=str(transaction.id))
    return transaction


def finalize(transaction_id) -> WalletTransaction:
    repo = current_domain.repository_for(WalletTransaction)
    transaction = repo.get(transaction_id)
    transaction.settle()
    repo.add(transaction)
    logger.info("Wallet hold finalized", transaction_id=str(transaction_id))
    return transaction


def release(transaction_id, note: str | None = None) -> WalletTransaction:
    """Cancel a pending hold and restore the balance. Returns the credit row."""
    repo = current_domain.repository_for(WalletTransaction)
    held = repo.get(transaction_id)
    held.reject()
    repo.add(held)

    refund = credit(
        held.user_id,
        held.amount,
        ref_id=held.ref_id,
        source=TransactionSource.EXCHANGE_HOLD_REFUND.value,
        note=note or f"Release of hold {transaction_id}",
    )
    logger.info("Wallet hold released", transaction_id=str(transaction_id), amount=held.amount)
    return refund


def debit(user_id, amount: float, ref_id, source=TransactionSource.ORDER.value, note=None) -> WalletTransaction:
    return _debit(
        user_id,
        amount,
        ref_id,
        source=source,
        status=TransactionStatus.AVAILABLE.value,
        note=note,
    )


def credit(user_id, amount: float, ref_id, source=TransactionSource.REFUND.value, note=None) -> WalletTransaction:
    amount = round(amount, 2)
    wallet = credit_balance(user_id, amount)
    transaction = WalletTransaction.record(
        user_id=user_id,
        entry_type=TransactionType.CREDIT.value,
        amount=amount,
        source=source,
        ref_id=ref_id,
        note=note,
        balance_after=wallet.balance,
    )
    current_domain.repository_for(WalletTransaction).add(transaction)
    return transaction
