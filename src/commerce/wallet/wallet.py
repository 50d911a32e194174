"""Wallet (CQRS) and its append-only WalletTransaction ledger.

`Wallet.balance` is the running total; every change to it is paired with a
WalletTransaction row written in the same Unit of Work. Balance never goes
negative: `withdraw` refuses instead.
"""

from enum import Enum
from uuid import NAMESPACE_URL, uuid5

from protean import invariant
from protean.exceptions import ValidationError
from protean.fields import DateTime, Float, Identifier, String

from commerce.domain import commerce
from commerce.errors import InvalidStateTransition
from commerce.utils.clock import utcnow


class TransactionType(Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class TransactionStatus(Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    REJECTED = "rejected"


class TransactionSource(Enum):
    ORDER = "order"
    REFUND = "refund"
    EXCHANGE_HOLD = "exchange_hold"
    EXCHANGE_HOLD_REFUND = "exchange_hold_refund"
    EXCHANGE_CREDIT = "exchange_credit"
    RETURN_REFUND = "return_refund"
    ADJUSTMENT = "adjustment"


def wallet_id_for(user_id) -> str:
    """One wallet per user: racing first credits resolve to the same row."""
    return str(uuid5(NAMESPACE_URL, f"commerce:wallet:{user_id}"))


@commerce.aggregate
class Wallet:
    user_id = Identifier(required=True, unique=True)
    balance = Float(default=0.0)
    currency = String(max_length=3, default="INR")
    created_at = DateTime()
    updated_at = DateTime()

    @invariant.post
    def balance_cannot_be_negative(self):
        if self.balance is not None and self.balance < 0:
            raise ValidationError({"balance": ["Wallet balance cannot be negative"]})

    @classmethod
    def open(cls, user_id, currency="INR"):
        now = utcnow()
        return cls(
            id=wallet_id_for(user_id), user_id=user_id, balance=0.0, currency=currency, created_at=now, updated_at=now
        )

    def withdraw(self, amount: float) -> bool:
        """Debit `amount` only if the balance covers it."""
        if amount <= 0:
            raise ValidationError({"amount": ["Amount must be positive"]})
        if round(self.balance - amount, 2) < 0:
            return False
        self.balance = round(self.balance - amount, 2)
        self.updated_at = utcnow()
        return True

    def deposit(self, amount: float) -> None:
        if amount <= 0:
            raise ValidationError({"amount": ["Amount must be positive"]})
        self.balance = round(self.balance + amount, 2)
        self.updated_at = utcnow()


@commerce.aggregate
class WalletTransaction:
    user_id = Identifier(required=True)
    entry_type = String(choices=TransactionType, required=True)
    amount = Float(required=True, min_value=0.0)
    currency = String(max_length=3, default="INR")
    status = String(choices=TransactionStatus, default=TransactionStatus.AVAILABLE.value)
    source = String(choices=TransactionSource, required=True)
    ref_id = Identifier()
    note = String(max_length=500)
    balance_after = Float()
    created_at = DateTime()
    settled_at = DateTime()

    @classmethod
    def record(cls, user_id, entry_type, amount, source, ref_id=None, note=None, status=None, balance_after=None):
        return cls(
            user_id=user_id,
            entry_type=entry_type,
            amount=round(amount, 2),
            source=source,
            ref_id=ref_id,
            note=note,
            status=status or TransactionStatus.AVAILABLE.value,
            balance_after=balance_after,
            created_at=utcnow(),
        )

    def _assert_pending(self, target: TransactionStatus) -> None:
        if self.status != TransactionStatus.PENDING.value:
            raise InvalidStateTransition("wallet transaction", self.status, target.value)

    def settle(self) -> None:
        self._assert_pending(TransactionStatus.AVAILABLE)
        self.status = TransactionStatus.AVAILABLE.value
        self.settled_at = utcnow()

    def reject(self) -> None:
        self._assert_pending(TransactionStatus.REJECTED)
        self.status = TransactionStatus.REJECTED.value
        self.settled_at = utcnow()
