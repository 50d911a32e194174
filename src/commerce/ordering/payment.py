"""Payment aggregate — one record per payment attempt or chunk.

A wallet share and a gateway share of the same checkout are separate
records. Statuses follow an explicit transition table:

    created → attempted | success | failed | cancelled
    attempted → success | failed | cancelled
    success → refunded | partially_refunded
    failed → created | cancelled
    cod_pending → success | cancelled
    partially_refunded → refunded
"""

from enum import Enum

from protean import atomic_change, invariant
from protean.exceptions import ValidationError
from protean.fields import DateTime, Float, Identifier, String
from protean.utils.globals import current_domain

from commerce.domain import commerce
from commerce.errors import InvalidStateTransition
from commerce.ordering.events import PaymentFailed, PaymentRefunded, PaymentSucceeded
from commerce.utils.clock import utcnow


class PaymentStatus(Enum):
    CREATED = "created"
    ATTEMPTED = "attempted"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    COD_PENDING = "cod_pending"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentMethod(Enum):
    COD = "cod"
    WALLET = "wallet"
    RAZORPAY = "razorpay"
    PAYU = "payu"


GATEWAY_METHODS = {PaymentMethod.RAZORPAY.value, PaymentMethod.PAYU.value}

_VALID_TRANSITIONS = {
    PaymentStatus.CREATED: {
        PaymentStatus.ATTEMPTED,
        PaymentStatus.SUCCESS,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.ATTEMPTED: {PaymentStatus.SUCCESS, PaymentStatus.FAILED, PaymentStatus.CANCELLED},
    PaymentStatus.SUCCESS: {PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED},
    PaymentStatus.FAILED: {PaymentStatus.CREATED, PaymentStatus.CANCELLED},
    PaymentStatus.COD_PENDING: {PaymentStatus.SUCCESS, PaymentStatus.CANCELLED},
    PaymentStatus.PARTIALLY_REFUNDED: {PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: set(),
    PaymentStatus.CANCELLED: set(),
}

# Payments whose money has been (or is assumed to be) collected
SETTLED_STATUSES = {PaymentStatus.SUCCESS.value, PaymentStatus.COD_PENDING.value}


@commerce.aggregate
class Payment:
    order_id = Identifier(required=True)
    user_id = Identifier(required=True)
    method = String(choices=PaymentMethod, required=True)
    amount = Float(required=True, min_value=0.0)
    currency = String(max_length=3, default="INR")
    gateway = String(max_length=20)
    gateway_order_id = String(max_length=255)
    gateway_payment_id = String(max_length=255)
    wallet_transaction_id = Identifier()
    status = String(choices=PaymentStatus, default=PaymentStatus.CREATED.value)
    idempotency_key = String(max_length=255)
    failure_reason = String(max_length=500)
    refunded_amount = Float(default=0.0)
    created_at = DateTime()
    updated_at = DateTime()

    @invariant.post
    def refund_cannot_exceed_amount(self):
        if (self.refunded_amount or 0.0) - self.amount > 0.005:
            raise ValidationError({"refunded_amount": ["Refunded amount cannot exceed the payment amount"]})

    @classmethod
    def create(
        cls,
        order_id,
        user_id,
        method,
        amount,
        currency="INR",
        status=PaymentStatus.CREATED.value,
        idempotency_key=None,
        wallet_transaction_id=None,
    ):
        now = utcnow()
        return cls(
            order_id=order_id,
            user_id=user_id,
            method=method,
            amount=round(amount, 2),
            currency=currency,
            status=status,
            idempotency_key=idempotency_key,
            wallet_transaction_id=wallet_transaction_id,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_gateway(self) -> bool:
        return self.method in GATEWAY_METHODS

    def _transition(self, target: PaymentStatus) -> None:
        current = PaymentStatus(self.status)
        if target not in _VALID_TRANSITIONS.get(current, set()):
            raise InvalidStateTransition("payment", current.value, target.value)
        self.status = target.value
        self.updated_at = utcnow()

    def mark_attempted(self, gateway_order_id, gateway=None) -> None:
        with atomic_change(self):
            self._transition(PaymentStatus.ATTEMPTED)
            self.gateway_order_id = gateway_order_id
            if gateway:
                self.gateway = gateway

    def succeed(self, gateway_payment_id=None, wallet_transaction_id=None) -> None:
        with atomic_change(self):
            self._transition(PaymentStatus.SUCCESS)
            if gateway_payment_id:
                self.gateway_payment_id = gateway_payment_id
            if wallet_transaction_id:
                self.wallet_transaction_id = wallet_transaction_id

        self.raise_(
            PaymentSucceeded(
                payment_id=str(self.id),
                order_id=str(self.order_id),
                method=self.method,
                amount=self.amount,
                gateway_payment_id=self.gateway_payment_id,
                succeeded_at=self.updated_at,
            )
        )

    def fail(self, reason: str, gateway_payment_id=None) -> None:
        with atomic_change(self):
            self._transition(PaymentStatus.FAILED)
            self.failure_reason = reason
            if gateway_payment_id:
                self.gateway_payment_id = gateway_payment_id

        self.raise_(
            PaymentFailed(
                payment_id=str(self.id),
                order_id=str(self.order_id),
                reason=reason,
                failed_at=self.updated_at,
            )
        )

    def cancel(self) -> None:
        self._transition(PaymentStatus.CANCELLED)

    def refund(self, amount: float | None = None) -> None:
        """Record a full or partial refund of a successful payment."""
        amount = round(self.amount if amount is None else amount, 2)
        refunded = round((self.refunded_amount or 0.0) + amount, 2)
        target = PaymentStatus.REFUNDED if refunded >= self.amount - 0.005 else PaymentStatus.PARTIALLY_REFUNDED

        with atomic_change(self):
            if PaymentStatus(self.status) != target:
                self._transition(target)
            self.refunded_amount = min(refunded, self.amount)

        self.raise_(
            PaymentRefunded(
                payment_id=str(self.id),
                order_id=str(self.order_id),
                amount=amount,
                refunded_at=self.updated_at,
            )
        )


def payments_for_order(order_id) -> list[Payment]:
    return current_domain.repository_for(Payment)._dao.query.filter(order_id=str(order_id)).all().items


def find_gateway_payment(gateway_order_id=None, gateway_payment_id=None) -> Payment | None:
    repo = current_domain.repository_for(Payment)
    for field, value in (("gateway_order_id", gateway_order_id), ("gateway_payment_id", gateway_payment_id)):
        if not value:
            continue
        matches = repo._dao.query.filter(**{field: str(value)}).all().items
        if matches:
            return matches[0]
    return None
