"""PaymentSession aggregate — one logical "pay for this order" interaction.

A session survives client retries (same opaque `session_id`, bumped
`retry_count`) and carries the wallet share that will be debited only when
the gateway confirms. At most one session per order is ACTIVE; the check is
made under the per-order lock inside InitiatePayment.

    ACTIVE → COMPLETED | FAILED | EXPIRED
"""

import secrets
from datetime import datetime, timedelta
from enum import Enum

from protean.fields import DateTime, Float, Identifier, Integer, String
from protean.utils.globals import current_domain

from commerce.domain import commerce
from commerce.errors import InvalidStateTransition
from commerce.utils.clock import as_utc, utcnow


class SessionStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


@commerce.aggregate
class PaymentSession:
    session_id = String(required=True, max_length=64)
    user_id = Identifier(required=True)
    order_id = Identifier(required=True)
    payment_method = String(required=True, max_length=20)
    wallet_amount = Float(default=0.0)
    gateway_amount = Float(default=0.0)
    gateway = String(max_length=20)
    gateway_order_id = String(max_length=255)
    payment_id = Identifier()
    coupon_usage_id = Identifier()
    idempotency_key = String(max_length=255)
    status = String(choices=SessionStatus, default=SessionStatus.ACTIVE.value)
    retry_count = Integer(default=0)
    failure_reason = String(max_length=500)
    created_at = DateTime()
    expires_at = DateTime()
    closed_at = DateTime()

    @classmethod
    def open(
        cls,
        order_id,
        user_id,
        payment_method,
        ttl_minutes,
        wallet_amount=0.0,
        gateway_amount=0.0,
        idempotency_key=None,
        coupon_usage_id=None,
    ):
        now = utcnow()
        return cls(
            session_id=f"ps_{secrets.token_urlsafe(24)}",
            user_id=user_id,
            order_id=order_id,
            payment_method=payment_method,
            wallet_amount=round(wallet_amount, 2),
            gateway_amount=round(gateway_amount, 2),
            idempotency_key=idempotency_key,
            coupon_usage_id=coupon_usage_id,
            status=SessionStatus.ACTIVE.value,
            retry_count=0,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE.value

    def is_stale(self, as_of: datetime | None = None) -> bool:
        return as_utc(self.expires_at) < as_utc(as_of or utcnow())

    def record_retry(self) -> None:
        self.retry_count = (self.retry_count or 0) + 1

    def attach_gateway_order(self, gateway, gateway_order_id) -> None:
        self.gateway = gateway
        self.gateway_order_id = gateway_order_id

    def _close(self, target: SessionStatus, reason: str | None = None) -> None:
        if not self.is_active:
            raise InvalidStateTransition("payment session", self.status, target.value)
        self.status = target.value
        self.failure_reason = reason
        self.closed_at = utcnow()

    def complete(self) -> None:
        self._close(SessionStatus.COMPLETED)

    def fail(self, reason: str) -> None:
        self._close(SessionStatus.FAILED, reason)

    def expire(self, reason: str = "session_expired") -> None:
        self._close(SessionStatus.EXPIRED, reason)


def session_by_token(session_id) -> PaymentSession | None:
    sessions = (
        current_domain.repository_for(PaymentSession)._dao.query.filter(session_id=str(session_id)).all().items
    )
    return sessions[0] if sessions else None


def sessions_for_order(order_id, status: SessionStatus | None = None) -> list[PaymentSession]:
    query = current_domain.repository_for(PaymentSession)._dao.query.filter(order_id=str(order_id))
    if status is not None:
        query = query.filter(status=status.value)
    return query.all().items


def active_session_for(order_id) -> PaymentSession | None:
    active = sessions_for_order(order_id, SessionStatus.ACTIVE)
    return active[0] if active else None
