"""ReturnService — sequences return commands around courier and gateway calls.

The courier and the gateway are called between Units of Work, never inside
one. A courier failure is logged and leaves the return approved; a gateway
refund failure falls back to a wallet credit. Either way the refund decision
taken by ReceiveReturn stands.
"""

import structlog
from protean.utils.globals import current_domain

from commerce.checkout.coordinator import dispatch
from commerce.courier import get_courier
from commerce.courier.port import Courier, CourierError, PickupRequest
from commerce.errors import ExternalGatewayError
from commerce.gateway import get_gateway
from commerce.gateway.port import PaymentGateway
from commerce.ordering.order import Order
from commerce.returns.return_request import ReturnRequest
from commerce.returns.workflow import (
    ApproveReturn,
    CompleteReturnRefund,
    ReceiveReturn,
    RecordReturnPickup,
)

logger = structlog.get_logger(__name__)


class ReturnService:
    def __init__(self, gateway: PaymentGateway | None = None, courier: Courier | None = None) -> None:
        self._gateway = gateway
        self._courier = courier

    @property
    def gateway(self) -> PaymentGateway:
        return self._gateway or get_gateway()

    def _gateway_named(self, name: str | None) -> PaymentGateway:
        active = self.gateway
        if not name or name == active.name:
            return active
        return get_gateway(name)

    @property
    def courier(self) -> Courier:
        return self._courier or get_courier()

    def approve(self, return_id, admin_id="admin", schedule_pickup=True) -> dict:
        approved = dispatch(ApproveReturn(return_id=return_id, admin_id=admin_id))
        result = {"return_id": str(return_id), "status": "approved", "pickup": None}
        if not schedule_pickup:
            return result

        request = current_domain.repository_for(ReturnRequest).get(return_id)
        order = current_domain.repository_for(Order).get(approved["order_id"])
        item = order.item(request.item_id)
        try:
            pickup = self.courier.schedule_pickup(
                PickupRequest(
                    reference_id=str(request.id),
                    order_id=str(order.id),
                    user_id=str(request.user_id),
                    address=order.address(),
                    items=[{"variant_id": str(item.variant_id), "sku": item.sku, "quantity": request.quantity}],
                )
            )
        except CourierError as exc:
            logger.warning("Return pickup scheduling failed", return_id=str(return_id), error=str(exc))
            return result

        dispatch(
            RecordReturnPickup(
                return_id=return_id,
                pickup_id=pickup.pickup_id,
                carrier=pickup.carrier,
                tracking_id=pickup.tracking_id,
                scheduled_at=pickup.scheduled_at,
            )
        )
        result.update(
            status="pickup_scheduled",
            pickup={"pickup_id": pickup.pickup_id, "scheduled_at": pickup.scheduled_at.isoformat()},
        )
        return result

    def receive_and_refund(
        self,
        return_id,
        condition="new",
        restocking_fee=0.0,
        refund_override=None,
        restock=None,
        admin_id="admin",
    ) -> dict:
        plan = dispatch(
            ReceiveReturn(
                return_id=return_id,
                condition=condition,
                restocking_fee=restocking_fee,
                refund_override=refund_override,
                restock=restock,
                admin_id=admin_id,
            )
        )
        if plan.get("replayed"):
            request = current_domain.repository_for(ReturnRequest).get(return_id)
            return {"return_id": str(return_id), "amount": request.refund_amount, **request.results}

        gateway_amount, refund_id, fallback = 0.0, None, False
        if plan.get("gateway_amount") and plan.get("gateway_payment_id"):
            try:
                refund = self._gateway_named(plan.get("gateway")).create_refund(
                    plan["gateway_payment_id"], plan["gateway_amount"], f"return {return_id}"
                )
            except ExternalGatewayError as exc:
                logger.warning("Gateway refund unreachable, crediting wallet", return_id=str(return_id), error=exc.message)
                fallback = True
            else:
                if refund.success:
                    gateway_amount, refund_id = plan["gateway_amount"], refund.refund_id
                else:
                    logger.warning(
                        "Gateway refund declined, crediting wallet",
                        return_id=str(return_id),
                        reason=refund.failure_reason,
                    )
                    fallback = True

        results = dispatch(
            CompleteReturnRefund(
                return_id=return_id,
                gateway_amount=gateway_amount,
                gateway_refund_id=refund_id,
                payment_id=plan.get("payment_id"),
                fallback_to_wallet=fallback,
            )
        )
        return {"return_id": str(return_id), "amount": plan["amount"], "planned": plan.get("planned"), **results}
