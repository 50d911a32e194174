"""ExchangeService — books the reverse pickup for an exchange.

The courier is called outside any Unit of Work. A courier failure is logged
and the exchange stays REQUESTED so pickup can be retried.
"""

import structlog
from protean.exceptions import ValidationError
from protean.utils.globals import current_domain

from commerce.checkout.coordinator import dispatch
from commerce.courier import get_courier
from commerce.courier.port import Courier, CourierError, PickupRequest
from commerce.exchanges.exchange_request import ExchangeRequest, ExchangeStatus
from commerce.exchanges.workflow import RecordExchangePickup
from commerce.ordering.order import Order

logger = structlog.get_logger(__name__)


class ExchangeService:
    def __init__(self, courier: Courier | None = None) -> None:
        self._courier = courier

    @property
    def courier(self) -> Courier:
        return self._courier or get_courier()

    def schedule_pickup(self, exchange_id) -> dict:
        exchange = current_domain.repository_for(ExchangeRequest).get(exchange_id)
        if exchange.current_status != ExchangeStatus.REQUESTED:
            raise ValidationError({"status": [f"Pickup cannot be scheduled in status {exchange.status}"]})

        order = current_domain.repository_for(Order).get(exchange.order_id)
        item = order.item(exchange.item_id)
        try:
            pickup = self.courier.schedule_pickup(
                PickupRequest(
                    reference_id=str(exchange.id),
                    order_id=str(order.id),
                    user_id=str(exchange.user_id),
                    address=order.address(),
                    items=[{"variant_id": str(item.variant_id), "sku": item.sku, "quantity": exchange.quantity}],
                )
            )
        except CourierError as exc:
            logger.warning("Exchange pickup scheduling failed", exchange_id=str(exchange_id), error=str(exc))
            return {"exchange_id": str(exchange_id), "status": exchange.status, "pickup": None}

        dispatch(
            RecordExchangePickup(
                exchange_id=exchange_id,
                pickup_id=pickup.pickup_id,
                carrier=pickup.carrier,
                tracking_id=pickup.tracking_id,
                scheduled_at=pickup.scheduled_at,
            )
        )
        return {
            "exchange_id": str(exchange_id),
            "status": ExchangeStatus.PICKUP_SCHEDULED.value,
            "pickup": {"pickup_id": pickup.pickup_id, "scheduled_at": pickup.scheduled_at.isoformat()},
        }
