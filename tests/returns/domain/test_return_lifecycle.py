import pytest
from commerce.catalog.pricing import PricedLine
from commerce.courier.port import PickupResult
from commerce.errors import InvalidStateTransition
from commerce.ordering.order import Order
from commerce.returns.return_request import RefundRouting, ReturnRequest, ReturnStatus
from commerce.returns.workflow import compute_refund
from commerce.utils.clock import utcnow


def _request(quantity=1):
    return ReturnRequest.create(
        order_id="order-1", item_id="item-1", variant_id="var-1", user_id="user-1", quantity=quantity
    )


def _order(discount_shares=None):
    line = PricedLine(
        product_id="prod-1",
        variant_id="var-1",
        sku="SKU-1",
        title="Tee",
        quantity=2,
        unit_price=500.0,
        line_total=1000.0,
    )
    return Order.create(user_id="user-1", lines=[line], discount_shares=discount_shares)


class TestReturnStateMachine:
    def test_new_request_records_history(self):
        request = _request()
        assert request.current_status == ReturnStatus.REQUESTED
        assert [entry.to_status for entry in request.history] == ["requested"]

    def test_full_path(self):
        request = _request()
        request.transition(ReturnStatus.APPROVED, actor="admin")
        request.schedule_pickup(
            PickupResult(pickup_id="pk-1", scheduled_at=utcnow(), carrier="fake", tracking_id="T1")
        )
        request.mark_picked_up()
        request.receive("new", restocking_fee=0.0, amount=450.0, planned=RefundRouting.WALLET)
        request.complete_refund(RefundRouting.WALLET, {"wallet_credit": 450.0})
        request.transition(ReturnStatus.CLOSED)

        assert request.pickup_id == "pk-1"
        assert request.refund_amount == 450.0
        assert request.results == {"wallet_credit": 450.0}
        assert len(request.history) == 7

    def test_cannot_refund_before_receipt(self):
        request = _request()
        with pytest.raises(InvalidStateTransition):
            request.complete_refund(RefundRouting.WALLET, {})

    def test_cancelled_is_terminal(self):
        request = _request()
        request.transition(ReturnStatus.CANCELLED)
        with pytest.raises(InvalidStateTransition):
            request.transition(ReturnStatus.APPROVED)

    def test_rejected_can_only_close(self):
        request = _request()
        request.transition(ReturnStatus.REJECTED)
        with pytest.raises(InvalidStateTransition):
            request.transition(ReturnStatus.RECEIVED)
        request.transition(ReturnStatus.CLOSED)
        assert request.current_status == ReturnStatus.CLOSED


class TestComputeRefund:
    def test_uses_the_discounted_unit_price(self):
        order = _order(discount_shares=[100.0])
        assert compute_refund(order, order.items[0], 1) == 450.0

    def test_without_discount(self):
        order = _order()
        assert compute_refund(order, order.items[0], 2) == 1000.0

    def test_restocking_fee_is_deducted(self):
        order = _order(discount_shares=[100.0])
        assert compute_refund(order, order.items[0], 1, restocking_fee=50.0) == 400.0

    def test_never_negative(self):
        order = _order()
        assert compute_refund(order, order.items[0], 1, restocking_fee=900.0) == 0.0
