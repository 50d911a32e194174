"""Application tests for the return workflow, from request to refund."""

from datetime import timedelta

import pytest
from commerce.catalog.variant import Variant
from commerce.checkout.coordinator import PaymentCoordinator
from commerce.gateway import set_gateway
from commerce.gateway.fake_adapter import FakeGateway
from commerce.ordering.order import Order, OrderStatus
from commerce.ordering.payment import PaymentMethod, PaymentStatus, payments_for_order
from commerce.returns.return_request import RefundRouting, ReturnRequest, ReturnStatus
from commerce.returns.service import ReturnService
from commerce.returns.workflow import CancelReturn, CloseReturn, MarkReturnPickedUp, RejectReturn, RequestReturn
from commerce.utils.clock import utcnow
from commerce.wallet import ledger
from protean import current_domain
from protean.exceptions import ValidationError


def _request_return(order, quantity=1, user_id="user-1"):
    return current_domain.process(
        RequestReturn(
            order_id=order.id,
            item_id=order.items[0].id,
            user_id=user_id,
            quantity=quantity,
            reason="Too small",
        ),
        asynchronous=False,
    )


def _return(return_id):
    return current_domain.repository_for(ReturnRequest).get(return_id)


def _order(order_id):
    return current_domain.repository_for(Order).get(order_id)


@pytest.fixture
def gateway_order(make_variant, place_order, deliver, fund_wallet, fake_gateway):
    """A delivered razorpay order of 2 units at 500, optionally part-paid from the wallet."""

    def _build(wallet=0.0):
        if wallet:
            fund_wallet("user-1", wallet)
        variant = make_variant(price=500.0)
        order_id = place_order("user-1", [(variant, 2)])
        coordinator = PaymentCoordinator()
        started = coordinator.initiate(order_id, "user-1", "razorpay", use_wallet=bool(wallet))
        coordinator.verify(started["session_id"], "pay_1", started["gateway_order_id"], "test-signature")
        deliver(order_id)
        return _order(order_id)

    return _build


class TestRequestReturn:
    def test_request_moves_the_order(self, delivered_order):
        order, _ = delivered_order()

        return_id = _request_return(order)

        assert _return(return_id).status == ReturnStatus.REQUESTED.value
        assert _order(order.id).status == OrderStatus.RETURN_REQUESTED.value

    def test_only_delivered_orders(self, make_variant, place_order):
        variant = make_variant()
        order_id = place_order("user-1", [(variant, 1)])
        PaymentCoordinator().initiate(order_id, "user-1", "cod")

        with pytest.raises(ValidationError):
            _request_return(_order(order_id))

    def test_window_closes(self, delivered_order):
        order, _ = delivered_order()
        order.delivered_at = utcnow() - timedelta(days=8)
        current_domain.repository_for(Order).add(order)

        with pytest.raises(ValidationError):
            _request_return(_order(order.id))

    def test_open_requests_hold_their_units(self, delivered_order):
        order, _ = delivered_order()
        _request_return(order, quantity=2)

        with pytest.raises(ValidationError):
            _request_return(_order(order.id), quantity=1)

    def test_cancelled_request_frees_its_units(self, delivered_order):
        order, _ = delivered_order()
        return_id = _request_return(order, quantity=2)
        current_domain.process(CancelReturn(return_id=return_id, user_id="user-1"), asynchronous=False)

        again = _request_return(_order(order.id), quantity=2)

        assert again != return_id

    def test_only_the_owner_cancels(self, delivered_order):
        order, _ = delivered_order()
        return_id = _request_return(order)

        with pytest.raises(ValidationError):
            current_domain.process(CancelReturn(return_id=return_id, user_id="user-2"), asynchronous=False)

    def test_other_users_cannot_request(self, delivered_order):
        order, _ = delivered_order()
        with pytest.raises(ValidationError):
            _request_return(order, user_id="user-2")


class TestApproveReturn:
    def test_approval_books_a_pickup(self, delivered_order, fake_courier):
        order, _ = delivered_order()
        return_id = _request_return(order)

        result = ReturnService().approve(return_id)

        assert result["status"] == "pickup_scheduled"
        request = _return(return_id)
        assert request.status == ReturnStatus.PICKUP_SCHEDULED.value
        assert request.pickup_id == result["pickup"]["pickup_id"]
        assert fake_courier.requests[0].reference_id == str(return_id)

    def test_courier_failure_leaves_the_return_approved(self, delivered_order, fake_courier):
        fake_courier.configure(should_succeed=False)
        order, _ = delivered_order()
        return_id = _request_return(order)

        result = ReturnService().approve(return_id)

        assert result == {"return_id": str(return_id), "status": "approved", "pickup": None}
        assert _return(return_id).status == ReturnStatus.APPROVED.value

    def test_rejected_return_can_be_closed(self, delivered_order):
        order, _ = delivered_order()
        return_id = _request_return(order)

        current_domain.process(RejectReturn(return_id=return_id, reason="Worn"), asynchronous=False)
        current_domain.process(CloseReturn(return_id=return_id), asynchronous=False)

        assert _return(return_id).status == ReturnStatus.CLOSED.value


class TestReceiveAndRefund:
    def test_partial_return_of_a_discounted_cod_line(self, delivered_order, fake_courier):
        order, variant = delivered_order()
        return_id = _request_return(order, quantity=1)
        ReturnService().approve(return_id)
        current_domain.process(MarkReturnPickedUp(return_id=return_id), asynchronous=False)

        result = ReturnService().receive_and_refund(return_id)

        assert result["amount"] == 450.0
        assert result["planned"] == RefundRouting.WALLET.value
        assert result["wallet_credit"] == 450.0
        assert ledger.balance_of("user-1") == 450.0

        request = _return(return_id)
        assert request.status == ReturnStatus.REFUNDED.value
        assert request.actual_routing == RefundRouting.WALLET.value

        updated = _order(order.id)
        assert updated.items[0].returned_quantity == 1
        assert updated.status == OrderStatus.RETURN_REQUESTED.value
        assert current_domain.repository_for(Variant).get(variant.id).stock == 9

    def test_full_return_refunds_the_order(self, delivered_order):
        order, _ = delivered_order()
        return_id = _request_return(order, quantity=2)

        result = ReturnService().receive_and_refund(return_id)

        assert result["amount"] == 900.0
        assert _order(order.id).status == OrderStatus.REFUNDED.value

    def test_restocking_fee_and_no_restock(self, delivered_order):
        order, variant = delivered_order()
        return_id = _request_return(order)

        result = ReturnService().receive_and_refund(return_id, condition="opened", restocking_fee=50.0, restock=False)

        assert result["amount"] == 400.0
        assert _return(return_id).condition == "opened"
        assert current_domain.repository_for(Variant).get(variant.id).stock == 8

    def test_refund_override(self, delivered_order):
        order, _ = delivered_order()
        return_id = _request_return(order)

        result = ReturnService().receive_and_refund(return_id, refund_override=100.0)

        assert result["amount"] == 100.0
        assert ledger.balance_of("user-1") == 100.0

    def test_receiving_twice_does_not_pay_twice(self, delivered_order):
        order, _ = delivered_order()
        return_id = _request_return(order)
        ReturnService().receive_and_refund(return_id)

        again = ReturnService().receive_and_refund(return_id)

        assert again["amount"] == 450.0
        assert ledger.balance_of("user-1") == 450.0
        assert _order(order.id).items[0].returned_quantity == 1

    def test_cancelled_return_cannot_be_received(self, delivered_order):
        order, _ = delivered_order()
        return_id = _request_return(order)
        current_domain.process(CancelReturn(return_id=return_id, user_id="user-1"), asynchronous=False)

        with pytest.raises(ValidationError):
            ReturnService().receive_and_refund(return_id)


class TestRefundRouting:
    def test_gateway_payment_is_refunded_through_the_gateway(self, gateway_order, fake_gateway):
        order = gateway_order()
        return_id = _request_return(order)

        result = ReturnService().receive_and_refund(return_id)

        assert result["planned"] == RefundRouting.GATEWAY.value
        assert result["gateway_refund"]["amount"] == 500.0
        assert result["wallet_credit"] == 0.0
        assert fake_gateway.calls_to("create_refund")[0]["gateway_payment_id"] == "pay_1"

        payment = payments_for_order(order.id)[0]
        assert payment.status == PaymentStatus.PARTIALLY_REFUNDED.value
        assert payment.refunded_amount == 500.0
        assert ledger.balance_of("user-1") == 0.0

    def test_declined_gateway_refund_falls_back_to_the_wallet(self, gateway_order, fake_gateway):
        order = gateway_order()
        return_id = _request_return(order)
        fake_gateway.configure(refund_should_succeed=False)

        result = ReturnService().receive_and_refund(return_id)

        assert result["fallback_to_wallet"] is True
        assert result["wallet_credit"] == 500.0
        assert ledger.balance_of("user-1") == 500.0
        assert _return(return_id).planned_routing == RefundRouting.GATEWAY.value
        assert _return(return_id).actual_routing == RefundRouting.WALLET.value
        assert payments_for_order(order.id)[0].status == PaymentStatus.SUCCESS.value

    def test_split_payment_is_refunded_on_both_channels(self, gateway_order, fake_gateway):
        order = gateway_order(wallet=300.0)
        return_id = _request_return(order, quantity=2)

        result = ReturnService().receive_and_refund(return_id)

        assert result["planned"] == RefundRouting.GATEWAY_AND_WALLET.value
        assert result["gateway_refund"]["amount"] == 700.0
        assert result["wallet_credit"] == 300.0
        assert ledger.balance_of("user-1") == 300.0

        gateway_payment = next(
            p for p in payments_for_order(order.id) if p.method == PaymentMethod.RAZORPAY.value
        )
        assert gateway_payment.status == PaymentStatus.REFUNDED.value
        assert _order(order.id).status == OrderStatus.REFUNDED.value

    def test_refund_reaches_the_gateway_that_captured(self, gateway_order, fake_gateway):
        order = gateway_order()
        return_id = _request_return(order)
        switched = FakeGateway(name="fake-switched")
        set_gateway(switched)

        result = ReturnService().receive_and_refund(return_id)

        assert result["gateway_refund"]["amount"] == 500.0
        assert [c["gateway_payment_id"] for c in fake_gateway.calls_to("create_refund")] == ["pay_1"]
        assert switched.calls_to("create_refund") == []
