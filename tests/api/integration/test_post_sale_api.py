"""Integration tests for the return and exchange endpoints via TestClient."""

import pytest
from commerce.api import ROUTERS, register_error_handlers
from commerce.exchanges.exchange_request import ExchangeRequest, ExchangeStatus
from commerce.returns.return_request import ReturnRequest, ReturnStatus
from commerce.wallet import ledger
from fastapi import FastAPI
from fastapi.testclient import TestClient
from protean import current_domain


@pytest.fixture()
def client():
    app = FastAPI()
    for router in ROUTERS:
        app.include_router(router)
    register_error_handlers(app)
    return TestClient(app)


def _return_body(order, quantity=1):
    return {
        "order_id": str(order.id),
        "item_id": str(order.items[0].id),
        "user_id": str(order.user_id),
        "quantity": quantity,
        "reason": "Too small",
    }


class TestReturnEndpoints:
    def test_request_approve_receive(self, client, delivered_order, fake_courier):
        order, _ = delivered_order()

        created = client.post("/returns", json=_return_body(order))
        assert created.status_code == 201
        return_id = created.json()["return_id"]

        approved = client.post(f"/returns/{return_id}/approve", json={})
        assert approved.json()["status"] == "pickup_scheduled"
        assert client.post(f"/returns/{return_id}/pickup").status_code == 200

        received = client.post(f"/returns/{return_id}/receive", json={"condition": "new"})

        assert received.status_code == 200
        assert received.json()["amount"] == 450.0
        assert received.json()["wallet_credit"] == 450.0
        assert ledger.balance_of("user-1") == 450.0

        assert client.post(f"/returns/{return_id}/close").status_code == 200
        assert current_domain.repository_for(ReturnRequest).get(return_id).status == ReturnStatus.CLOSED.value

    def test_too_many_units_is_400(self, client, delivered_order):
        order, _ = delivered_order()

        response = client.post("/returns", json=_return_body(order, quantity=3))

        assert response.status_code == 400
        assert "eligible for return" in response.json()["message"]

    def test_cancel_and_reject(self, client, delivered_order):
        order, _ = delivered_order()
        first = client.post("/returns", json=_return_body(order)).json()["return_id"]
        second = client.post("/returns", json=_return_body(order)).json()["return_id"]

        assert client.post(f"/returns/{first}/cancel", json={"user_id": "user-1"}).status_code == 200
        assert client.post(f"/returns/{second}/reject", json={"reason": "Worn"}).status_code == 200

        repo = current_domain.repository_for(ReturnRequest)
        assert repo.get(first).status == ReturnStatus.CANCELLED.value
        assert repo.get(second).status == ReturnStatus.REJECTED.value

    def test_negative_restocking_fee_is_422(self, client, delivered_order):
        order, _ = delivered_order()
        return_id = client.post("/returns", json=_return_body(order)).json()["return_id"]

        response = client.post(f"/returns/{return_id}/receive", json={"restocking_fee": -5})

        assert response.status_code == 422


class TestExchangeEndpoints:
    def test_exchange_for_a_cheaper_variant(self, client, delivered_order, make_variant, fake_courier):
        order, _ = delivered_order()
        replacement = make_variant(price=250.0, stock=3, sku="SKU-L")

        created = client.post(
            "/exchanges",
            json={
                **_return_body(order),
                "replacement_variant_id": str(replacement.id),
                "selection_type": "auto_place",
            },
        )
        assert created.status_code == 201
        exchange_id = created.json()["exchange_id"]

        assert client.post(f"/exchanges/{exchange_id}/pickup").json()["status"] == "PICKUP_SCHEDULED"
        assert client.post(f"/exchanges/{exchange_id}/picked-up").status_code == 200
        assert client.post(f"/exchanges/{exchange_id}/qc/start").status_code == 200

        qc = client.post(f"/exchanges/{exchange_id}/qc", json={"passed": True, "checked_by": "qc-1"})

        assert qc.status_code == 200
        assert qc.json()["credited"] == 200.0
        assert qc.json()["new_order_id"]
        exchange = current_domain.repository_for(ExchangeRequest).get(exchange_id)
        assert exchange.status == ExchangeStatus.EXCHANGE_COMPLETED.value

    def test_dearer_variant_is_paid_by_cod(self, client, delivered_order, make_variant):
        order, _ = delivered_order()
        replacement = make_variant(price=600.0, stock=3, sku="SKU-XL")
        exchange_id = client.post(
            "/exchanges", json={**_return_body(order), "replacement_variant_id": str(replacement.id)}
        ).json()["exchange_id"]
        client.post(f"/exchanges/{exchange_id}/picked-up")
        client.post(f"/exchanges/{exchange_id}/qc/start")
        qc = client.post(f"/exchanges/{exchange_id}/qc", json={"passed": True})
        assert qc.json()["required_payment"] == 150.0

        refused = client.post(f"/exchanges/{exchange_id}/payment", json={"method": "payu"})
        assert refused.status_code == 400

        paid = client.post(f"/exchanges/{exchange_id}/payment", json={"method": "cod"})
        assert paid.status_code == 200
        assert paid.json()["cod_amount"] == 150.0

    def test_reject_before_pickup(self, client, delivered_order):
        order, _ = delivered_order()
        exchange_id = client.post("/exchanges", json=_return_body(order)).json()["exchange_id"]

        response = client.post(f"/exchanges/{exchange_id}/reject", json={"reason": "Out of stock"})

        assert response.status_code == 200
        exchange = current_domain.repository_for(ExchangeRequest).get(exchange_id)
        assert exchange.status == ExchangeStatus.REJECTED.value

    def test_qc_before_pickup_is_400(self, client, delivered_order):
        order, _ = delivered_order()
        exchange_id = client.post("/exchanges", json=_return_body(order)).json()["exchange_id"]

        assert client.post(f"/exchanges/{exchange_id}/qc/start").status_code == 400
