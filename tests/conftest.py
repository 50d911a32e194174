import os
from pathlib import Path

import pytest
from protean.integrations.pytest import DomainFixture


def pytest_addoption(parser):
    parser.addoption(
        "--env",
        action="store",
        default="test",
        help="Config environment to run tests on",
    )


def pytest_sessionstart(session):
    """Select the config overlay before the domain is imported."""
    os.environ["PROTEAN_ENV"] = session.config.option.env


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their directory location."""
    for item in items:
        test_path = str(Path(item.fspath))

        if "/domain/" in test_path:
            item.add_marker(pytest.mark.domain)
        elif "/application/" in test_path:
            item.add_marker(pytest.mark.application)
        elif "/integration/" in test_path:
            item.add_marker(pytest.mark.integration)
            if not any(m.name == "fast" for m in item.iter_markers()):
                item.add_marker(pytest.mark.slow)


@pytest.fixture(scope="session")
def commerce_bed():
    from commerce.domain import commerce

    bed = DomainFixture(commerce)
    bed.setup()
    yield bed
    bed.teardown()


@pytest.fixture(autouse=True)
def _ctx(commerce_bed):
    with commerce_bed.domain_context():
        yield

        from protean import current_domain

        for _, provider in current_domain.providers.items():
            provider._data_reset()
        current_domain.event_store.store._data_reset()


@pytest.fixture(autouse=True)
def _reset_adapters():
    """Every test starts with fresh fakes and settings read from the environment."""
    from commerce.cache import reset_cache
    from commerce.config import reset_settings
    from commerce.courier import reset_courier
    from commerce.gateway import reset_gateway
    from commerce.locking import reset_lock

    yield

    reset_gateway()
    reset_courier()
    reset_lock()
    reset_cache()
    reset_settings()


# ---------------------------------------------------------------------------
# Builders shared across areas
# ---------------------------------------------------------------------------
ADDRESS = {"line1": "12 MG Road", "city": "Bengaluru", "state": "KA", "postal_code": "560001", "country": "IN"}


@pytest.fixture
def make_variant():
    """Persist a variant and return it."""
    from protean import current_domain

    from commerce.catalog.variant import Variant

    def _make(price=500.0, stock=10, sku=None, product_id="prod-1", category_ids=None):
        variant = Variant.create(
            product_id=product_id,
            sku=sku or f"SKU-{int(price)}-{stock}",
            title=f"Item at {price}",
            price=price,
            stock=stock,
            category_ids=category_ids,
        )
        current_domain.repository_for(Variant).add(variant)
        return variant

    return _make


@pytest.fixture
def make_coupon():
    from protean import current_domain

    from commerce.coupons.coupon import Coupon

    def _make(code="SAVE10", discount_type="percentage", value=10.0, **kwargs):
        coupon = Coupon.create(code=code, discount_type=discount_type, value=value, **kwargs)
        current_domain.repository_for(Coupon).add(coupon)
        return coupon

    return _make


@pytest.fixture
def fund_wallet():
    from protean import current_domain

    from commerce.wallet.topup import TopUpWallet

    def _fund(user_id, amount):
        return current_domain.process(TopUpWallet(user_id=user_id, amount=amount), asynchronous=False)

    return _fund


@pytest.fixture
def place_order():
    """Place a pending order for `[(variant, quantity), ...]` and return its id."""
    import json

    from commerce.ordering.placement import PlaceOrder, submit_order

    def _place(user_id, lines, coupon_code=None, idempotency_key=None):
        items = [{"variant_id": str(variant.id), "quantity": quantity} for variant, quantity in lines]
        return submit_order(
            PlaceOrder(
                user_id=user_id,
                items=json.dumps(items),
                shipping_address=json.dumps(ADDRESS),
                coupon_code=coupon_code,
                idempotency_key=idempotency_key,
            )
        )

    return _place


@pytest.fixture
def fake_gateway():
    from commerce.gateway import set_gateway
    from commerce.gateway.fake_adapter import FakeGateway

    gateway = FakeGateway()
    set_gateway(gateway)
    return gateway


@pytest.fixture
def fake_courier():
    from commerce.courier import set_courier
    from commerce.courier.fake_adapter import FakeCourier

    courier = FakeCourier()
    set_courier(courier)
    return courier


@pytest.fixture
def deliver():
    """Walk a confirmed order to DELIVERED the way an admin would."""
    from protean import current_domain

    from commerce.ordering.status import UpdateOrderStatus

    def _deliver(order_id):
        for status in ("processing", "out-for-delivery", "delivered"):
            current_domain.process(UpdateOrderStatus(order_id=order_id, status=status), asynchronous=False)

    return _deliver


@pytest.fixture
def delivered_order(make_variant, make_coupon, place_order, deliver):
    """A delivered COD order: 2 units at 500 with a 10% coupon (line 1000, after discount 900)."""
    from protean import current_domain

    from commerce.checkout.coordinator import PaymentCoordinator
    from commerce.ordering.order import Order

    def _build(user_id="user-1", price=500.0, quantity=2, coupon=True, method="cod"):
        variant = make_variant(price=price, stock=10)
        code = None
        if coupon:
            code = make_coupon(code="TENOFF", value=10.0, max_uses=100).code
        order_id = place_order(user_id, [(variant, quantity)], coupon_code=code)
        PaymentCoordinator().initiate(order_id, user_id, method)
        deliver(order_id)
        return current_domain.repository_for(Order).get(order_id), variant

    return _build
