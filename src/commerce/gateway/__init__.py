"""Payment gateway factory.

`get_gateway()` builds the adapter named by `ACTIVE_GATEWAY`
(`fake`, `razorpay`, `payu`) on first use; `get_gateway(name)` returns the
adapter for one provider, which is how refunds reach the gateway that
captured the payment. `set_gateway()` / `register_gateway()` /
`reset_gateway()` swap adapters out in tests.
"""

from commerce.config import get_settings
from commerce.gateway.fake_adapter import FakeGateway
from commerce.gateway.port import PaymentGateway

PROVIDERS = ("razorpay", "payu")

_current_gateway: PaymentGateway | None = None
_gateways: dict[str, PaymentGateway] = {}


def build_gateway(name: str) -> PaymentGateway:
    settings = get_settings()
    if name == "razorpay":
        from commerce.gateway.razorpay_adapter import RazorpayGateway

        return RazorpayGateway(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            webhook_secret=settings.razorpay_webhook_secret,
        )
    if name == "payu":
        from commerce.gateway.payu_adapter import PayUGateway

        return PayUGateway(
            merchant_key=settings.payu_merchant_key,
            merchant_salt=settings.payu_merchant_salt,
            test_mode=settings.environment != "production",
        )
    return FakeGateway()


def get_gateway(name: str | None = None) -> PaymentGateway:
    """Return the active payment gateway, or the one registered under `name`."""
    global _current_gateway
    if _current_gateway is None:
        _current_gateway = build_gateway(get_settings().active_gateway)
        _gateways.setdefault(_current_gateway.name, _current_gateway)
    if name is None or name == _current_gateway.name:
        return _current_gateway
    if name not in _gateways:
        _gateways[name] = build_gateway(name)
    return _gateways[name]


def has_gateway(name: str) -> bool:
    return name in PROVIDERS or name in _gateways or (_current_gateway is not None and name == _current_gateway.name)


def register_gateway(gateway: PaymentGateway) -> None:
    """Make an adapter reachable by its name without making it the active one."""
    _gateways[gateway.name] = gateway


def set_gateway(gateway: PaymentGateway) -> None:
    """Override the active payment gateway (useful for tests)."""
    global _current_gateway
    _current_gateway = gateway
    _gateways[gateway.name] = gateway


def reset_gateway() -> None:
    global _current_gateway
    _current_gateway = None
    _gateways.clear()
