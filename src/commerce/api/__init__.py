"""Commerce API package."""

from commerce.api.errors import register_error_handlers
from commerce.api.routes import (
    exchange_router,
    maintenance_router,
    order_router,
    payment_router,
    return_router,
    wallet_router,
)

ROUTERS = [order_router, payment_router, return_router, exchange_router, wallet_router, maintenance_router]

__all__ = [
    "ROUTERS",
    "exchange_router",
    "maintenance_router",
    "order_router",
    "payment_router",
    "register_error_handlers",
    "return_router",
    "wallet_router",
]
