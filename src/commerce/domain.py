"""Commerce bounded context — the transactional core of checkout and post-sale.

Holds every aggregate that must commit together: variant stock, coupons and
their per-order usage markers, wallets and their ledger, orders, payments,
payment sessions, stock reservations, carts, returns and exchanges. Command
handlers are the Unit of Work boundary; application services sequence them
around network calls to gateways and couriers.
"""

import structlog
from protean.domain import Domain

commerce = Domain(name="commerce")

logger = structlog.get_logger(__name__)
