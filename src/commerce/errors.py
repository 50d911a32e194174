"""Error taxonomy for the commerce engine.

Built on Protean's exceptions so command handlers roll back on them and the
HTTP layer can map them to status codes:

    ValidationError            400  bad input, ownership mismatch
    InsufficientResource       400  stock, coupon or wallet exhausted
    InvalidStateTransition     400  illegal status change (logged as error)
    ObjectNotFoundError        404
    ConcurrencyConflict        409  lock held, payment already in progress
    ExternalGatewayError       502  gateway network/timeout failure
    PaymentVerificationFailed  400  signature or amount mismatch
"""

from protean.exceptions import InvalidOperationError, ProteanException, ValidationError


class InsufficientResource(ValidationError):
    """A ledger primitive's condition did not hold."""

    resource = "resource"

    def __init__(self, key, message):
        self.key = key
        self.message = message
        super().__init__({self.resource: [message]})


class InsufficientStock(InsufficientResource):
    resource = "stock"

    def __init__(self, variant_id, available=None, requested=None):
        self.variant_id = str(variant_id)
        self.available = available
        self.requested = requested
        message = f"Insufficient stock for variant {variant_id}"
        if available is not None and requested is not None:
            message += f". Available: {available}, Requested: {requested}"
        super().__init__(self.variant_id, message)


class CouponExhausted(InsufficientResource):
    resource = "coupon"

    def __init__(self, code, message=None):
        super().__init__(code, message or f"Coupon {code} usage limit reached")


class InsufficientWalletBalance(InsufficientResource):
    resource = "wallet"

    def __init__(self, user_id, available, required):
        self.available = available
        self.required = required
        super().__init__(
            str(user_id),
            f"Insufficient wallet balance. Available: {available}, Required: {required}",
        )


class InvalidStateTransition(ValidationError):
    def __init__(self, entity, current, target):
        self.entity = entity
        self.current = current
        self.target = target
        self.message = f"Invalid {entity} transition: {current} -> {target}"
        super().__init__({"status": [self.message]})


class ConcurrencyConflict(InvalidOperationError):
    def __init__(self, message="Resource is being modified concurrently, try again"):
        self.message = message
        super().__init__({"_entity": [message]})


class PaymentInProgress(ConcurrencyConflict):
    def __init__(self, order_id):
        self.order_id = str(order_id)
        super().__init__(f"A payment is already in progress for order {order_id}")


class LockBusy(ConcurrencyConflict):
    def __init__(self, key):
        self.key = key
        super().__init__(f"Lock {key} is held by another request")


class ExternalGatewayError(ProteanException):
    def __init__(self, gateway, message):
        self.gateway = gateway
        self.message = message
        super().__init__({"gateway": [message]})


class PaymentVerificationFailed(ExternalGatewayError):
    def __init__(self, gateway, message="Payment verification failed"):
        super().__init__(gateway, message)
