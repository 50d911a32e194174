"""Pydantic request/response schemas for the commerce API.

These are external contracts, kept separate from the Protean commands they
are translated into.
"""

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------
class CheckoutItemSchema(BaseModel):
    variant_id: str
    quantity: int = Field(ge=1)


class PlaceOrderRequest(BaseModel):
    user_id: str
    items: list[CheckoutItemSchema] | None = None
    from_cart: bool = False
    shipping_address: dict | None = None
    coupon_code: str | None = None
    idempotency_key: str | None = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "user_id": "user-001",
                    "items": [{"variant_id": "var-001", "quantity": 2}],
                    "shipping_address": {"line1": "12 MG Road", "city": "Bengaluru", "pincode": "560001"},
                    "coupon_code": "WELCOME10",
                }
            ]
        }
    }


class OrderIdResponse(BaseModel):
    order_id: str


class InitiatePaymentRequest(BaseModel):
    user_id: str
    method: str
    use_wallet: bool = False
    idempotency_key: str | None = None


class CancelOrderRequest(BaseModel):
    user_id: str | None = None
    reason: str = "cancelled_by_user"
    cancelled_by: str = "user"


class UpdateStatusRequest(BaseModel):
    status: str
    reason: str | None = None


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------
class VerifyPaymentRequest(BaseModel):
    session_id: str
    gateway_payment_id: str
    gateway_order_id: str | None = None
    signature: str
    details: dict | None = None


class StatusResponse(BaseModel):
    status: str = "ok"


# ---------------------------------------------------------------------------
# Returns
# ---------------------------------------------------------------------------
class RequestReturnRequest(BaseModel):
    order_id: str
    item_id: str
    user_id: str
    quantity: int = Field(ge=1)
    reason: str | None = None
    notes: str | None = None


class ReturnIdResponse(BaseModel):
    return_id: str


class CancelReturnRequest(BaseModel):
    user_id: str


class ApproveReturnRequest(BaseModel):
    admin_id: str = "admin"
    schedule_pickup: bool = True


class RejectRequest(BaseModel):
    reason: str | None = None
    admin_id: str = "admin"


class ReceiveReturnRequest(BaseModel):
    condition: str = "new"
    restocking_fee: float = Field(ge=0, default=0.0)
    refund_override: float | None = Field(ge=0, default=None)
    restock: bool | None = None
    admin_id: str = "admin"


# ---------------------------------------------------------------------------
# Exchanges
# ---------------------------------------------------------------------------
class RequestExchangeRequest(BaseModel):
    order_id: str
    item_id: str
    user_id: str
    quantity: int = Field(ge=1)
    reason: str | None = None
    replacement_variant_id: str | None = None
    replacement_quantity: int | None = Field(ge=1, default=None)
    selection_type: str = "user_place"
    hold_amount: float | None = Field(gt=0, default=None)


class ExchangeIdResponse(BaseModel):
    exchange_id: str


class ExchangeQCRequest(BaseModel):
    passed: bool
    notes: str | None = None
    checked_by: str = "admin"


class ExchangePaymentRequest(BaseModel):
    method: str = "cod"
    actor: str | None = None


# ---------------------------------------------------------------------------
# Wallets
# ---------------------------------------------------------------------------
class TopUpRequest(BaseModel):
    amount: float = Field(gt=0)
    note: str | None = None


class SweepRequest(BaseModel):
    batch_size: int = Field(ge=1, default=500)
