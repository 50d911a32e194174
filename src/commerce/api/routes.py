"""FastAPI routes for the commerce engine.

Route handlers translate requests into commands (or application-service
calls when a gateway or courier is involved) and shape the response. All
error mapping lives in `commerce.api.errors`.
"""

import json

from fastapi import APIRouter, Header, Request
from fastapi.encoders import jsonable_encoder
from protean.utils.globals import current_domain

from commerce.api.schemas import (
    ApproveReturnRequest,
    CancelOrderRequest,
    CancelReturnRequest,
    ExchangeIdResponse,
    ExchangePaymentRequest,
    ExchangeQCRequest,
    InitiatePaymentRequest,
    OrderIdResponse,
    PlaceOrderRequest,
    ReceiveReturnRequest,
    RejectRequest,
    RequestExchangeRequest,
    RequestReturnRequest,
    ReturnIdResponse,
    StatusResponse,
    SweepRequest,
    TopUpRequest,
    UpdateStatusRequest,
    VerifyPaymentRequest,
)
from commerce.cache import get_cache
from commerce.checkout.coordinator import PaymentCoordinator, dispatch
from commerce.exchanges.service import ExchangeService
from commerce.exchanges.workflow import (
    ConfirmExchangePayment,
    MarkExchangePickedUp,
    RecordExchangeQC,
    RejectExchange,
    RequestExchange,
    StartExchangeQC,
)
from commerce.inventory.sweep import sweep_expired
from commerce.ordering.order import Order, assert_owner
from commerce.ordering.placement import PlaceOrder, submit_order
from commerce.ordering.status import UpdateOrderStatus
from commerce.returns.service import ReturnService
from commerce.returns.workflow import (
    CancelReturn,
    CloseReturn,
    MarkReturnPickedUp,
    RejectReturn,
    RequestReturn,
)
from commerce.wallet.ledger import balance_of
from commerce.wallet.topup import TopUpWallet
from commerce.wallet.wallet import WalletTransaction

ORDER_CACHE_TTL_SECONDS = 60

# ---------------------------------------------------------------------------
# Order Router
# ---------------------------------------------------------------------------
order_router = APIRouter(prefix="/orders", tags=["orders"])


@order_router.post("", status_code=201, response_model=OrderIdResponse)
async def place_order(
    body: PlaceOrderRequest, idempotency_key: str | None = Header(default=None, alias="Idempotency-Key")
) -> OrderIdResponse:
    command = PlaceOrder(
        user_id=body.user_id,
        items=json.dumps([item.model_dump() for item in body.items]) if body.items else None,
        from_cart=body.from_cart,
        shipping_address=json.dumps(body.shipping_address or {}),
        coupon_code=body.coupon_code,
        idempotency_key=idempotency_key or body.idempotency_key,
    )
    order_id = submit_order(command)
    return OrderIdResponse(order_id=order_id)


@order_router.get("/{order_id}")
async def get_order(order_id: str, user_id: str | None = None):
    cache = get_cache()
    key = f"order:{order_id}"
    cached = cache.get(key)
    if cached is None:
        order = current_domain.repository_for(Order).get(order_id)
        cached = jsonable_encoder(order.to_dict())
        cache.set(key, cached, ttl_seconds=ORDER_CACHE_TTL_SECONDS)
    # Warm or cold, the payload is only served to its owner
    if user_id is not None:
        assert_owner(cached["user_id"], user_id)
    return cached


@order_router.post("/{order_id}/payments")
async def initiate_payment(
    order_id: str,
    body: InitiatePaymentRequest,
    session_id: str | None = Header(default=None, alias="X-Payment-Session"),
):
    return PaymentCoordinator().initiate(
        order_id=order_id,
        user_id=body.user_id,
        method=body.method,
        use_wallet=body.use_wallet,
        session_id=session_id,
        idempotency_key=body.idempotency_key,
    )


@order_router.post("/{order_id}/cancel")
async def cancel_order(order_id: str, body: CancelOrderRequest):
    return PaymentCoordinator().cancel(
        order_id, user_id=body.user_id, reason=body.reason, cancelled_by=body.cancelled_by
    )


@order_router.put("/{order_id}/status", response_model=StatusResponse)
async def update_order_status(order_id: str, body: UpdateStatusRequest) -> StatusResponse:
    dispatch(UpdateOrderStatus(order_id=order_id, status=body.status, reason=body.reason))
    return StatusResponse()


# ---------------------------------------------------------------------------
# Payment Router
# ---------------------------------------------------------------------------
payment_router = APIRouter(prefix="/payments", tags=["payments"])


@payment_router.post("/verify")
async def verify_payment(body: VerifyPaymentRequest):
    return PaymentCoordinator().verify(
        session_id=body.session_id,
        gateway_payment_id=body.gateway_payment_id,
        gateway_order_id=body.gateway_order_id,
        signature=body.signature,
        details=body.details,
    )


@payment_router.post("/webhook/{gateway}")
async def payment_webhook(
    gateway: str, request: Request, signature: str | None = Header(default=None, alias="X-Gateway-Signature")
):
    payload = await request.body()
    result = PaymentCoordinator().handle_webhook(gateway, payload, signature)
    return {"status": result["status"]}


# ---------------------------------------------------------------------------
# Return Router
# ---------------------------------------------------------------------------
return_router = APIRouter(prefix="/returns", tags=["returns"])


@return_router.post("", status_code=201, response_model=ReturnIdResponse)
async def request_return(body: RequestReturnRequest) -> ReturnIdResponse:
    return_id = dispatch(
        RequestReturn(
            order_id=body.order_id,
            item_id=body.item_id,
            user_id=body.user_id,
            quantity=body.quantity,
            reason=body.reason,
            notes=body.notes,
        )
    )
    return ReturnIdResponse(return_id=return_id)


@return_router.post("/{return_id}/cancel", response_model=StatusResponse)
async def cancel_return(return_id: str, body: CancelReturnRequest) -> StatusResponse:
    dispatch(CancelReturn(return_id=return_id, user_id=body.user_id))
    return StatusResponse()


@return_router.post("/{return_id}/approve")
async def approve_return(return_id: str, body: ApproveReturnRequest):
    return ReturnService().approve(return_id, admin_id=body.admin_id, schedule_pickup=body.schedule_pickup)


@return_router.post("/{return_id}/reject", response_model=StatusResponse)
async def reject_return(return_id: str, body: RejectRequest) -> StatusResponse:
    dispatch(RejectReturn(return_id=return_id, reason=body.reason, admin_id=body.admin_id))
    return StatusResponse()


@return_router.post("/{return_id}/pickup", response_model=StatusResponse)
async def mark_return_picked_up(return_id: str) -> StatusResponse:
    dispatch(MarkReturnPickedUp(return_id=return_id))
    return StatusResponse()


@return_router.post("/{return_id}/receive")
async def receive_return(return_id: str, body: ReceiveReturnRequest):
    return ReturnService().receive_and_refund(
        return_id,
        condition=body.condition,
        restocking_fee=body.restocking_fee,
        refund_override=body.refund_override,
        restock=body.restock,
        admin_id=body.admin_id,
    )


@return_router.post("/{return_id}/close", response_model=StatusResponse)
async def close_return(return_id: str) -> StatusResponse:
    dispatch(CloseReturn(return_id=return_id))
    return StatusResponse()


# ---------------------------------------------------------------------------
# Exchange Router
# ---------------------------------------------------------------------------
exchange_router = APIRouter(prefix="/exchanges", tags=["exchanges"])


@exchange_router.post("", status_code=201, response_model=ExchangeIdResponse)
async def request_exchange(body: RequestExchangeRequest) -> ExchangeIdResponse:
    exchange_id = dispatch(
        RequestExchange(
            order_id=body.order_id,
            item_id=body.item_id,
            user_id=body.user_id,
            quantity=body.quantity,
            reason=body.reason,
            replacement_variant_id=body.replacement_variant_id,
            replacement_quantity=body.replacement_quantity,
            selection_type=body.selection_type,
            hold_amount=body.hold_amount,
        )
    )
    return ExchangeIdResponse(exchange_id=exchange_id)


@exchange_router.post("/{exchange_id}/pickup")
async def schedule_exchange_pickup(exchange_id: str):
    return ExchangeService().schedule_pickup(exchange_id)


@exchange_router.post("/{exchange_id}/picked-up", response_model=StatusResponse)
async def mark_exchange_picked_up(exchange_id: str) -> StatusResponse:
    dispatch(MarkExchangePickedUp(exchange_id=exchange_id))
    return StatusResponse()


@exchange_router.post("/{exchange_id}/qc/start", response_model=StatusResponse)
async def start_exchange_qc(exchange_id: str) -> StatusResponse:
    dispatch(StartExchangeQC(exchange_id=exchange_id))
    return StatusResponse()


@exchange_router.post("/{exchange_id}/qc")
async def record_exchange_qc(exchange_id: str, body: ExchangeQCRequest):
    return dispatch(
        RecordExchangeQC(exchange_id=exchange_id, passed=body.passed, notes=body.notes, checked_by=body.checked_by)
    )


@exchange_router.post("/{exchange_id}/payment")
async def confirm_exchange_payment(exchange_id: str, body: ExchangePaymentRequest):
    return dispatch(ConfirmExchangePayment(exchange_id=exchange_id, method=body.method, actor=body.actor))


@exchange_router.post("/{exchange_id}/reject", response_model=StatusResponse)
async def reject_exchange(exchange_id: str, body: RejectRequest) -> StatusResponse:
    dispatch(RejectExchange(exchange_id=exchange_id, reason=body.reason, admin_id=body.admin_id))
    return StatusResponse()


# ---------------------------------------------------------------------------
# Wallet Router
# ---------------------------------------------------------------------------
wallet_router = APIRouter(prefix="/wallets", tags=["wallets"])


@wallet_router.get("/{user_id}")
async def get_wallet(user_id: str, limit: int = 20):
    transactions = (
        current_domain.repository_for(WalletTransaction)
        ._dao.query.filter(user_id=str(user_id))
        .order_by("-created_at")
        .limit(limit)
        .all()
        .items
    )
    return {
        "user_id": user_id,
        "balance": balance_of(user_id),
        "transactions": [jsonable_encoder(transaction.to_dict()) for transaction in transactions],
    }


@wallet_router.post("/{user_id}/top-up", status_code=201)
async def top_up_wallet(user_id: str, body: TopUpRequest):
    transaction_id = dispatch(TopUpWallet(user_id=user_id, amount=body.amount, note=body.note))
    return {"transaction_id": transaction_id, "balance": balance_of(user_id)}


# ---------------------------------------------------------------------------
# Maintenance Router
# ---------------------------------------------------------------------------
maintenance_router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@maintenance_router.post("/sweep")
async def run_sweep(body: SweepRequest | None = None):
    return sweep_expired(batch_size=body.batch_size if body else 500)
