"""Exchange workflow — commands and handlers.

QC decides the money. With x the discount-adjusted value of the units sent
back and y the replacement's price at selection:

    QC failed   replacement reservation and wallet hold released → QC_FAILED
    x > y       x − y credited to the wallet → CREDITED; auto_place also
                places the replacement order
    x == y      replacement order placed with no payment
    x < y       WAITING_FOR_PAYMENT; ConfirmExchangePayment finalizes the
                wallet hold and takes the rest as COD only

Replacement orders are created confirmed, with source `exchange`, their
stock reservation consumed and one Payment record per funding source.
"""

import structlog
from protean import handle
from protean.exceptions import ValidationError
from protean.fields import Boolean, DateTime, Float, Identifier, Integer, String, Text
from protean.utils.globals import current_domain

from commerce.cache import invalidate_order, invalidate_variants, invalidate_wallet
from commerce.catalog.pricing import PricedLine
from commerce.catalog.variant import Variant
from commerce.config import get_settings
from commerce.courier.port import PickupResult
from commerce.domain import commerce
from commerce.exchanges.exchange_request import ExchangeRequest, ExchangeStatus, SelectionType
from commerce.inventory import manager as reservations
from commerce.inventory.reservation import ReservationPurpose, StockReservation
from commerce.ledger.primitives import return_stock
from commerce.ordering.order import Order, OrderSource, OrderStatus, PaymentMethodChoice
from commerce.ordering.payment import Payment, PaymentMethod, PaymentStatus
from commerce.returns.eligibility import check_post_sale_request
from commerce.wallet import ledger as wallet_ledger
from commerce.wallet.wallet import TransactionSource, TransactionStatus, WalletTransaction

logger = structlog.get_logger(__name__)


def _release_replacement(exchange: ExchangeRequest) -> None:
    if not exchange.reservation_id:
        return
    reservation = current_domain.repository_for(StockReservation).get(exchange.reservation_id)
    if reservations.release_reservation(reservation):
        invalidate_variants(line.variant_id for line in reservation.lines)


def _pending_hold(exchange: ExchangeRequest) -> WalletTransaction | None:
    if not exchange.held_wallet_transaction_id:
        return None
    held = current_domain.repository_for(WalletTransaction).get(exchange.held_wallet_transaction_id)
    return held if held.status == TransactionStatus.PENDING.value else None


def _release_hold(exchange: ExchangeRequest) -> None:
    if _pending_hold(exchange) is not None:
        wallet_ledger.release(exchange.held_wallet_transaction_id, note=f"Exchange {exchange.id} closed")
        invalidate_wallet(exchange.user_id)


def _unwind(exchange: ExchangeRequest) -> None:
    """Give back everything the exchange holds: replacement stock and wallet hold."""
    _release_replacement(exchange)
    _release_hold(exchange)


def _consume_replacement(exchange: ExchangeRequest, order: Order) -> StockReservation:
    """Consume the replacement hold, reserving afresh if it lapsed meanwhile."""
    repo = current_domain.repository_for(StockReservation)
    reservation = repo.get(exchange.reservation_id) if exchange.reservation_id else None
    if reservation is None or not reservation.is_active:
        reservation = reservations.reserve(
            [(exchange.replacement_variant_id, exchange.replacement_quantity, exchange.replacement_price)],
            order_id=order.id,
            exchange_id=exchange.id,
            purpose=ReservationPurpose.EXCHANGE.value,
        )
    reservation.order_id = order.id
    reservation.consume()
    repo.add(reservation)
    invalidate_variants(line.variant_id for line in reservation.lines)
    return reservation


def place_replacement_order(exchange: ExchangeRequest, original: Order, funding: list[tuple], actor=None) -> Order:
    """Create the confirmed replacement order.

    `funding` is a list of (method, amount, status, wallet_transaction_id);
    an empty list places it with no payment.
    """
    variant = current_domain.repository_for(Variant).get(exchange.replacement_variant_id)
    line = PricedLine(
        product_id=str(variant.product_id),
        variant_id=str(variant.id),
        sku=variant.sku,
        title=variant.title,
        quantity=exchange.replacement_quantity,
        unit_price=exchange.replacement_price,
        line_total=exchange.replacement_total,
    )
    order = Order.create(
        user_id=exchange.user_id,
        lines=[line],
        shipping_address=original.address(),
        idempotency_key=f"exchange:{exchange.id}",
        source=OrderSource.EXCHANGE.value,
    )

    payment_repo = current_domain.repository_for(Payment)
    for method, amount, status, transaction_id in funding:
        payment = Payment.create(
            order_id=order.id,
            user_id=exchange.user_id,
            method=method,
            amount=amount,
            status=status,
            wallet_transaction_id=transaction_id,
            idempotency_key=f"exchange:{exchange.id}:{method}",
        )
        payment_repo.add(payment)
        order.record_payment(payment)

    _consume_replacement(exchange, order)
    methods = [method for method, *_ in funding]
    if PaymentMethod.COD.value in methods:
        order.confirm(PaymentMethodChoice.COD.value)
    elif methods:
        order.confirm(PaymentMethodChoice.WALLET.value)
    else:
        order.confirm(PaymentMethodChoice.NONE.value)
    current_domain.repository_for(Order).add(order)

    exchange.link_new_order(order.id, actor=actor)
    invalidate_order(order.id, order.user_id)
    logger.info(
        "Replacement order placed",
        exchange_id=str(exchange.id),
        order_id=str(order.id),
        total=order.total,
        funding=methods,
    )
    return order


def _complete(exchange: ExchangeRequest, original: Order, actor=None) -> None:
    exchange.complete(actor=actor)
    original.advance_if_allowed(OrderStatus.EXCHANGED, reason="exchange_completed", actor=actor)


@commerce.command(part_of="ExchangeRequest")
class RequestExchange:
    order_id = Identifier(required=True)
    item_id = Identifier(required=True)
    user_id = Identifier(required=True)
    quantity = Integer(required=True, min_value=1)
    reason = String(max_length=500)
    replacement_variant_id = Identifier()
    replacement_quantity = Integer()
    selection_type = String(choices=SelectionType, default=SelectionType.USER_PLACE.value)
    hold_amount = Float()


@commerce.command(part_of="ExchangeRequest")
class RecordExchangePickup:
    exchange_id = Identifier(required=True)
    pickup_id = String(required=True, max_length=255)
    carrier = String(max_length=100)
    tracking_id = String(max_length=255)
    scheduled_at = DateTime()


@commerce.command(part_of="ExchangeRequest")
class MarkExchangePickedUp:
    exchange_id = Identifier(required=True)
    actor = String(max_length=100, default="courier")


@commerce.command(part_of="ExchangeRequest")
class StartExchangeQC:
    exchange_id = Identifier(required=True)
    checked_by = String(max_length=100, default="admin")


@commerce.command(part_of="ExchangeRequest")
class RecordExchangeQC:
    exchange_id = Identifier(required=True)
    passed = Boolean(required=True)
    notes = Text()
    checked_by = String(max_length=100, default="admin")


@commerce.command(part_of="ExchangeRequest")
class ConfirmExchangePayment:
    exchange_id = Identifier(required=True)
    method = String(max_length=20, default=PaymentMethod.COD.value)
    actor = String(max_length=100)


@commerce.command(part_of="ExchangeRequest")
class RejectExchange:
    exchange_id = Identifier(required=True)
    reason = String(max_length=500)
    admin_id = String(max_length=100, default="admin")


@commerce.command_handler(part_of=ExchangeRequest)
class ExchangeWorkflowHandler:
    @handle(RequestExchange)
    def request_exchange(self, command):
        settings = get_settings()
        order_repo = current_domain.repository_for(Order)
        order = order_repo.get(command.order_id)
        order.assert_owned_by(command.user_id)
        item = check_post_sale_request(order, command.item_id, command.quantity, settings.exchange_window_days, "exchange")

        exchange = ExchangeRequest.create(
            order_id=order.id,
            item_id=item.id,
            variant_id=item.variant_id,
            user_id=command.user_id,
            quantity=command.quantity,
            original_price=item.unit_price_after_discount * command.quantity,
            reverse_pickup_fee=settings.reverse_pickup_fee,
            reason=command.reason,
        )
        if exchange.estimated_credit <= 0:
            raise ValidationError({"exchange": ["Item value does not cover the reverse pickup fee"]})

        if command.replacement_variant_id:
            variant = current_domain.repository_for(Variant).get(command.replacement_variant_id)
            if not variant.active:
                raise ValidationError({"replacement_variant_id": ["Replacement variant is no longer available"]})
            quantity = command.replacement_quantity or command.quantity
            reservation = reservations.reserve(
                [(variant.id, quantity, variant.price)],
                exchange_id=exchange.id,
                purpose=ReservationPurpose.EXCHANGE.value,
            )
            exchange.select_replacement(variant, quantity, command.selection_type, reservation.id)
            invalidate_variants([variant.id])

            if command.hold_amount and exchange.differential > 0:
                held = wallet_ledger.hold(
                    command.user_id,
                    min(command.hold_amount, exchange.differential),
                    ref_id=str(exchange.id),
                    note="Exchange price differential",
                )
                exchange.record_hold(held)
                invalidate_wallet(command.user_id)

        current_domain.repository_for(ExchangeRequest).add(exchange)
        if order.advance_if_allowed(OrderStatus.EXCHANGE_REQUESTED, reason=command.reason, actor=str(command.user_id)):
            order_repo.add(order)
        invalidate_order(order.id, order.user_id)

        logger.info(
            "Exchange requested",
            exchange_id=str(exchange.id),
            order_id=str(order.id),
            original_price=exchange.original_price,
            replacement_total=exchange.replacement_total,
            held_amount=exchange.held_amount,
        )
        return str(exchange.id)

    @handle(RecordExchangePickup)
    def record_exchange_pickup(self, command):
        repo = current_domain.repository_for(ExchangeRequest)
        exchange = repo.get(command.exchange_id)
        exchange.schedule_pickup(
            PickupResult(
                pickup_id=command.pickup_id,
                scheduled_at=command.scheduled_at,
                carrier=command.carrier or "",
                tracking_id=command.tracking_id,
            )
        )
        repo.add(exchange)

        order_repo = current_domain.repository_for(Order)
        order = order_repo.get(exchange.order_id)
        order.advance_if_allowed(OrderStatus.EXCHANGE_APPROVED, actor="admin")
        order.advance_if_allowed(OrderStatus.PICKUP_SCHEDULED, actor="courier")
        order_repo.add(order)

    @handle(MarkExchangePickedUp)
    def mark_exchange_picked_up(self, command):
        repo = current_domain.repository_for(ExchangeRequest)
        exchange = repo.get(command.exchange_id)
        exchange.mark_picked_up(actor=command.actor)
        repo.add(exchange)

        order_repo = current_domain.repository_for(Order)
        order = order_repo.get(exchange.order_id)
        order.advance_if_allowed(OrderStatus.EXCHANGE_APPROVED, actor="admin")
        order.advance_if_allowed(OrderStatus.PICKED_UP, actor=command.actor)
        order_repo.add(order)

    @handle(StartExchangeQC)
    def start_exchange_qc(self, command):
        repo = current_domain.repository_for(ExchangeRequest)
        exchange = repo.get(command.exchange_id)
        exchange.transition(ExchangeStatus.QC_PENDING, actor=command.checked_by)
        repo.add(exchange)

    @handle(RecordExchangeQC)
    def record_exchange_qc(self, command):
        repo = current_domain.repository_for(ExchangeRequest)
        order_repo = current_domain.repository_for(Order)
        exchange = repo.get(command.exchange_id)
        original = order_repo.get(exchange.order_id)
        actor = command.checked_by

        exchange.record_qc(command.passed, notes=command.notes, checked_by=actor)
        result = {"exchange_id": str(exchange.id), "qc_passed": command.passed}

        if not command.passed:
            _unwind(exchange)
            original.advance_if_allowed(OrderStatus.EXCHANGE_REJECTED, reason="qc_failed", actor=actor)
            repo.add(exchange)
            order_repo.add(original)
            result["status"] = exchange.status
            logger.info("Exchange failed QC", exchange_id=str(exchange.id))
            return result

        # The units are back: book them against the original line
        original.record_return(exchange.item_id, exchange.quantity)
        if get_settings().auto_restock_on_approval:
            return_stock(exchange.variant_id, exchange.quantity)
            invalidate_variants([exchange.variant_id])

        x, y = exchange.original_price, exchange.replacement_total
        if x > y:
            credit = wallet_ledger.credit(
                exchange.user_id,
                round(x - y, 2),
                ref_id=str(exchange.id),
                source=TransactionSource.EXCHANGE_CREDIT.value,
                note="Exchange credit after QC",
            )
            exchange.mark_credited(credit, actor=actor)
            invalidate_wallet(exchange.user_id)
            result["credited"] = credit.amount

            if exchange.has_replacement and exchange.selection_type == SelectionType.AUTO_PLACE.value:
                new_order = place_replacement_order(
                    exchange,
                    original,
                    [(PaymentMethod.WALLET.value, y, PaymentStatus.SUCCESS.value, credit.id)],
                    actor=actor,
                )
                result["new_order_id"] = str(new_order.id)
            else:
                # The customer places their own order with the credit
                _release_replacement(exchange)
            _complete(exchange, original, actor=actor)
        elif x == y:
            new_order = place_replacement_order(exchange, original, [], actor=actor)
            result["new_order_id"] = str(new_order.id)
            _complete(exchange, original, actor=actor)
        else:
            exchange.transition(ExchangeStatus.WAITING_FOR_PAYMENT, actor=actor, note=f"differential {y - x:.2f}")
            result["required_payment"] = round(max(0.0, exchange.differential - (exchange.held_amount or 0.0)), 2)

        repo.add(exchange)
        order_repo.add(original)
        result["status"] = exchange.status
        logger.info("Exchange passed QC", exchange_id=str(exchange.id), original_price=x, replacement_total=y)
        return result

    @handle(ConfirmExchangePayment)
    def confirm_exchange_payment(self, command):
        repo = current_domain.repository_for(ExchangeRequest)
        order_repo = current_domain.repository_for(Order)
        exchange = repo.get(command.exchange_id)
        if exchange.current_status != ExchangeStatus.WAITING_FOR_PAYMENT:
            raise ValidationError({"status": ["Exchange is not waiting for payment"]})
        if exchange.differential <= 0:
            raise ValidationError({"exchange": ["No payment required"]})

        remainder = exchange.differential
        funding = []
        held = _pending_hold(exchange)
        if held is not None:
            remainder = round(max(0.0, remainder - held.amount), 2)
            if remainder > 0 and command.method != PaymentMethod.COD.value:
                raise ValidationError({"method": ["The remaining exchange differential can only be paid by COD"]})
            wallet_ledger.finalize(held.id)
            funding.append((PaymentMethod.WALLET.value, held.amount, PaymentStatus.SUCCESS.value, held.id))
        elif command.method != PaymentMethod.COD.value:
            raise ValidationError({"method": ["The remaining exchange differential can only be paid by COD"]})

        if remainder > 0:
            funding.append((PaymentMethod.COD.value, remainder, PaymentStatus.COD_PENDING.value, None))

        original = order_repo.get(exchange.order_id)
        new_order = place_replacement_order(exchange, original, funding, actor=command.actor)
        _complete(exchange, original, actor=command.actor)
        repo.add(exchange)
        order_repo.add(original)
        return {"exchange_id": str(exchange.id), "new_order_id": str(new_order.id), "cod_amount": remainder}

    @handle(RejectExchange)
    def reject_exchange(self, command):
        repo = current_domain.repository_for(ExchangeRequest)
        order_repo = current_domain.repository_for(Order)
        exchange = repo.get(command.exchange_id)
        goods_returned = exchange.current_status == ExchangeStatus.WAITING_FOR_PAYMENT
        exchange.transition(ExchangeStatus.REJECTED, actor=command.admin_id, note=command.reason)
        _unwind(exchange)
        if goods_returned:
            # The units already passed QC and were booked back; pay out their value
            credit = wallet_ledger.credit(
                exchange.user_id,
                exchange.original_price,
                ref_id=str(exchange.id),
                source=TransactionSource.EXCHANGE_CREDIT.value,
                note="Exchange rejected after QC",
            )
            exchange.credit_wallet_transaction_id = credit.id
            exchange.credit_amount = credit.amount
            invalidate_wallet(exchange.user_id)
        repo.add(exchange)

        original = order_repo.get(exchange.order_id)
        if original.advance_if_allowed(OrderStatus.EXCHANGE_REJECTED, reason=command.reason, actor=command.admin_id):
            order_repo.add(original)
        logger.info("Exchange rejected", exchange_id=str(exchange.id), reason=command.reason)
