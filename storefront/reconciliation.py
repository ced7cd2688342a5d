"""Aligns orders and payments with what the gateways report.

All entry points (signed webhooks, client verification, refunds, admin
fulfilment updates) funnel into conditional status updates from
``storefront.ledger``. A confirmation is applied by whoever wins the
``pending -> completed`` update; everyone else sees a no-op, which makes
replayed and concurrent webhooks safe.
"""
import logging

from storefront import ledger
from storefront.auth import ensure_owner_or_admin
from storefront.config import AMOUNT_TOLERANCE
from storefront.errors import ConflictError, NotFoundError, ValidationError
from storefront.gateways import AUTHORIZED, COMPLETED, FAILED, GatewayEvent, get_gateway, normalize_method
from storefront.models import (
    OPEN_PAYMENT_STATUSES,
    OrderPaymentStatus,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    TransactionType,
    utcnow,
)
from storefront.notifications import get_dispatcher

logger = logging.getLogger(__name__)

SUCCESS_VERIFICATION_STATUSES = ("completed", "paid", "success", "succeeded")
REFUNDABLE_ORDER_STATUSES = (
    OrderStatus.CONFIRMED.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
    OrderStatus.CANCELLED.value,
)

# Fulfilment moves an administrator may make. Refunds of gateway payments go
# through ``ReconciliationHandler.refund`` instead.
ORDER_TRANSITIONS = {
    OrderStatus.PENDING.value: {OrderStatus.CANCELLED.value},
    OrderStatus.CONFIRMED.value: {OrderStatus.PROCESSING.value, OrderStatus.CANCELLED.value},
    OrderStatus.PROCESSING.value: {OrderStatus.SHIPPED.value, OrderStatus.CANCELLED.value},
    OrderStatus.SHIPPED.value: {OrderStatus.DELIVERED.value},
    OrderStatus.DELIVERED.value: {OrderStatus.REFUNDED.value},
    OrderStatus.CANCELLED.value: set(),
    OrderStatus.REFUNDED.value: set(),
    OrderStatus.FAILED.value: set(),
}


class ReconciliationHandler:

    def __init__(self, dispatcher=None):
        self.dispatcher = dispatcher or get_dispatcher()

    # ------------------------------------------------------------------
    # Gateway confirmations
    # ------------------------------------------------------------------

    def handle_webhook(self, db, method, body: bytes, headers):
        """Authenticate a gateway callback and apply it.

        Raises ``AuthenticationError`` before touching any state when the
        signature is bad. Returns the payment, or ``None`` when the event was
        ignored or refers to an unknown payment.
        """
        adapter = get_gateway(method)
        event = adapter.parse_webhook(body, headers)
        if event is None:
            return None

        payment = ledger.find_payment(
            db, adapter.gateway,
            reference=event.payment_reference,
            order_id=event.order_id,
            gateway_payment_id=event.gateway_payment_id,
        )
        if payment is None:
            logger.warning(
                "Orphaned %s webhook (reference=%s order=%s txn=%s)",
                adapter.gateway, event.payment_reference, event.order_id,
                event.gateway_transaction_id,
            )
            return None

        self.apply(db, payment, event)
        return ledger.get_payment(db, payment.id)

    def apply(self, db, payment, event: GatewayEvent) -> bool:
        """Apply a normalised event. True if this call changed the payment."""
        if event.status == COMPLETED:
            return self._complete(db, payment, event)
        if event.status == FAILED:
            return self._fail(db, payment, event)
        if event.status == AUTHORIZED:
            return self._authorize(db, payment, event)
        raise ValueError(f"Unknown gateway event status: {event.status}")

    def _complete(self, db, payment, event):
        if event.amount is not None and abs(event.amount - payment.amount) > AMOUNT_TOLERANCE:
            logger.error("Amount mismatch on payment %s: expected %s, gateway reported %s",
                         payment.id, payment.amount, event.amount)
            return False

        payment_id = payment.id
        txn_id = event.gateway_transaction_id or payment.payment_reference or payment_id
        won = ledger.transition_payment(
            db, payment_id, OPEN_PAYMENT_STATUSES,
            status=PaymentStatus.COMPLETED.value,
            paid_at=utcnow(),
            captured=True,
            gateway_transaction_id=txn_id,
        )
        payment = ledger.get_payment(db, payment_id)
        if not won:
            if payment.status != PaymentStatus.COMPLETED.value:
                logger.warning("Ignoring completion for %s payment %s", payment.status, payment_id)
                return False
            logger.info("Duplicate completion for payment %s", payment_id)

        # The steps below are repeated on duplicates so that a retry after a
        # partial failure finishes the job; each is itself conditional.
        ledger.transition_order(
            db, payment.order_id, (OrderStatus.PENDING.value,),
            status=OrderStatus.CONFIRMED.value,
            payment_status=OrderPaymentStatus.PAID.value,
            paid_at=payment.paid_at,
            payment_result={
                "id": payment.gateway_transaction_id,
                "status": PaymentStatus.COMPLETED.value,
                "gateway": payment.gateway,
                "verifiedAt": utcnow().isoformat(),
            },
        )
        ledger.record_transaction(
            db, payment,
            transaction_type=TransactionType.CAPTURE.value,
            gateway_transaction_id=payment.gateway_transaction_id,
            status=PaymentStatus.COMPLETED.value,
            gateway_response=event.raw,
        )

        if won:
            logger.info("Payment %s completed via %s", payment_id, payment.gateway)
            self._announce(db, payment.order_id, "Payment Completed")
        return won

    def _fail(self, db, payment, event):
        won = ledger.transition_payment(
            db, payment.id, OPEN_PAYMENT_STATUSES,
            status=PaymentStatus.FAILED.value,
            gateway_transaction_id=event.gateway_transaction_id,
        )
        if not won:
            logger.info("Ignoring failure for payment %s, already settled", payment.id)
            return False

        ledger.transition_order(
            db, payment.order_id, (OrderStatus.PENDING.value,),
            status=OrderStatus.FAILED.value,
            payment_status=OrderPaymentStatus.FAILED.value,
        )
        logger.info("Payment %s failed via %s", payment.id, payment.gateway)
        return True

    def _authorize(self, db, payment, event):
        payment_id = payment.id
        won = ledger.transition_payment(
            db, payment_id, (PaymentStatus.PENDING.value,),
            status=PaymentStatus.PROCESSING.value,
            gateway_transaction_id=event.gateway_transaction_id,
        )
        if not won:
            return False

        payment = ledger.get_payment(db, payment_id)
        ledger.transition_order(
            db, payment.order_id, (OrderStatus.PENDING.value,),
            payment_status=OrderPaymentStatus.PROCESSING.value,
        )
        ledger.record_transaction(
            db, payment,
            transaction_type=TransactionType.AUTHORIZATION.value,
            gateway_transaction_id=event.gateway_transaction_id or payment_id,
            status=PaymentStatus.PENDING.value,
            gateway_response=event.raw,
        )
        return True

    def _announce(self, db, order_id, title):
        order = ledger.get_order(db, order_id)
        try:
            self.dispatcher.notify(order, title)
        except Exception:
            # State is already committed; a 5xx here would only make the
            # gateway replay an event that is now a no-op.
            logger.exception("Notification dispatch failed for order %s", order_id)

    # ------------------------------------------------------------------
    # Client-asserted verification
    # ------------------------------------------------------------------

    def verify_payment(self, db, user, order_id, *, gateway, transaction_id, status):
        """Apply a client-reported outcome (used when the webhook is late).

        This is weaker than a signed webhook: the outcome is not confirmed
        with the gateway, so it is limited to the order owner or an admin.
        """
        order = ledger.get_order(db, order_id)
        ensure_owner_or_admin(user, order)

        if order.payment_method == PaymentMethod.CASH.value:
            raise ConflictError("Cash orders are settled on delivery")
        if not transaction_id or not status:
            raise ValidationError("Transaction id and status are required")
        if gateway and normalize_method(gateway).value != order.payment_method:
            raise ValidationError("Payment gateway does not match order")

        payment = ledger.open_payment_for(db, order.id) or ledger.latest_payment_for(db, order.id)
        if payment is None:
            raise NotFoundError("No payment found for this order")

        outcome = COMPLETED if str(status).lower() in SUCCESS_VERIFICATION_STATUSES else FAILED
        logger.warning("Client-asserted %s for order %s by user %s (txn %s)",
                       outcome, order.id, user.id, transaction_id)
        self.apply(db, payment, GatewayEvent(
            gateway=payment.gateway,
            status=outcome,
            gateway_transaction_id=transaction_id,
            order_id=order.id,
            raw={"source": "client-verification", "userId": user.id,
                 "transactionId": transaction_id, "status": status},
        ))

        payment = ledger.get_payment(db, payment.id)
        return ledger.get_order(db, order.id), payment.status == PaymentStatus.COMPLETED.value

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def refund(self, db, user, payment_id, reason="Requested by customer"):
        payment = ledger.get_payment(db, payment_id)
        order = ledger.get_order(db, payment.order_id)
        ensure_owner_or_admin(user, order)

        if payment.status != PaymentStatus.COMPLETED.value:
            raise ConflictError("Cannot refund incomplete payment")

        result = get_gateway(payment.payment_method).refund(payment, reason)
        won = ledger.transition_payment(
            db, payment.id, (PaymentStatus.COMPLETED.value,),
            status=PaymentStatus.REFUNDED.value,
            refund_data={**result, "reason": reason},
        )
        if not won:
            raise ConflictError("Payment was already refunded")

        ledger.transition_order(
            db, order.id, REFUNDABLE_ORDER_STATUSES,
            status=OrderStatus.REFUNDED.value,
            payment_status=OrderPaymentStatus.REFUNDED.value,
        )
        payment = ledger.get_payment(db, payment_id)
        txn = ledger.record_transaction(
            db, payment,
            transaction_type=TransactionType.REFUND.value,
            gateway_transaction_id=result["id"],
            status="completed" if result.get("status") in ("succeeded", "completed") else "pending",
            gateway_response=result,
            extra={"reason": reason},
        )
        logger.info("Payment %s refunded (%s)", payment_id, result.get("status"))
        return {**result, "transactionId": txn.id}

    # ------------------------------------------------------------------
    # Fulfilment (admin)
    # ------------------------------------------------------------------

    def update_order_status(self, db, order_id, new_status):
        valid = {s.value for s in OrderStatus}
        if new_status not in valid:
            raise ValidationError("Invalid status value")

        order = ledger.get_order(db, order_id)
        current = order.status
        if new_status == current:
            return order
        if new_status not in ORDER_TRANSITIONS.get(current, set()):
            raise ConflictError(f"Cannot move order from {current} to {new_status}")

        cash_payment = None
        if new_status == OrderStatus.REFUNDED.value:
            if order.payment_method != PaymentMethod.CASH.value:
                raise ConflictError("Refund the payment to refund this order")
            cash_payment = ledger.latest_payment_for(db, order.id)
            if cash_payment is None or cash_payment.status != PaymentStatus.COMPLETED.value:
                raise ConflictError("Cash payment has not been collected")

        if not ledger.transition_order(db, order.id, (current,), status=new_status):
            raise ConflictError("Order status changed concurrently, retry")

        if new_status == OrderStatus.CANCELLED.value:
            self._cancel_open_payment(db, order.id)
        elif new_status == OrderStatus.DELIVERED.value and order.payment_method == PaymentMethod.CASH.value:
            self._collect_cash(db, order.id)
        elif new_status == OrderStatus.REFUNDED.value:
            self._refund_cash(db, order.id, cash_payment.id)
        return ledger.get_order(db, order.id)

    def _refund_cash(self, db, order_id, payment_id):
        refund_data = {"id": f"cash_refund_{payment_id}", "status": "completed",
                       "source": "cash-on-delivery"}
        if not ledger.transition_payment(
            db, payment_id, (PaymentStatus.COMPLETED.value,),
            status=PaymentStatus.REFUNDED.value,
            refund_data=refund_data,
        ):
            return
        ledger.transition_order(db, order_id, (OrderStatus.REFUNDED.value,),
                                payment_status=OrderPaymentStatus.REFUNDED.value)
        ledger.record_transaction(
            db, ledger.get_payment(db, payment_id),
            transaction_type=TransactionType.REFUND.value,
            gateway_transaction_id=refund_data["id"],
            status="completed",
            gateway_response=refund_data,
        )
        logger.info("Cash payment %s of order %s refunded", payment_id, order_id)

    def _cancel_open_payment(self, db, order_id):
        payment = ledger.open_payment_for(db, order_id)
        if payment is None:
            return
        if ledger.transition_payment(db, payment.id, OPEN_PAYMENT_STATUSES,
                                     status=PaymentStatus.CANCELLED.value):
            ledger.transition_order(db, order_id, (OrderStatus.CANCELLED.value,),
                                    payment_status=OrderPaymentStatus.CANCELLED.value)

    def _collect_cash(self, db, order_id):
        payment = ledger.open_payment_for(db, order_id)
        if payment is None:
            return
        payment_id = payment.id
        if not ledger.transition_payment(
            db, payment_id, OPEN_PAYMENT_STATUSES,
            status=PaymentStatus.COMPLETED.value,
            paid_at=utcnow(),
            captured=True,
            gateway_transaction_id=f"cash_{order_id}",
        ):
            return
        payment = ledger.get_payment(db, payment_id)
        ledger.transition_order(
            db, order_id, (OrderStatus.DELIVERED.value,),
            payment_status=OrderPaymentStatus.PAID.value,
            paid_at=payment.paid_at,
        )
        ledger.record_transaction(
            db, payment,
            transaction_type=TransactionType.CAPTURE.value,
            gateway_transaction_id=payment.gateway_transaction_id,
            status=PaymentStatus.COMPLETED.value,
            gateway_response={"source": "cash-on-delivery"},
        )
        self._announce(db, order_id, "Cash Payment Collected")
