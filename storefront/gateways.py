"""Payment gateway adapters.

One adapter per payment method. Each produces client-facing payment
instructions for an order, turns the gateway's callback into a
``GatewayEvent`` and performs refunds. Everything gateway specific lives
here; checkout and reconciliation only talk to ``GatewayAdapter``.
"""
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from urllib.parse import quote

import stripe

from storefront import khqr, stripe_service
from storefront.config import get_settings
from storefront.errors import (
    AuthenticationError,
    ConflictError,
    GatewayError,
    ValidationError,
)
from storefront.models import PAYMENT_METHOD_ALIASES, OrderStatus, PaymentMethod

logger = logging.getLogger(__name__)

AUTHORIZED = "authorized"
COMPLETED = "completed"
FAILED = "failed"


@dataclass
class PaymentInstructions:
    payment_data: dict                       # returned to the client
    stored_data: dict = None                 # kept on the Payment record
    gateway_payment_id: str = None
    payment_reference: str = None
    order_references: dict = field(default_factory=dict)


@dataclass
class GatewayEvent:
    gateway: str
    status: str                              # authorized | completed | failed
    gateway_transaction_id: str = None
    order_id: str = None
    payment_reference: str = None
    gateway_payment_id: str = None
    amount: Decimal = None
    raw: dict = None


class GatewayAdapter:
    method: PaymentMethod = None
    gateway: str = None
    initial_order_status = OrderStatus.PENDING

    def create_instructions(self, order) -> PaymentInstructions:
        raise NotImplementedError

    def parse_webhook(self, body: bytes, headers) -> GatewayEvent:
        """Authenticate and normalise a callback. ``None`` means "nothing to do"."""
        raise NotImplementedError

    def refund(self, payment, reason: str) -> dict:
        raise NotImplementedError


class CardGateway(GatewayAdapter):
    """Hosted card checkout (Stripe Checkout Sessions)."""

    method = PaymentMethod.CARD
    gateway = "stripe"

    SUCCESS_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
    FAILURE_EVENTS = ("checkout.session.async_payment_failed", "checkout.session.expired")

    @staticmethod
    def _minor_units(amount) -> int:
        return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def line_items(self, order):
        currency = order.currency.lower()
        items = [
            {
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": item.name or item.product_id},
                    "unit_amount": self._minor_units(item.unit_price),
                },
                "quantity": item.quantity,
            }
            for item in order.items
        ]
        for label, amount in (("Shipping", order.shipping), ("Tax", order.tax)):
            if amount:
                items.append({
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": label},
                        "unit_amount": self._minor_units(amount),
                    },
                    "quantity": 1,
                })
        return items

    def create_instructions(self, order):
        client_url = get_settings().client_url
        try:
            session = stripe_service.create_checkout_session(
                line_items=self.line_items(order),
                success_url=(f"{client_url}/payment/success"
                             f"?session_id={{CHECKOUT_SESSION_ID}}&order_id={order.id}"),
                cancel_url=f"{client_url}/payment/cancel",
                customer_email=order.customer_email,
                metadata={"orderId": order.id, "paymentMethod": self.method.value},
            )
        except stripe.StripeError as exc:
            logger.error("Checkout session creation failed for order %s: %s", order.id, exc)
            raise GatewayError("Card payment gateway unavailable", self.gateway) from exc

        return PaymentInstructions(
            payment_data={
                "paymentMethod": self.method.value,
                "sessionId": session.id,
                "checkoutUrl": session.url,
            },
            stored_data={"sessionId": session.id, "checkoutUrl": session.url},
            gateway_payment_id=session.id,
            order_references={"card_session_id": session.id},
        )

    def parse_webhook(self, body, headers):
        try:
            event = stripe_service.construct_event(body, headers.get("stripe-signature"))
        except ValueError:
            raise ValidationError("Invalid payload")
        except stripe.SignatureVerificationError:
            raise AuthenticationError("Invalid signature")

        event_type = event["type"]
        if event_type in self.SUCCESS_EVENTS:
            session = event["data"]["object"]
            paid = session.get("payment_status") in (None, "paid", "no_payment_required")
            status = COMPLETED if paid else AUTHORIZED
        elif event_type in self.FAILURE_EVENTS:
            session = event["data"]["object"]
            status = FAILED
        else:
            logger.info("Ignoring card webhook event %s", event_type)
            return None

        metadata = session.get("metadata") or {}
        amount_total = session.get("amount_total")
        return GatewayEvent(
            gateway=self.gateway,
            status=status,
            gateway_transaction_id=session.get("payment_intent") or session.get("id"),
            order_id=metadata.get("orderId"),
            gateway_payment_id=session.get("id"),
            amount=Decimal(amount_total) / 100 if amount_total is not None else None,
            raw=dict(event),
        )

    def refund(self, payment, reason):
        if not payment.gateway_transaction_id:
            raise ConflictError("Payment has no captured card transaction to refund")
        try:
            refund = stripe_service.refund_payment(
                payment.gateway_transaction_id,
                reason=reason,
                idempotency_key=f"refund-{payment.id}",
            )
        except stripe.StripeError as exc:
            logger.error("Card refund failed for payment %s: %s", payment.id, exc)
            raise GatewayError("Card refund failed", self.gateway) from exc
        return {"id": refund.id, "status": refund.status, "amount": str(payment.amount)}


class KHQRGateway(GatewayAdapter):
    """Bank transfer through a scanned KHQR code, confirmed by signed webhook."""

    method = PaymentMethod.QR_BANK
    gateway = "khqr"

    SIGNATURE_HEADERS = ("x-khqr-signature", "x-signature")
    SUCCESS_STATUSES = ("success", "successful", "completed", "paid")
    FAILURE_STATUSES = ("failed", "failure", "fail", "declined", "cancelled")

    @staticmethod
    def reference_for(order_id) -> str:
        return f"KHQR_{order_id}"

    def create_instructions(self, order):
        settings = get_settings()
        if not settings.khqr_merchant_id or not settings.khqr_terminal_id:
            logger.error("KHQR_MERCHANT_ID / KHQR_TERMINAL_ID are not configured")
            raise GatewayError("KHQR merchant is not configured", self.gateway)

        try:
            bank_code = khqr.bank_code_for(settings.khqr_bank, strict=settings.khqr_strict_bank_codes)
            payload = khqr.build_payload(
                order_id=order.id,
                amount=order.total,
                currency=order.currency,
                merchant_name=settings.store_name,
                city=settings.store_city,
                bank_code=bank_code,
                merchant_id=settings.khqr_merchant_id,
                terminal_id=settings.khqr_terminal_id,
                postal_code=settings.khqr_postal_code,
            )
        except ValidationError as exc:
            logger.error("KHQR payload for order %s could not be built: %s", order.id, exc.message)
            raise GatewayError("KHQR payment is misconfigured", self.gateway) from exc
        try:
            image_data = khqr.render_qr_data_url(payload)
        except Exception as exc:
            logger.exception("QR rendering failed for order %s", order.id)
            raise GatewayError("Failed to render KHQR code", self.gateway) from exc

        reference = self.reference_for(order.id)
        stored = {
            "payload": payload,
            "merchantInfo": {
                "name": khqr.ascii_text(settings.store_name, khqr.MERCHANT_NAME_MAX),
                "city": khqr.ascii_text(settings.store_city, khqr.MERCHANT_CITY_MAX),
                "bank": settings.khqr_bank.upper(),
            },
            "amount": str(order.total),
            "currency": order.currency,
            "paymentReference": reference,
            "paymentUrl": f"khqr://pay?data={quote(payload)}",
        }
        return PaymentInstructions(
            payment_data={"paymentMethod": self.method.value, "imageData": image_data, **stored},
            stored_data=stored,
            payment_reference=reference,
            order_references={"qr_reference": reference},
        )

    def verify_signature(self, body: bytes, headers):
        settings = get_settings()
        signature = next((headers.get(h) for h in self.SIGNATURE_HEADERS if headers.get(h)), None)
        secret = settings.khqr_webhook_secret

        if not signature or not secret:
            if settings.is_production:
                raise AuthenticationError("Invalid webhook signature")
            logger.warning("Accepting unsigned KHQR webhook outside production")
            return

        expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature.strip().lower()):
            logger.warning("KHQR webhook signature mismatch")
            raise AuthenticationError("Invalid webhook signature")

    def parse_webhook(self, body, headers):
        self.verify_signature(body, headers)
        # Authenticated but unusable events are dropped so the bank stops retrying them.
        try:
            data = json.loads(body or b"{}")
        except ValueError:
            logger.warning("Ignoring KHQR webhook with unparseable body")
            return None
        if not isinstance(data, dict):
            logger.warning("Ignoring KHQR webhook whose body is not an object")
            return None

        status = str(data.get("status") or "").lower()
        if status in self.SUCCESS_STATUSES:
            outcome = COMPLETED
        elif status in self.FAILURE_STATUSES:
            outcome = FAILED
        else:
            logger.info("Ignoring KHQR webhook with status %r", status)
            return None

        amount = data.get("amount")
        if amount is not None:
            try:
                amount = Decimal(str(amount))
            except InvalidOperation:
                amount = None
            if amount is None or not amount.is_finite():
                logger.warning("Ignoring KHQR webhook for %s with invalid amount %r",
                               data.get("transaction_reference"), data.get("amount"))
                return None
        return GatewayEvent(
            gateway=self.gateway,
            status=outcome,
            gateway_transaction_id=data.get("transaction_id"),
            payment_reference=data.get("transaction_reference"),
            amount=amount,
            raw=data,
        )

    def refund(self, payment, reason):
        # Bank transfers are returned manually by the bank after approval.
        return {
            "id": f"khqr_refund_{payment.id}",
            "status": "pending_approval",
            "amount": str(payment.amount),
        }


class CashGateway(GatewayAdapter):
    """Cash on delivery: no gateway, collected by the courier."""

    method = PaymentMethod.CASH
    gateway = "cash"
    initial_order_status = OrderStatus.CONFIRMED

    def create_instructions(self, order):
        data = {
            "paymentMethod": self.method.value,
            "amountDue": str(order.total),
            "currency": order.currency,
            "instructions": "Pay the courier in cash on delivery.",
        }
        return PaymentInstructions(payment_data=data, stored_data=data)

    def parse_webhook(self, body, headers):
        raise ValidationError("Cash payments have no gateway callback")

    def refund(self, payment, reason):
        raise ConflictError("Refund not supported for this payment method")


_GATEWAYS = {
    adapter.method: adapter
    for adapter in (CardGateway(), KHQRGateway(), CashGateway())
}


def normalize_method(tag) -> PaymentMethod:
    method = PAYMENT_METHOD_ALIASES.get(str(tag or "").strip().lower())
    if method is None:
        raise ValidationError("Invalid payment method")
    return method


def get_gateway(method) -> GatewayAdapter:
    if not isinstance(method, PaymentMethod):
        method = normalize_method(method)
    return _GATEWAYS[method]
