"""Turns a cart or an explicit item list into an order plus payment instructions."""
import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from sqlalchemy.exc import SQLAlchemyError

from storefront import ledger
from storefront.auth import ensure_owner_or_admin
from storefront.config import AMOUNT_TOLERANCE, get_settings
from storefront.errors import ConflictError, GatewayError, ValidationError
from storefront.gateways import get_gateway, normalize_method
from storefront.models import OrderPaymentStatus, OrderStatus, PaymentMethod

logger = logging.getLogger(__name__)

SUPPORTED_CURRENCIES = ("USD", "KHR")
CENT = Decimal("0.01")

# Path segment of POST /orders/{id}/<segment>-payment for each method.
RETRY_ROUTES = {
    PaymentMethod.CARD: "stripe",
    PaymentMethod.QR_BANK: "khqr",
}


def _money(value, field_name) -> Decimal:
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Invalid {field_name}")
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"Invalid {field_name}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def _items_from_request(items):
    snapshots = []
    for item in items:
        if not item.product_id:
            raise ValidationError("Each item needs a product id")
        if item.quantity is None or item.quantity < 1:
            raise ValidationError("Item quantity must be at least 1")
        if item.price is None:
            raise ValidationError("Each item needs a price")
        snapshots.append({
            "product_id": item.product_id,
            "name": item.name,
            "image": item.image,
            "quantity": item.quantity,
            "unit_price": _money(item.price, "item price"),
        })
    return snapshots


def _items_from_cart(db, user_id):
    cart = ledger.get_cart(db, user_id)
    if cart is None or not cart.items:
        raise ValidationError("Cart is empty")
    return [
        {
            "product_id": item.product_id,
            "name": item.name,
            "image": item.image,
            "quantity": item.quantity,
            "unit_price": _money(item.price, "item price"),
        }
        for item in cart.items
    ]


def _check_client_amount(name, claimed, computed):
    if claimed is None:
        return
    if abs(_money(claimed, name) - computed) > AMOUNT_TOLERANCE:
        raise ValidationError(f"Order {name} does not match its items")


def place_order(db, user, request):
    """Create an order and its payment instructions.

    Returns ``(order, payment_data)``. A gateway failure does not fail the
    checkout: the order and a pending payment are kept and ``payment_data``
    carries an error marker so the client can retry instruction generation.
    """
    if not request.shipping_address or not request.payment_method:
        raise ValidationError("Shipping address and payment method are required")
    method = normalize_method(request.payment_method)

    currency = (request.currency or get_settings().default_currency).upper()
    if currency not in SUPPORTED_CURRENCIES:
        raise ValidationError(f"Unsupported currency. Valid currencies: {', '.join(SUPPORTED_CURRENCIES)}")

    from_cart = not request.items
    if from_cart:
        items = _items_from_cart(db, user.id)
    else:
        items = _items_from_request(request.items)

    subtotal = sum((i["unit_price"] * i["quantity"] for i in items), Decimal("0")).quantize(CENT)
    shipping = _money(request.shipping, "shipping") if request.shipping is not None else Decimal("0.00")
    tax = _money(request.tax, "tax") if request.tax is not None else Decimal("0.00")
    total = subtotal + shipping + tax

    _check_client_amount("subtotal", request.subtotal, subtotal)
    _check_client_amount("total", request.total, total)

    adapter = get_gateway(method)
    order = ledger.create_order(
        db,
        user_id=user.id,
        customer_email=user.email,
        items=items,
        subtotal=subtotal,
        shipping=shipping,
        tax=tax,
        total=total,
        currency=currency,
        payment_method=method.value,
        status=adapter.initial_order_status.value,
        shipping_address=request.shipping_address.model_dump(by_alias=True, exclude_none=True),
    )
    logger.info("Order %s created for user %s (%s, %s %s)",
                order.id, user.id, method.value, total, currency)

    if from_cart:
        try:
            ledger.clear_cart(db, user.id)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to clear cart of user %s after order %s", user.id, order.id)

    payment_data = issue_instructions(db, order)
    return order, payment_data


def issue_instructions(db, order, raise_on_error=False):
    """Generate instructions and anchor them on the order's open payment.

    The open payment is created if the order has none, so a failed generation
    still leaves a pending payment for later retries.
    """
    adapter = get_gateway(order.payment_method)
    error = None
    try:
        instructions = adapter.create_instructions(order)
    except GatewayError as exc:
        instructions = None
        error = exc

    payment = ledger.open_payment_for(db, order.id)
    if payment is None:
        payment = ledger.create_payment(
            db, order,
            gateway=adapter.gateway,
            payment_data=instructions.stored_data if instructions else None,
            gateway_payment_id=instructions.gateway_payment_id if instructions else None,
            payment_reference=instructions.payment_reference if instructions else None,
        )
    elif instructions is not None:
        ledger.update_payment_instructions(
            db, payment.id,
            payment_data=instructions.stored_data,
            gateway_payment_id=instructions.gateway_payment_id,
            payment_reference=instructions.payment_reference,
        )

    if error is not None:
        logger.warning("Payment instructions for order %s failed: %s", order.id, error.message)
        if raise_on_error:
            raise error
        route = RETRY_ROUTES.get(adapter.method)
        return {
            "error": True,
            "message": "Payment instructions could not be generated, please retry",
            "paymentMethod": adapter.method.value,
            "paymentId": payment.id,
            "retryPath": f"/orders/{order.id}/{route}-payment" if route else None,
        }

    if instructions.order_references:
        ledger.set_order_references(db, order.id, **instructions.order_references)
    return {**instructions.payment_data, "paymentId": payment.id}


def retry_instructions(db, user, order_id, route_method):
    """Regenerate instructions for an unpaid order (POST /orders/{id}/<x>-payment)."""
    order = ledger.get_order(db, order_id)
    ensure_owner_or_admin(user, order)

    method = normalize_method(route_method)
    if order.payment_method != method.value:
        raise ValidationError(f"Order is not for {route_method} payment")
    if order.payment_status == OrderPaymentStatus.PAID.value:
        raise ConflictError("Order is already paid")
    if order.status != OrderStatus.PENDING.value:
        raise ConflictError(f"Order is {order.status}, payment cannot be retried")

    return issue_instructions(db, order, raise_on_error=True)
