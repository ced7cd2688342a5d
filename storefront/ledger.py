"""Persistence for orders, payments and their audit trail.

Statuses only ever move through ``transition_order`` / ``transition_payment``:
a single ``UPDATE ... WHERE id = ? AND status IN (...)`` whose row count says
whether this caller won the transition. Two concurrent confirmations for the
same payment therefore cannot both apply.
"""
import logging
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from storefront.config import AMOUNT_TOLERANCE
from storefront.errors import ConflictError, NotFoundError, ValidationError
from storefront.models import (
    OPEN_PAYMENT_STATUSES,
    Cart,
    CartItem,
    Order,
    OrderItem,
    Payment,
    PaymentStatus,
    Transaction,
    utcnow,
)

logger = logging.getLogger(__name__)


# --------------------------------------------------------------------------
# Orders
# --------------------------------------------------------------------------

def create_order(db, *, user_id, customer_email, items, subtotal, shipping, tax,
                 total, currency, payment_method, status, shipping_address):
    if total != subtotal + shipping + tax:
        raise ValidationError("Order total must equal subtotal + shipping + tax")

    order = Order(
        user_id=user_id,
        customer_email=customer_email,
        subtotal=subtotal,
        shipping=shipping,
        tax=tax,
        total=total,
        currency=currency,
        payment_method=payment_method,
        status=status,
        shipping_address=shipping_address,
    )
    for position, item in enumerate(items):
        order.items.append(OrderItem(
            position=position,
            product_id=item["product_id"],
            name=item.get("name"),
            image=item.get("image"),
            quantity=item["quantity"],
            unit_price=item["unit_price"],
        ))

    db.add(order)
    db.commit()
    db.refresh(order)
    return order


def get_order(db, order_id) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


def list_orders_for_user(db, user_id):
    stmt = select(Order).where(Order.user_id == user_id).order_by(Order.created_at.desc())
    return list(db.scalars(stmt))


def set_order_references(db, order_id, **references):
    """Store gateway correlation ids (``card_session_id``, ``qr_reference``)."""
    db.execute(update(Order).where(Order.id == order_id).values(**references))
    db.commit()


def transition_order(db, order_id, from_statuses, **values) -> bool:
    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.status.in_(list(from_statuses)))
        .values(updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    won = db.execute(stmt).rowcount == 1
    db.commit()
    return won


# --------------------------------------------------------------------------
# Payments
# --------------------------------------------------------------------------

def create_payment(db, order, *, gateway, payment_data=None, amount=None,
                   gateway_payment_id=None, payment_reference=None) -> Payment:
    amount = order.total if amount is None else Decimal(amount)
    if abs(amount - order.total) > AMOUNT_TOLERANCE:
        raise ValidationError("Payment amount does not match order total")

    payment = Payment(
        order_id=order.id,
        payment_method=order.payment_method,
        amount=amount,
        currency=order.currency,
        status=PaymentStatus.PENDING.value,
        gateway=gateway,
        gateway_payment_id=gateway_payment_id,
        payment_reference=payment_reference,
        payment_data=payment_data,
    )
    db.add(payment)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Order already has a pending payment")
    db.refresh(payment)
    return payment


def get_payment(db, payment_id) -> Payment:
    payment = db.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment


def open_payment_for(db, order_id):
    stmt = select(Payment).where(
        Payment.order_id == order_id, Payment.status.in_(OPEN_PAYMENT_STATUSES)
    )
    return db.scalars(stmt).first()


def latest_payment_for(db, order_id):
    stmt = (
        select(Payment)
        .where(Payment.order_id == order_id)
        .order_by(Payment.created_at.desc())
    )
    return db.scalars(stmt).first()


def find_payment(db, gateway, *, reference=None, order_id=None, gateway_payment_id=None):
    """Locate the payment a gateway callback refers to.

    Tried in order: payment reference, gateway-side payment id, then the most
    recent payment of the order on that gateway.
    """
    if reference:
        payment = db.scalars(
            select(Payment).where(Payment.payment_reference == reference,
                                  Payment.gateway == gateway)
            .order_by(Payment.created_at.desc())
        ).first()
        if payment:
            return payment
    if gateway_payment_id:
        payment = db.scalars(
            select(Payment).where(Payment.gateway_payment_id == gateway_payment_id)
        ).first()
        if payment:
            return payment
    if order_id:
        return db.scalars(
            select(Payment).where(Payment.order_id == order_id, Payment.gateway == gateway)
            .order_by(Payment.created_at.desc())
        ).first()
    return None


def update_payment_instructions(db, payment_id, *, payment_data,
                                gateway_payment_id=None, payment_reference=None) -> bool:
    """Refresh the instructions of a still-open payment (retry path)."""
    values = {"payment_data": payment_data, "updated_at": utcnow()}
    if gateway_payment_id is not None:
        values["gateway_payment_id"] = gateway_payment_id
    if payment_reference is not None:
        values["payment_reference"] = payment_reference
    stmt = (
        update(Payment)
        .where(Payment.id == payment_id, Payment.status.in_(OPEN_PAYMENT_STATUSES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    won = db.execute(stmt).rowcount == 1
    db.commit()
    return won


def transition_payment(db, payment_id, from_statuses, **values) -> bool:
    stmt = (
        update(Payment)
        .where(Payment.id == payment_id, Payment.status.in_(list(from_statuses)))
        .values(updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    won = db.execute(stmt).rowcount == 1
    db.commit()
    return won


# --------------------------------------------------------------------------
# Transactions
# --------------------------------------------------------------------------

def record_transaction(db, payment, *, transaction_type, gateway_transaction_id,
                       status, amount=None, gateway_response=None, extra=None) -> Transaction:
    """Append an audit record; a second capture/refund for a payment is a no-op."""
    existing = find_transaction(db, payment.id, transaction_type)
    if existing is not None:
        return existing

    txn = Transaction(
        order_id=payment.order_id,
        payment_id=payment.id,
        transaction_type=transaction_type,
        amount=payment.amount if amount is None else amount,
        currency=payment.currency,
        gateway=payment.gateway,
        gateway_transaction_id=gateway_transaction_id,
        status=status,
        gateway_response=gateway_response,
        extra=extra,
    )
    db.add(txn)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("Concurrent %s transaction for payment %s", transaction_type, payment.id)
        return find_transaction(db, payment.id, transaction_type)
    db.refresh(txn)
    return txn


def find_transaction(db, payment_id, transaction_type):
    stmt = select(Transaction).where(
        Transaction.payment_id == payment_id,
        Transaction.transaction_type == transaction_type,
    )
    return db.scalars(stmt).first()


def transactions_for(db, payment_id):
    stmt = (
        select(Transaction)
        .where(Transaction.payment_id == payment_id)
        .order_by(Transaction.processed_at)
    )
    return list(db.scalars(stmt))


# --------------------------------------------------------------------------
# Carts
# --------------------------------------------------------------------------

def get_cart(db, user_id):
    return db.scalars(select(Cart).where(Cart.user_id == user_id)).first()


def clear_cart(db, user_id):
    """Empty the user's cart; the cart row itself is kept."""
    cart = get_cart(db, user_id)
    if cart is None:
        return
    db.query(CartItem).filter(CartItem.cart_id == cart.id).delete(synchronize_session=False)
    db.commit()
    db.expire(cart)
