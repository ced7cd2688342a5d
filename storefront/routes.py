from fastapi import APIRouter, Depends

from storefront import checkout, ledger, ratelimit
from storefront.auth import CurrentUser, ensure_owner_or_admin, get_current_user, require_admin
from storefront.database import SessionLocal
from storefront.errors import NotFoundError
from storefront.notifications import get_dispatcher
from storefront.reconciliation import ReconciliationHandler
from storefront.schemas import (
    CreateOrderRequest,
    OrderStatusRequest,
    RefundRequest,
    VerifyPaymentRequest,
    order_to_dict,
    payment_to_dict,
)

router = APIRouter()

RETRY_ROUTE_METHODS = ("khqr", "paypal", "stripe")


def get_reconciler() -> ReconciliationHandler:
    return ReconciliationHandler(get_dispatcher())


@router.post("/orders", status_code=201)
def create_order(
    request: CreateOrderRequest,
    user: CurrentUser = Depends(get_current_user)
):
    db = SessionLocal()
    try:
        order, payment_data = checkout.place_order(db, user, request)
        return {
            "success": True,
            "order": order_to_dict(order),
            "paymentData": payment_data,
        }
    finally:
        db.close()


@router.get("/orders/user/orders")
def my_orders(user: CurrentUser = Depends(get_current_user)):
    db = SessionLocal()
    try:
        orders = ledger.list_orders_for_user(db, user.id)
        return {"success": True, "orders": [order_to_dict(o, full=True) for o in orders]}
    finally:
        db.close()


@router.get("/orders/{order_id}")
def get_order(order_id: str, user: CurrentUser = Depends(get_current_user)):
    db = SessionLocal()
    try:
        order = ledger.get_order(db, order_id)
        ensure_owner_or_admin(user, order)
        return {"success": True, "order": order_to_dict(order, full=True)}
    finally:
        db.close()


@router.post("/orders/{order_id}/{method}-payment")
def payment_instructions(
    order_id: str,
    method: str,
    user: CurrentUser = Depends(get_current_user)
):
    if method not in RETRY_ROUTE_METHODS:
        raise NotFoundError("Not found")

    db = SessionLocal()
    try:
        payment_data = checkout.retry_instructions(db, user, order_id, method)
        return {"success": True, "paymentData": payment_data}
    finally:
        db.close()


@router.put("/orders/{order_id}/verify-payment")
def verify_payment(
    order_id: str,
    request: VerifyPaymentRequest,
    user: CurrentUser = Depends(get_current_user),
    reconciler: ReconciliationHandler = Depends(get_reconciler)
):
    db = SessionLocal()
    try:
        ratelimit.limit_payment_requests(db, user)
        order, paid = reconciler.verify_payment(
            db, user, order_id,
            gateway=request.payment_gateway,
            transaction_id=request.transaction_id,
            status=request.status,
        )
        return {
            "success": paid,
            "message": "Payment verified successfully" if paid else "Payment verification failed",
            "order": order_to_dict(order, full=True),
        }
    finally:
        db.close()


@router.put("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    request: OrderStatusRequest,
    admin: CurrentUser = Depends(require_admin),
    reconciler: ReconciliationHandler = Depends(get_reconciler)
):
    db = SessionLocal()
    try:
        order = reconciler.update_order_status(db, order_id, request.status)
        return {
            "success": True,
            "message": "Order status updated successfully",
            "order": order_to_dict(order, full=True),
        }
    finally:
        db.close()


@router.post("/payments/{payment_id}/refund")
def refund(
    payment_id: str,
    request: RefundRequest = None,
    user: CurrentUser = Depends(get_current_user),
    reconciler: ReconciliationHandler = Depends(get_reconciler)
):
    reason = (request.reason if request else None) or "Requested by customer"
    db = SessionLocal()
    try:
        ratelimit.limit_payment_requests(db, user)
        result = reconciler.refund(db, user, payment_id, reason)
        return {"success": True, "message": "Payment refunded successfully", "refund": result}
    finally:
        db.close()


@router.get("/payments/{payment_id}/status")
def payment_status(payment_id: str, user: CurrentUser = Depends(get_current_user)):
    db = SessionLocal()
    try:
        payment = ledger.get_payment(db, payment_id)
        ensure_owner_or_admin(user, ledger.get_order(db, payment.order_id))
        return {
            "success": True,
            "payment": payment_to_dict(payment, ledger.transactions_for(db, payment.id)),
        }
    finally:
        db.close()
