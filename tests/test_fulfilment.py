from decimal import Decimal

from conftest import TestingSessionLocal, create_order
from storefront.auth import CurrentUser
from storefront.models import Payment, Transaction


def _as_admin(current_user):
    current_user["user"] = CurrentUser(id="admin-1", is_admin=True)


def _set_status(client, order_id, status):
    return client.put(f"/orders/{order_id}/status", json={"status": status})


def test_cash_order_lifecycle_collects_payment_on_delivery(client, current_user, dispatcher):
    order_id = create_order(client, payment_method="cash", price=8, quantity=2)["order"]["_id"]
    _as_admin(current_user)

    for status in ("processing", "shipped", "delivered"):
        response = _set_status(client, order_id, status)
        assert response.status_code == 200
        assert response.json()["order"]["status"] == status

    order = response.json()["order"]
    assert order["paymentStatus"] == "paid"
    db = TestingSessionLocal()
    payment = db.query(Payment).filter_by(order_id=order_id).one()
    assert payment.status == "completed"
    txns = db.query(Transaction).filter_by(payment_id=payment.id).all()
    assert [(t.transaction_type, t.amount) for t in txns] == [("capture", Decimal("16.00"))]
    db.close()
    assert dispatcher.calls == [(order_id, "Cash Payment Collected")]


def test_invalid_transition_is_rejected(client, current_user):
    order_id = create_order(client, payment_method="cash")["order"]["_id"]
    _as_admin(current_user)

    response = _set_status(client, order_id, "delivered")

    assert response.status_code == 400
    assert response.json()["message"] == "Cannot move order from confirmed to delivered"


def test_unknown_status_is_rejected(client, current_user):
    order_id = create_order(client, payment_method="cash")["order"]["_id"]
    _as_admin(current_user)

    assert _set_status(client, order_id, "teleported").status_code == 400


def test_cancelling_pending_order_cancels_open_payment(client, current_user):
    order_id = create_order(client, payment_method="khqr")["order"]["_id"]
    _as_admin(current_user)

    response = _set_status(client, order_id, "cancelled")

    assert response.status_code == 200
    assert response.json()["order"]["paymentStatus"] == "cancelled"
    db = TestingSessionLocal()
    assert db.query(Payment).filter_by(order_id=order_id).one().status == "cancelled"
    db.close()


def test_gateway_order_cannot_be_marked_refunded_directly(client, current_user):
    order_id = create_order(client, payment_method="khqr")["order"]["_id"]
    client.put(f"/orders/{order_id}/verify-payment", json={
        "paymentGateway": "khqr", "transactionId": "T", "status": "paid",
    })
    _as_admin(current_user)
    for status in ("processing", "shipped", "delivered"):
        assert _set_status(client, order_id, status).status_code == 200

    assert _set_status(client, order_id, "refunded").status_code == 400


def test_status_update_requires_admin(client):
    order_id = create_order(client, payment_method="cash")["order"]["_id"]

    response = _set_status(client, order_id, "processing")

    assert response.status_code == 403
    assert response.json()["success"] is False


def test_refunding_delivered_cash_order_refunds_its_payment(client, current_user):
    order_id = create_order(client, payment_method="cash", price=8, quantity=2)["order"]["_id"]
    _as_admin(current_user)
    for status in ("processing", "shipped", "delivered"):
        assert _set_status(client, order_id, status).status_code == 200

    response = _set_status(client, order_id, "refunded")

    assert response.status_code == 200
    order = response.json()["order"]
    assert order["status"] == "refunded"
    assert order["paymentStatus"] == "refunded"
    db = TestingSessionLocal()
    payment = db.query(Payment).filter_by(order_id=order_id).one()
    assert payment.status == "refunded"
    assert payment.refund_data["source"] == "cash-on-delivery"
    txns = db.query(Transaction).filter_by(payment_id=payment.id).all()
    assert sorted((t.transaction_type, t.amount) for t in txns) == [
        ("capture", Decimal("16.00")),
        ("refund", Decimal("16.00")),
    ]
    db.close()
