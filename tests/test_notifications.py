from decimal import Decimal

from storefront.models import Order, OrderItem
from storefront.notifications import ChannelDispatcher, format_order_notification


def _order():
    order = Order(
        id="abc123",
        user_id="user-1",
        customer_email="buyer@example.com",
        subtotal=Decimal("30.00"),
        shipping=Decimal("5.00"),
        tax=Decimal("0.00"),
        total=Decimal("35.00"),
        currency="USD",
        payment_method="qr-bank",
        status="confirmed",
        shipping_address={"address": "1 Main St", "city": "Phnom Penh",
                          "postalCode": "12000", "country": "KH"},
    )
    order.items.append(OrderItem(product_id="p1", name="Mug", quantity=3, unit_price=Decimal("10.00")))
    return order


def test_format_order_notification():
    message = format_order_notification(_order(), "Payment Completed")

    assert message.startswith("<b>Payment Completed</b>")
    assert "<code>abc123</code>" in message
    assert "- Mug x3 @ $10.00 (Subtotal: $30.00)" in message
    assert "1 Main St, Phnom Penh, 12000, KH" in message
    assert "<b>Total:</b> $35.00" in message


def test_dispatcher_fans_out_and_survives_failing_channel(mocker):
    email = mocker.Mock(side_effect=RuntimeError("smtp down"))
    telegram = mocker.Mock()
    in_app = mocker.Mock()
    dispatcher = ChannelDispatcher({"telegram": telegram, "email": email, "in-app": in_app})

    delivered = dispatcher.notify(_order(), "Payment Completed")

    assert delivered == ["telegram", "in-app"]
    telegram.assert_called_once()
    assert telegram.call_args.args[0] == "operations"
    email.assert_called_once()
    assert email.call_args.args[0] == "buyer@example.com"
    assert in_app.call_args.args[0] == "user-1"
