"""Outbound payment-outcome notifications.

The reconciliation handler only knows the ``NotificationDispatcher`` interface;
the concrete channels (messaging bot, email, in-app feed) are delivered
elsewhere and are represented here by ``ChannelSender`` callables.
"""
import logging
from decimal import Decimal

logger = logging.getLogger(__name__)

OPERATIONS_CHANNEL = "telegram"
BUYER_CHANNELS = ("email", "in-app")


def _money(value) -> str:
    return "%.2f" % Decimal(value or 0)


def format_order_notification(order, title="Payment Completed") -> str:
    if not order.items:
        return "Order has no items."

    lines = []
    for item in order.items:
        line_total = item.unit_price * item.quantity
        lines.append(
            f"- {item.name or item.product_id} x{item.quantity} @ ${_money(item.unit_price)}"
            f" (Subtotal: ${_money(line_total)})"
        )

    address = order.shipping_address or {}
    shipping_to = ", ".join(
        str(address[key]) for key in ("address", "city", "postalCode", "country")
        if address.get(key)
    ) or "N/A"
    created = order.created_at.strftime("%Y-%m-%d %H:%M") if order.created_at else "N/A"

    return "\n".join([
        f"<b>{title}</b>",
        "",
        f"<b>Order ID:</b> <code>{order.id}</code>",
        f"<b>Date:</b> {created}",
        f"<b>Customer:</b> {order.customer_email or order.user_id}",
        f"<b>Payment Method:</b> {order.payment_method}",
        f"<b>Shipping Address:</b> {shipping_to}",
        f"<b>Status:</b> {order.status}",
        "",
        "<b>Items:</b>",
        *lines,
        "",
        f"<b>Subtotal:</b> ${_money(order.subtotal)}",
        f"<b>Shipping:</b> ${_money(order.shipping)}",
        f"<b>Tax:</b> ${_money(order.tax)}",
        f"<b>Total:</b> ${_money(order.total)}",
    ])


class NotificationDispatcher:
    """Announces payment outcomes for an order."""

    def notify(self, order, title: str, message: str = None):
        raise NotImplementedError


def log_sender(channel):
    def send(recipient, title, message):
        logger.info("[%s] to %s: %s", channel, recipient, title)
    return send


class ChannelDispatcher(NotificationDispatcher):
    """Fans one notification out to the operations channel and the buyer.

    ``senders`` maps channel name to ``send(recipient, title, message)``. A
    failing channel is logged and the remaining channels still run.
    """

    def __init__(self, senders=None):
        self.senders = senders or {
            channel: log_sender(channel)
            for channel in (OPERATIONS_CHANNEL,) + BUYER_CHANNELS
        }

    def recipients(self, order):
        yield OPERATIONS_CHANNEL, "operations"
        if order.customer_email:
            yield "email", order.customer_email
        yield "in-app", order.user_id

    def notify(self, order, title, message=None):
        message = message or format_order_notification(order, title)
        delivered = []
        for channel, recipient in self.recipients(order):
            send = self.senders.get(channel)
            if send is None:
                continue
            try:
                send(recipient, title, message)
            except Exception:
                logger.exception("Notification via %s failed for order %s", channel, order.id)
                continue
            delivered.append(channel)
        return delivered


_default_dispatcher = ChannelDispatcher()


def get_dispatcher() -> NotificationDispatcher:
    return _default_dispatcher
