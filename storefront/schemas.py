from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Coordinates(_CamelModel):
    lat: float
    lng: float


class ShippingAddress(_CamelModel):
    address: str
    city: str
    postal_code: str = Field(alias="postalCode")
    country: str
    coordinates: Optional[Coordinates] = None


class OrderItemRequest(_CamelModel):
    product_id: Optional[str] = Field(default=None, alias="productId")
    name: Optional[str] = None
    image: Optional[str] = None
    quantity: Optional[int] = None
    price: Optional[Decimal] = None


class CreateOrderRequest(_CamelModel):
    shipping_address: Optional[ShippingAddress] = Field(default=None, alias="shippingAddress")
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")
    items: Optional[List[OrderItemRequest]] = None
    subtotal: Optional[Decimal] = None
    shipping: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    total: Optional[Decimal] = None
    currency: Optional[str] = None


class VerifyPaymentRequest(_CamelModel):
    payment_gateway: Optional[str] = Field(default=None, alias="paymentGateway")
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    status: Optional[str] = None


class RefundRequest(_CamelModel):
    reason: Optional[str] = None


class OrderStatusRequest(_CamelModel):
    status: str


def _iso(value):
    return value.isoformat() if value else None


def order_item_to_dict(item):
    return {
        "productId": item.product_id,
        "name": item.name,
        "image": item.image,
        "quantity": item.quantity,
        "price": item.unit_price,
    }


def order_to_dict(order, full=False):
    """Client-safe view of an order; ``full`` adds payment details."""
    data = {
        "_id": order.id,
        "items": [order_item_to_dict(i) for i in order.items],
        "subtotal": order.subtotal,
        "shipping": order.shipping,
        "tax": order.tax,
        "total": order.total,
        "currency": order.currency,
        "paymentMethod": order.payment_method,
        "status": order.status,
        "paymentStatus": order.payment_status,
        "createdAt": _iso(order.created_at),
    }
    if full:
        data.update({
            "user": order.user_id,
            "shippingAddress": order.shipping_address,
            "paymentResult": order.payment_result,
            "paidAt": _iso(order.paid_at),
            "paymentReference": order.qr_reference or order.card_session_id,
            "updatedAt": _iso(order.updated_at),
        })
    return data


def transaction_to_dict(txn):
    return {
        "_id": txn.id,
        "transactionType": txn.transaction_type,
        "amount": txn.amount,
        "currency": txn.currency,
        "gateway": txn.gateway,
        "gatewayTransactionId": txn.gateway_transaction_id,
        "status": txn.status,
        "processedAt": _iso(txn.processed_at),
    }


def payment_to_dict(payment, transactions=None):
    data = {
        "_id": payment.id,
        "orderId": payment.order_id,
        "paymentMethod": payment.payment_method,
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status,
        "gateway": payment.gateway,
        "gatewayTransactionId": payment.gateway_transaction_id,
        "paymentReference": payment.payment_reference,
        "paidAt": _iso(payment.paid_at),
        "captured": payment.captured,
        "createdAt": _iso(payment.created_at),
    }
    if transactions is not None:
        data["transactions"] = [transaction_to_dict(t) for t in transactions]
    return data
