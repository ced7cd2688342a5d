import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from storefront.database import Base


def _new_id():
    return uuid.uuid4().hex


def utcnow():
    return datetime.now(timezone.utc)


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    QR_BANK = "qr-bank"
    CASH = "cash"


# Tags used by older clients, mapped onto the canonical methods.
PAYMENT_METHOD_ALIASES = {
    "card": PaymentMethod.CARD,
    "card-network": PaymentMethod.CARD,
    "stripe": PaymentMethod.CARD,
    "paypal": PaymentMethod.CARD,
    "qr-bank": PaymentMethod.QR_BANK,
    "khqr": PaymentMethod.QR_BANK,
    "cash": PaymentMethod.CASH,
    "cod": PaymentMethod.CASH,
}


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"


class OrderPaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


OPEN_PAYMENT_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value)


class TransactionType(str, enum.Enum):
    AUTHORIZATION = "authorization"
    CAPTURE = "capture"
    REFUND = "refund"
    VOID = "void"


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(32), primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    customer_email = Column(String)

    subtotal = Column(Numeric(12, 2), nullable=False)
    shipping = Column(Numeric(12, 2), nullable=False, default=0)
    tax = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    payment_method = Column(String, nullable=False)               # card | qr-bank | cash
    status = Column(String, nullable=False, default=OrderStatus.PENDING.value)
    payment_status = Column(String, nullable=False, default=OrderPaymentStatus.PENDING.value)
    payment_result = Column(JSON)
    paid_at = Column(DateTime(timezone=True))

    shipping_address = Column(JSON, nullable=False)              # address, city, postalCode, country, coordinates?

    # Gateway correlation
    card_session_id = Column(String, index=True)
    qr_reference = Column(String, index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    items = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan",
        order_by="OrderItem.position", lazy="selectin",
    )


class OrderItem(Base):
    """Price/name snapshot of one product at checkout time. Never updated."""

    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(String, nullable=False)
    name = Column(String)
    image = Column(String)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        # At most one open payment attempt per order.
        Index(
            "uq_payments_open_per_order", "order_id", unique=True,
            sqlite_where=text("status IN ('pending', 'processing')"),
            postgresql_where=text("status IN ('pending', 'processing')"),
        ),
    )

    id = Column(String(32), primary_key=True, default=_new_id)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    payment_method = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    gateway = Column(String, nullable=False)
    gateway_transaction_id = Column(String)     # e.g. payment intent / bank txn id
    gateway_payment_id = Column(String, index=True)   # e.g. checkout session id
    payment_reference = Column(String, index=True)    # e.g. KHQR_<orderId>
    payment_data = Column(JSON)
    paid_at = Column(DateTime(timezone=True))
    captured = Column(Boolean, nullable=False, default=False)
    refund_data = Column(JSON)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Transaction(Base):
    """Append-only audit record of one gateway interaction."""

    __tablename__ = "transactions"
    __table_args__ = (UniqueConstraint("payment_id", "transaction_type"),)

    id = Column(String(32), primary_key=True, default=_new_id)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    payment_id = Column(String(32), ForeignKey("payments.id"), nullable=False, index=True)
    transaction_type = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    gateway = Column(String, nullable=False)
    gateway_transaction_id = Column(String, nullable=False)
    status = Column(String, nullable=False)
    gateway_response = Column(JSON)
    extra = Column("metadata", JSON)
    processed_at = Column(DateTime(timezone=True), default=utcnow)


class Cart(Base):
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, unique=True, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    items = relationship(
        "CartItem", back_populates="cart", cascade="all, delete-orphan",
        order_by="CartItem.id", lazy="selectin",
    )


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cart_id = Column(Integer, ForeignKey("carts.id"), nullable=False, index=True)
    product_id = Column(String, nullable=False)
    name = Column(String)
    image = Column(String)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Numeric(12, 2), nullable=False)

    cart = relationship("Cart", back_populates="items")


class RateLimitHit(Base):
    __tablename__ = "rate_limit_hits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
