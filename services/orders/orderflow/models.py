"""
SQLAlchemy ORM models for the Orders service.

Defines the database schema for orders, payments and their status histories.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from .database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_order_number(order_id: str) -> str:
    """Public display value for an order id, e.g. ``ORD-9F3A01BC``."""
    return f"ORD-{order_id[-8:].upper()}"


class Order(Base):
    """
    Order model representing a customer's request for catalog services.

    Attributes:
        id (str): Primary key, opaque order ID
        customer_id (str): ID of the customer who placed the order
        worker_id (str): ID of the assigned service provider (null until claimed)
        items (list): Line items with service, quantity and prices (stored as JSON)
        status (str): Workflow status (see workflow.ORDER_TRANSITIONS)
        subtotal, tax, delivery_fee, discount, total (Decimal): Monetary fields
        notes (dict): Free-text notes keyed by author role
        created_at (datetime): Timestamp when the order was created
    """
    __tablename__ = "orders"

    id = Column(String, primary_key=True, index=True, default=new_id)
    customer_id = Column(String, nullable=False, index=True)
    worker_id = Column(String, nullable=True, index=True)
    items = Column(JSONType, nullable=False, default=list)
    status = Column(String, nullable=False, default="pending", index=True)
    subtotal = Column(Numeric(10, 2), nullable=False, default=0)
    tax = Column(Numeric(10, 2), nullable=False, default=0)
    delivery_fee = Column(Numeric(10, 2), nullable=False, default=0)
    discount = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False, default=0)
    pickup_address = Column(JSONType, nullable=False)
    delivery_address = Column(JSONType, nullable=False)
    pickup_date = Column(DateTime, nullable=False)
    delivery_date = Column(DateTime, nullable=False)
    payment_method = Column(String, nullable=False, default="cash")
    is_urgent = Column(Boolean, nullable=False, default=False)
    priority = Column(String, nullable=False, default="normal")
    notes = Column(JSONType, nullable=False, default=dict)
    cancellation_reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def order_number(self) -> str:
        return format_order_number(self.id)


class OrderEvent(Base):
    """
    OrderEvent model representing historical events in an order's lifecycle.

    Attributes:
        id (int): Primary key, auto-incrementing event ID
        order_id (str): Foreign key to the order
        event_type (str): Type of event ("created", "status_changed", "assigned", "cancelled")
        description (str): Human-readable description of the event
        old_value (str): Previous status (for changes, optional)
        new_value (str): New status (for changes, optional)
        user_id (str): ID of the user who triggered the event (optional)
        created_at (datetime): Timestamp when the event occurred
    """
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)
    user_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Payment(Base):
    """
    Payment model, the 1:1 financial record settling an order.

    Attributes:
        id (str): Primary key, opaque payment ID
        order_id (str): The order this payment settles (unique)
        customer_id (str): Copied from the order at creation
        worker_id (str): Copied from the order, filled in on assignment
        amount (Decimal): Order total at creation, never changed afterwards
        method (str): credit_card, debit_card, bank_transfer, cash or momo
        status (str): Ledger status (see ledger.PAYMENT_TRANSITIONS)
        provider_ref (str): Mobile-money transaction reference used to correlate callbacks
        provider_sub_status (str): Last status reported by the gateway
        provider_transaction_id (str): Gateway-side transaction ID once settled
    """
    __tablename__ = "payments"

    id = Column(String, primary_key=True, index=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    customer_id = Column(String, nullable=False, index=True)
    worker_id = Column(String, nullable=True, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    method = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    provider_ref = Column(String, nullable=True, unique=True, index=True)
    provider_sub_status = Column(String, nullable=True)
    provider_transaction_id = Column(String, nullable=True)
    phone_number = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)


class PaymentEvent(Base):
    """
    Append-only status history of a payment.

    Attributes:
        id (int): Primary key
        payment_id (str): Foreign key to the payment
        status (str): Status the payment moved to
        changed_by (str): Actor ID ("gateway" for provider-driven changes)
        notes (str): Optional free text
        changed_at (datetime): When the change happened
    """
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    payment_id = Column(String, ForeignKey("payments.id"), nullable=False, index=True)
    status = Column(String, nullable=False)
    changed_by = Column(String, nullable=False)
    notes = Column(Text, nullable=False, default="")
    changed_at = Column(DateTime, default=utcnow, nullable=False)
