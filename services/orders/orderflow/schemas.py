"""
Pydantic schemas for request/response validation in the Orders service.

These schemas define the structure of data for API requests and responses.
"""
from datetime import datetime
from typing import Optional, List, Literal
from decimal import Decimal
from pydantic import BaseModel, Field

OrderStatus = Literal[
    "pending", "confirmed", "assigned", "in_progress", "ready_for_pickup", "completed", "cancelled"
]
PaymentStatus = Literal["pending", "processing", "completed", "failed", "cancelled"]
PaymentMethod = Literal["credit_card", "debit_card", "bank_transfer", "cash", "momo"]
SubStatus = Literal["pending", "completed", "failed"]


class OrderItemCreate(BaseModel):
    """Schema for a requested line item. The unit price defaults to the catalog price."""
    service_id: str = Field(..., description="Service ID from the catalog")
    quantity: int = Field(1, ge=1, description="Quantity ordered")
    unit_price: Optional[Decimal] = Field(None, ge=0, description="Price per unit")
    special_instructions: Optional[str] = Field(None, max_length=200)


class OrderItem(BaseModel):
    """Schema for a priced order line item."""
    service_id: str
    service_name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    special_instructions: Optional[str] = None


class Address(BaseModel):
    type: Literal["home", "work", "other"] = "home"
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: Optional[str] = None
    zip_code: Optional[str] = None
    instructions: Optional[str] = None


class OrderCreate(BaseModel):
    """
    Schema for placing a new order.

    Totals are not accepted from the client; they are always computed from the
    line items, the configured tax rate and the delivery fee.
    """
    items: List[OrderItemCreate] = Field(..., description="Order line items")
    pickup_address: Address
    delivery_address: Address
    pickup_date: datetime
    delivery_date: datetime
    payment_method: PaymentMethod = "cash"
    is_urgent: bool = False
    priority: Literal["low", "normal", "high", "urgent"] = "normal"
    discount: Decimal = Field(Decimal("0"), ge=0)
    special_instructions: Optional[str] = Field(None, max_length=500)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    notes: Optional[str] = Field(None, max_length=200)


class Order(BaseModel):
    """
    Schema for order responses, includes all database fields.

    Attributes:
        id (str): Order's unique identifier
        order_number (str): Display value derived from the id
        customer_id (str): ID of the customer who placed the order
        worker_id (str): Assigned service provider, if any
        total (Decimal): subtotal + tax + delivery_fee - discount
        status (str): Order status
        items (List[OrderItem]): Order line items
        created_at (datetime): When the order was created
    """
    id: str
    order_number: str
    customer_id: str
    worker_id: Optional[str] = None
    items: List[OrderItem]
    status: str
    subtotal: Decimal
    tax: Decimal
    delivery_fee: Decimal
    discount: Decimal
    total: Decimal
    pickup_address: Address
    delivery_address: Address
    pickup_date: datetime
    delivery_date: datetime
    payment_method: str
    is_urgent: bool
    priority: str
    notes: dict
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class OrderEvent(BaseModel):
    """
    Schema for order timeline events.

    Attributes:
        id (int): Event ID
        order_id (str): Order identifier
        event_type (str): Type of event (created, status_changed, assigned, cancelled)
        description (str): Human-readable event description
        old_value (str): Previous value (optional)
        new_value (str): New value (optional)
        user_id (str): User who triggered the event (optional)
        created_at (datetime): When the event occurred
    """
    id: int
    order_id: str
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentCreate(BaseModel):
    order_id: str
    method: PaymentMethod = "cash"


class PaymentStatusUpdate(BaseModel):
    status: PaymentStatus
    transaction_id: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=200)


class MoMoPaymentRequest(BaseModel):
    phone_number: str = Field(..., min_length=1)
    customer_name: Optional[str] = None


class GatewayCallback(BaseModel):
    """Notification pushed by the mobile-money provider."""
    provider_ref: str = Field(..., min_length=1)
    status: SubStatus
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    message: str = ""


class Payment(BaseModel):
    id: str
    order_id: str
    customer_id: str
    worker_id: Optional[str] = None
    amount: Decimal
    method: str
    status: str
    provider_ref: Optional[str] = None
    provider_sub_status: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    phone_number: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentEvent(BaseModel):
    id: int
    payment_id: str
    status: str
    changed_by: str
    notes: str
    changed_at: datetime

    class Config:
        from_attributes = True


class MoMoPaymentResponse(BaseModel):
    """Result of a mobile-money initiation or status check."""
    payment: Payment
    provider_ref: Optional[str] = None
    gateway_status: str
    message: str


class OrderWithPayment(Order):
    """Response of order placement: the order and the payment created with it."""
    payment: Payment
