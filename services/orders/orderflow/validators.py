"""
Enhanced validation utilities for the Orders service.

Provides business rule validation beyond schema validation.
"""
from typing import List, Tuple
from decimal import Decimal
from . import schemas


def validate_order_items(items: List[schemas.OrderItemCreate]) -> Tuple[bool, str]:
    """
    Validate requested order items for business rules.

    Args:
        items: List of requested order items

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "Order must contain at least one item"

    if len(items) > 100:
        return False, "Order cannot contain more than 100 items"

    for item in items:
        if not item.service_id.strip():
            return False, "Every item must reference a service"

        if item.quantity <= 0:
            return False, f"Item {item.service_id}: quantity must be at least 1"

        if item.quantity > 10000:
            return False, f"Item {item.service_id}: quantity exceeds maximum (10000)"

        if item.unit_price is not None:
            if item.unit_price < 0:
                return False, f"Item {item.service_id}: unit price cannot be negative"

            if item.unit_price > Decimal('1000000'):
                return False, f"Item {item.service_id}: unit price exceeds maximum (1,000,000)"

    return True, ""


def validate_schedule(order: schemas.OrderCreate) -> Tuple[bool, str]:
    """
    Validate that the delivery does not happen before the pickup.

    Args:
        order: Order placement data

    Returns:
        Tuple of (is_valid, error_message)
    """
    pickup = order.pickup_date.replace(tzinfo=None)
    delivery = order.delivery_date.replace(tzinfo=None)
    if delivery < pickup:
        return False, "Delivery date cannot be before the pickup date"
    return True, ""


def validate_discount(discount: Decimal, gross: Decimal) -> Tuple[bool, str]:
    """
    Validate that a discount does not exceed the amount it is taken from.

    Args:
        discount: Requested discount
        gross: subtotal + tax + delivery fee

    Returns:
        Tuple of (is_valid, error_message)
    """
    if discount < 0:
        return False, "Discount cannot be negative"

    if discount > gross:
        return False, f"Discount {discount} exceeds order amount {gross}"

    return True, ""
