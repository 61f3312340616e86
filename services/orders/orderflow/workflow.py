"""
Order workflow: the order state machine, totals and assignment.

The edge table below is the only definition of which order status changes
are legal. Every status write is a conditional UPDATE against the status that
was just read, so a concurrent change makes the later write fail instead of
silently overwriting.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import arbiter, models, schemas
from .auth import ADMIN, CUSTOMER, SERVICE_PROVIDER, SYSTEM, CurrentUser
from .errors import AlreadyAssigned, Forbidden, InvalidTransition, NotAvailable, NotFound, ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

ORDER_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"confirmed", "cancelled"}),
    "confirmed": frozenset({"assigned", "in_progress", "cancelled"}),
    "assigned": frozenset({"confirmed", "in_progress", "cancelled"}),
    "in_progress": frozenset({"ready_for_pickup", "cancelled"}),
    "ready_for_pickup": frozenset({"completed", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ORDER_TRANSITIONS.items() if not targets)

# Notes are partitioned by author role; the system writes into the admin slot
NOTE_KEYS = {
    CUSTOMER: "customer",
    SERVICE_PROVIDER: "service_provider",
    ADMIN: "admin",
    SYSTEM: "admin",
}


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def order_number(order_id: str) -> str:
    return models.format_order_number(order_id)


def can_transition(current: str, target: str) -> bool:
    return target in ORDER_TRANSITIONS.get(current, frozenset())


def price_line(
    service_id: str,
    service_name: str,
    quantity: int,
    unit_price,
    special_instructions: Optional[str] = None,
) -> dict:
    """Build a stored line item; prices are kept as strings in the JSON column."""
    unit = money(unit_price)
    return {
        "service_id": service_id,
        "service_name": service_name,
        "quantity": quantity,
        "unit_price": str(unit),
        "total_price": str(money(unit * quantity)),
        "special_instructions": special_instructions or "",
    }


def compute_totals(
    line_items: Iterable[dict],
    tax_rate: Decimal,
    delivery_fee: Decimal,
    discount: Decimal = Decimal("0"),
) -> Dict[str, Decimal]:
    """
    Compute the monetary fields of an order from its line items.

    Example:
        2 x 15.00 + 1 x 25.00 at 10% tax, 5.00 delivery, no discount
        -> subtotal 55.00, tax 5.50, total 65.50
    """
    subtotal = sum((money(item["unit_price"]) * item["quantity"] for item in line_items), Decimal("0"))
    subtotal = money(subtotal)
    tax = money(subtotal * Decimal(str(tax_rate)))
    fee = money(delivery_fee)
    off = money(discount)
    return {
        "subtotal": subtotal,
        "tax": tax,
        "delivery_fee": fee,
        "discount": off,
        "total": order_total(subtotal, tax, fee, off),
    }


def order_total(subtotal, tax, delivery_fee, discount) -> Decimal:
    return money(money(subtotal) + money(tax) + money(delivery_fee) - money(discount))


def get_order(db: Session, order_id: str) -> models.Order:
    order = db.query(models.Order).filter(models.Order.id == order_id).first()
    if order is None:
        raise NotFound(f"Order {order_id} not found")
    return order


def authorize(order: models.Order, actor: CurrentUser) -> None:
    """
    Workers and customers may only act on their own orders.

    Raises:
        Forbidden: If the actor does not own the order
    """
    if actor.role in (ADMIN, SYSTEM):
        return
    if actor.role == SERVICE_PROVIDER and order.worker_id == actor.id:
        return
    if actor.role == CUSTOMER and order.customer_id == actor.id:
        return
    raise Forbidden(f"Not authorized to change order {order.id}")


def log_order_event(
    db: Session,
    order_id: str,
    event_type: str,
    description: str,
    old_value: str = None,
    new_value: str = None,
    user_id: str = None,
) -> models.OrderEvent:
    """Append an entry to the order timeline (flushed, not committed)."""
    event = models.OrderEvent(
        order_id=order_id,
        event_type=event_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
        user_id=user_id,
    )
    db.add(event)
    return event


def create_order(
    db: Session,
    customer_id: str,
    order: schemas.OrderCreate,
    line_items: List[dict],
    totals: Dict[str, Decimal],
) -> models.Order:
    """
    Add a new pending order and its ``created`` timeline entry.

    NOTE: This function does not commit; the caller owns the unit of work so
    the order and its payment are written together.
    """
    db_order = models.Order(
        id=models.new_id(),
        customer_id=customer_id,
        worker_id=None,
        items=line_items,
        status="pending",
        subtotal=totals["subtotal"],
        tax=totals["tax"],
        delivery_fee=totals["delivery_fee"],
        discount=totals["discount"],
        total=totals["total"],
        pickup_address=order.pickup_address.model_dump(),
        delivery_address=order.delivery_address.model_dump(),
        pickup_date=order.pickup_date,
        delivery_date=order.delivery_date,
        payment_method=order.payment_method,
        is_urgent=order.is_urgent,
        priority=order.priority,
        notes={
            "customer": order.special_instructions or "",
            "service_provider": "",
            "admin": "",
        },
    )
    db.add(db_order)
    db.flush()
    log_order_event(
        db,
        order_id=db_order.id,
        event_type="created",
        description="Order created with status 'pending'",
        new_value="pending",
        user_id=customer_id,
    )
    db.flush()
    return db_order


def transition(
    db: Session,
    order_id: str,
    requested_by: CurrentUser,
    target: str,
    notes: Optional[str] = None,
    commit: bool = True,
) -> models.Order:
    """
    Move an order to a new status.

    Administrators bypass the edge table; every other actor (the internal
    system actor included) is held to ORDER_TRANSITIONS.

    Args:
        db: Database session
        order_id: Order to change
        requested_by: Acting user
        target: Requested status
        notes: Optional note, stored under the requester's role
        commit: Commit on success; pass False to join a larger unit of work

    Returns:
        The updated order

    Raises:
        ValidationError: Unknown target status
        NotFound: Unknown order
        Forbidden: Requester does not own the order
        InvalidTransition: Target not reachable, the status moved concurrently,
            or a non-admin asked for ``assigned``
    """
    if target not in ORDER_TRANSITIONS:
        raise ValidationError(f"Unknown order status: {target}")

    order = get_order(db, order_id)
    authorize(order, requested_by)

    current = order.status
    if requested_by.role != ADMIN:
        if not can_transition(current, target):
            raise InvalidTransition(current, target)
        # Only the arbiter sets a worker together with the assigned status
        if target == "assigned":
            raise InvalidTransition(
                current, target,
                f"Order {order_id} can only become assigned through self-assignment",
            )

    values = {"status": target, "updated_at": models.utcnow()}
    if current == "assigned" and target == "confirmed":
        # Released by the worker: claimable again
        values["worker_id"] = None
    if notes:
        role_notes = dict(order.notes or {})
        role_notes[NOTE_KEYS.get(requested_by.role, "admin")] = notes
        values["notes"] = role_notes
    if target == "cancelled":
        values["cancellation_reason"] = notes or None

    try:
        result = db.execute(
            update(models.Order)
            .where(models.Order.id == order_id, models.Order.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidTransition(
                current, target,
                f"Order {order_id} changed status concurrently; {current} -> {target} rejected",
            )

        log_order_event(
            db,
            order_id=order_id,
            event_type="cancelled" if target == "cancelled" else "status_changed",
            description=f"Status changed from '{current}' to '{target}'" + (f": {notes}" if notes else ""),
            old_value=current,
            new_value=target,
            user_id=requested_by.id,
        )
        db.flush()
        if commit:
            db.commit()
    except Exception:
        db.rollback()
        raise

    db.expire(order)
    logger.info(f"Order {order_id}: {current} -> {target} by {requested_by.role} {requested_by.id}")
    return order


def assign_self(db: Session, order_id: str, worker_id: str, commit: bool = True) -> models.Order:
    """
    Claim an unclaimed order for the calling service provider.

    A second claim by the same worker after success raises AlreadyAssigned;
    callers compare ``order.worker_id`` with their own id to detect that.
    Pass ``commit=False`` to join a larger unit of work.

    Raises:
        NotFound: Unknown order
        NotAvailable: Order is not pending or confirmed
        AlreadyAssigned: Order already has a worker, or another claim won the race
    """
    order = get_order(db, order_id)
    # A claimed order reports AlreadyAssigned whatever its status
    if order.worker_id is not None:
        raise AlreadyAssigned(order_id, order.worker_id)
    if order.status not in arbiter.CLAIMABLE_STATUSES:
        raise NotAvailable(f"Order {order_id} is not available for assignment (status '{order.status}')")

    previous = order.status
    try:
        if not arbiter.claim(db, order_id, worker_id):
            db.rollback()
            latest = get_order(db, order_id)
            if latest.worker_id is not None:
                raise AlreadyAssigned(order_id, latest.worker_id)
            raise NotAvailable(f"Order {order_id} is not available for assignment (status '{latest.status}')")

        log_order_event(
            db,
            order_id=order_id,
            event_type="assigned",
            description=f"Self-assigned by service provider {worker_id}",
            old_value=previous,
            new_value="assigned",
            user_id=worker_id,
        )
        db.flush()
        if commit:
            db.commit()
    except Exception:
        db.rollback()
        raise

    db.expire(order)
    logger.info(f"Order {order_id} self-assigned to {worker_id}")
    return order
