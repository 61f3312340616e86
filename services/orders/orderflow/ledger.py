"""
Payment ledger: the payment state machine and its status history.

The ledger knows nothing about orders beyond the snapshot it takes when a
payment is created. Cross-entity rules (a completed payment confirming its
order) live in the coordinator.
"""
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .clients.momo_client import GatewayResult
from .errors import DuplicatePayment, InvalidTransition, NotFound, ValidationError

logger = logging.getLogger(__name__)

PAYMENT_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"processing", "cancelled"}),
    "processing": frozenset({"completed", "failed", "cancelled"}),
    "failed": frozenset({"pending"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}

TERMINAL_STATUSES = frozenset({"completed", "cancelled"})

# Gateway sub-status -> ledger status
SUB_STATUS_TARGETS = {
    "completed": "completed",
    "failed": "failed",
    "pending": "processing",
}

PAYMENT_METHODS = ("credit_card", "debit_card", "bank_transfer", "cash", "momo")

CENT = Decimal("0.01")


def can_transition(current: str, target: str) -> bool:
    return target in PAYMENT_TRANSITIONS.get(current, frozenset())


def get_payment(db: Session, payment_id: str) -> models.Payment:
    payment = db.query(models.Payment).filter(models.Payment.id == payment_id).first()
    if payment is None:
        raise NotFound(f"Payment {payment_id} not found")
    return payment


def get_payment_for_order(db: Session, order_id: str) -> Optional[models.Payment]:
    return db.query(models.Payment).filter(models.Payment.order_id == order_id).first()


def get_by_provider_ref(db: Session, provider_ref: str) -> Optional[models.Payment]:
    return db.query(models.Payment).filter(models.Payment.provider_ref == provider_ref).first()


def get_history(db: Session, payment_id: str) -> List[models.PaymentEvent]:
    return (
        db.query(models.PaymentEvent)
        .filter(models.PaymentEvent.payment_id == payment_id)
        .order_by(models.PaymentEvent.id.asc())
        .all()
    )


def create_payment(db: Session, order: models.Order, method: str) -> models.Payment:
    """
    Add the payment for an order, snapshotting amount, customer and worker.

    NOTE: This function does not commit; the caller owns the unit of work.

    Raises:
        ValidationError: Unknown payment method
        DuplicatePayment: The order already has a payment
    """
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"Unknown payment method: {method}")
    if get_payment_for_order(db, order.id) is not None:
        raise DuplicatePayment(f"Payment already exists for order {order.id}")

    payment = models.Payment(
        id=models.new_id(),
        order_id=order.id,
        customer_id=order.customer_id,
        worker_id=order.worker_id,
        amount=order.total,
        method=method,
        status="pending",
    )
    db.add(payment)
    try:
        db.flush()
    except IntegrityError:
        # Unique order_id: a concurrent request created it first
        raise DuplicatePayment(f"Payment already exists for order {order.id}")
    return payment


def _apply(
    db: Session,
    payment: models.Payment,
    target: str,
    actor_id: str,
    notes: str = "",
    extra: Optional[dict] = None,
) -> None:
    """Conditionally write one edge and append its history entry, without committing."""
    current = payment.status
    if not can_transition(current, target):
        raise InvalidTransition(current, target)

    now = models.utcnow()
    values = {"status": target, "updated_at": now}
    if target == "completed":
        values["completed_at"] = now
    values.update(extra or {})

    result = db.execute(
        update(models.Payment)
        .where(models.Payment.id == payment.id, models.Payment.status == current)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise InvalidTransition(
            current, target,
            f"Payment {payment.id} changed status concurrently; {current} -> {target} rejected",
        )

    db.add(models.PaymentEvent(
        payment_id=payment.id,
        status=target,
        changed_by=actor_id,
        notes=notes or "",
        changed_at=now,
    ))
    db.flush()
    db.expire(payment)
    logger.info(f"Payment {payment.id}: {current} -> {target} by {actor_id}")


def transition(
    db: Session,
    payment_id: str,
    target: str,
    actor_id: str,
    notes: str = "",
    transaction_id: Optional[str] = None,
    commit: bool = True,
) -> models.Payment:
    """
    Move a payment along one declared edge.

    Raises:
        ValidationError: Unknown target status
        NotFound: Unknown payment
        InvalidTransition: Target not reachable, or the status moved concurrently
    """
    if target not in PAYMENT_TRANSITIONS:
        raise ValidationError(f"Unknown payment status: {target}")

    payment = get_payment(db, payment_id)
    extra = {"provider_transaction_id": transaction_id} if transaction_id else None
    try:
        _apply(db, payment, target, actor_id, notes, extra)
        if commit:
            db.commit()
    except Exception:
        db.rollback()
        raise
    return payment


def _gateway_path(current: str, target: str) -> List[str]:
    """Edges to walk from current to a gateway-reported target."""
    if current == "failed" and target in ("processing", "completed"):
        # Late confirmation: re-enter through the retry edge
        path = ["pending", "processing"]
    elif current == "pending" and target in ("completed", "failed"):
        path = ["processing"]
    else:
        path = []
    if target not in path:
        path.append(target)
    return path


def apply_gateway_result(
    db: Session,
    payment_id: str,
    result: GatewayResult,
    actor_id: str = "gateway",
) -> Tuple[models.Payment, bool]:
    """
    Apply a classified gateway answer to a payment.

    A payment that is already completed is left untouched, so the same
    confirmation may be delivered any number of times. A completion whose
    amount differs from the payment amount is recorded as a failure.

    Returns:
        (payment, changed) where changed is False for no-op deliveries

    Raises:
        NotFound: Unknown payment
        InvalidTransition: The payment cannot reach the reported status
            (for instance it was cancelled)
    """
    payment = get_payment(db, payment_id)
    target = SUB_STATUS_TARGETS.get(result.sub_status)
    if target is None:
        raise ValidationError(f"Unknown gateway status: {result.sub_status}")

    notes = result.message or f"Gateway reported {result.sub_status}"
    if target == "completed" and result.amount is not None:
        reported = Decimal(str(result.amount)).quantize(CENT)
        expected = Decimal(str(payment.amount)).quantize(CENT)
        if reported != expected:
            logger.warning(
                f"Payment {payment.id}: gateway reported amount {reported}, expected {expected}"
            )
            target = "failed"
            notes = f"Amount mismatch: gateway reported {reported}, expected {expected}"

    if payment.status == "completed":
        logger.warning(f"Payment {payment.id}: duplicate gateway notification ({result.sub_status}) ignored")
        return payment, False

    provider = {"provider_sub_status": result.sub_status}
    if result.provider_transaction_id:
        provider["provider_transaction_id"] = result.provider_transaction_id

    try:
        if payment.status == target:
            db.execute(
                update(models.Payment)
                .where(models.Payment.id == payment.id)
                .values(**provider)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            db.expire(payment)
            return payment, False

        for step in _gateway_path(payment.status, target):
            _apply(db, payment, step, actor_id, notes, provider)
        db.commit()
    except Exception:
        db.rollback()
        raise

    return payment, True


def attach_provider_reference(db: Session, payment_id: str, provider_ref: str, phone_number: str) -> models.Payment:
    """Record the transaction reference before the gateway is called."""
    payment = get_payment(db, payment_id)
    payment.provider_ref = provider_ref
    payment.phone_number = phone_number
    payment.provider_sub_status = None
    payment.provider_transaction_id = None
    db.commit()
    db.refresh(payment)
    return payment


def assign_worker(db: Session, order_id: str, worker_id: Optional[str], commit: bool = True) -> None:
    """
    Make the payment of an order follow the order's worker.

    Called with the claiming worker on self-assignment and with None when the
    worker releases the order, so the payment never names a previous worker.
    """
    try:
        db.execute(
            update(models.Payment)
            .where(models.Payment.order_id == order_id)
            .values(worker_id=worker_id, updated_at=models.utcnow())
            .execution_options(synchronize_session=False)
        )
        if commit:
            db.commit()
    except Exception:
        db.rollback()
        raise
