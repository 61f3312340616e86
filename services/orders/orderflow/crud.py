"""
Read and purge operations for the Orders service.

Status changes do not live here: they go through the workflow and the ledger
so every write is checked against the state tables.
"""
from datetime import datetime
from typing import List, Optional
from sqlalchemy.orm import Session
from sqlalchemy import delete as sqla_delete, or_
import logging
from . import models
from .arbiter import CLAIMABLE_STATUSES

# Set up logging
logger = logging.getLogger(__name__)

def get_order(db: Session, order_id: str) -> Optional[models.Order]:
    """
    Retrieve a single order by ID.

    Args:
        db: Database session
        order_id: ID of the order to retrieve

    Returns:
        Order object or None if not found
    """
    return db.query(models.Order).filter(models.Order.id == order_id).first()

def get_orders(
    db: Session,
    status: Optional[str] = None,
    customer_id: Optional[str] = None,
    worker_id: Optional[str] = None,
    available: bool = False,
    skip: int = 0,
    limit: int = 100,
) -> List[models.Order]:
    """
    Retrieve orders matching a filter, newest first, with pagination.

    Args:
        db: Database session
        status: Only orders in this status
        customer_id: Only orders placed by this customer
        worker_id: Only orders assigned to this service provider
        available: Only unclaimed pending/confirmed orders
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return

    Returns:
        List of Order objects
    """
    query = db.query(models.Order)
    if status:
        query = query.filter(models.Order.status == status)
    if customer_id:
        query = query.filter(models.Order.customer_id == customer_id)
    if worker_id:
        query = query.filter(models.Order.worker_id == worker_id)
    if available:
        query = query.filter(
            models.Order.worker_id.is_(None),
            models.Order.status.in_(CLAIMABLE_STATUSES),
        )
    return query.order_by(models.Order.created_at.desc()).offset(skip).limit(limit).all()

def get_order_events(db: Session, order_id: str) -> List[models.OrderEvent]:
    """
    Retrieve the timeline of an order in chronological order.
    """
    return (
        db.query(models.OrderEvent)
        .filter(models.OrderEvent.order_id == order_id)
        .order_by(models.OrderEvent.id.asc())
        .all()
    )

def get_payments(
    db: Session,
    status: Optional[str] = None,
    method: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[models.Payment]:
    """
    Retrieve payments matching a filter, newest first, with pagination.

    Args:
        db: Database session
        status: Only payments in this status
        method: Only payments made with this method
        start_date: Only payments created at or after this time
        end_date: Only payments created at or before this time
        user_id: Only payments where this user is the customer or the worker
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return

    Returns:
        List of Payment objects
    """
    query = db.query(models.Payment)
    if status:
        query = query.filter(models.Payment.status == status)
    if method:
        query = query.filter(models.Payment.method == method)
    if start_date:
        query = query.filter(models.Payment.created_at >= start_date)
    if end_date:
        query = query.filter(models.Payment.created_at <= end_date)
    if user_id:
        query = query.filter(or_(models.Payment.customer_id == user_id, models.Payment.worker_id == user_id))
    return query.order_by(models.Payment.created_at.desc()).offset(skip).limit(limit).all()

def purge_order(db: Session, order_id: str) -> bool:
    """
    Physically delete an order together with its payment and both histories.

    Args:
        db: Database session
        order_id: ID of the order to delete

    Returns:
        True if order was deleted, False if not found
    """
    try:
        db_order = get_order(db, order_id)
        if db_order is None:
            return False

        payment_ids = [
            row.id for row in db.query(models.Payment.id).filter(models.Payment.order_id == order_id)
        ]
        # Delete dependent rows first to avoid FK constraint errors
        if payment_ids:
            db.execute(
                sqla_delete(models.PaymentEvent).where(models.PaymentEvent.payment_id.in_(payment_ids))
            )
            db.execute(
                sqla_delete(models.Payment).where(models.Payment.id.in_(payment_ids))
            )
        db.execute(
            sqla_delete(models.OrderEvent).where(models.OrderEvent.order_id == order_id)
        )
        # Flush to ensure child rows are removed before deleting parent
        db.flush()

        db.delete(db_order)
        db.commit()
        logger.info(f"Order {order_id} purged")
        return True
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to delete order {order_id}: {e}")
        raise
