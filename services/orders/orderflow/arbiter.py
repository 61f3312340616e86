"""
Exclusive claim of an unclaimed order by one service provider.

The claim is a single conditional UPDATE; the database decides the winner.
"""
import logging
from sqlalchemy import update
from sqlalchemy.orm import Session

from . import models

logger = logging.getLogger(__name__)

CLAIMABLE_STATUSES = ("pending", "confirmed")


def claim(db: Session, order_id: str, worker_id: str) -> bool:
    """
    Atomically set the worker and move the order to ``assigned``.

    Runs ``UPDATE orders SET worker_id=:worker, status='assigned'
    WHERE id=:order AND worker_id IS NULL AND status IN ('pending', 'confirmed')``
    inside the caller's transaction. The caller commits.

    Args:
        db: Database session
        order_id: Order to claim
        worker_id: Claiming service provider

    Returns:
        True if this call won the claim, False if no row matched
    """
    result = db.execute(
        update(models.Order)
        .where(
            models.Order.id == order_id,
            models.Order.worker_id.is_(None),
            models.Order.status.in_(CLAIMABLE_STATUSES),
        )
        .values(worker_id=worker_id, status="assigned", updated_at=models.utcnow())
        .execution_options(synchronize_session=False)
    )
    won = result.rowcount == 1
    if not won:
        logger.warning(f"Claim of order {order_id} by {worker_id} matched no row (race lost)")
    return won
