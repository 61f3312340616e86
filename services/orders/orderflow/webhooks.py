"""
Lifecycle notifications for subscribers (email and SMS senders).

Every committed order or payment change is published to the URLs listed in
WEBHOOK_URLS. Publishing happens on the running event loop after the
response data is final; a subscriber that is down or slow only produces a
log line.
"""
import asyncio
import logging
from typing import Any, Dict, Set

import httpx

from . import config
from .models import utcnow

logger = logging.getLogger(__name__)

ORDER_CREATED = "order.created"
ORDER_STATUS_CHANGED = "order.status_changed"
ORDER_ASSIGNED = "order.assigned"
PAYMENT_STATUS_CHANGED = "payment.status_changed"

# Strong references to in-flight deliveries until they finish
_pending: Set[asyncio.Task] = set()


def build_event(event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"event": event_type, "occurred_at": utcnow().isoformat(), "data": data}


async def send_webhook(event_type: str, data: Dict[str, Any]) -> None:
    """
    Deliver one event to every subscriber concurrently.

    Args:
        event_type: One of the event names defined in this module
        data: Event body
    """
    if not config.WEBHOOK_URLS:
        return

    event = build_event(event_type, data)
    async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT) as client:
        await asyncio.gather(
            *(deliver(client, url, event) for url in config.WEBHOOK_URLS),
            return_exceptions=True,
        )


async def deliver(client: httpx.AsyncClient, url: str, event: Dict[str, Any]) -> bool:
    """POST an event to a subscriber; returns False when it was not accepted."""
    try:
        response = await client.post(url, json=event)
    except httpx.HTTPError as e:
        logger.warning(f"Webhook {event['event']} to {url} failed: {e!r}")
        return False

    if response.is_error:
        logger.warning(f"Webhook {event['event']} to {url} rejected: HTTP {response.status_code}")
        return False
    return True


def _schedule(event_type: str, data: Dict[str, Any]) -> None:
    if not config.WEBHOOK_URLS:
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.warning(f"No running event loop; dropped {event_type} notification")
        return
    task = loop.create_task(send_webhook(event_type, data))
    _pending.add(task)
    task.add_done_callback(_pending.discard)


def notify_order_created(order_data: Dict[str, Any]) -> None:
    _schedule(ORDER_CREATED, order_data)


def notify_order_status_changed(order_id: str, old_status: str, new_status: str, changed_by: str) -> None:
    """
    Publish an order status change.

    Args:
        order_id: Order that changed
        old_status: Status before the change
        new_status: Status after the change
        changed_by: Acting user, or the internal actor name
    """
    _schedule(ORDER_STATUS_CHANGED, {
        "order_id": order_id,
        "old_status": old_status,
        "new_status": new_status,
        "changed_by": changed_by,
    })


def notify_order_assigned(order_id: str, worker_id: str) -> None:
    _schedule(ORDER_ASSIGNED, {"order_id": order_id, "worker_id": worker_id})


def notify_payment_status_changed(payment_id: str, order_id: str, new_status: str) -> None:
    _schedule(PAYMENT_STATUS_CHANGED, {
        "payment_id": payment_id,
        "order_id": order_id,
        "new_status": new_status,
    })
