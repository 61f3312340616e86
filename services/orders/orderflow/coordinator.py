"""
Lifecycle coordinator for orders and their payments.

Sequences every operation that touches both an order and its payment so a
partial failure cannot leave them inconsistent, and emits the lifecycle
notifications once the database work has been committed.
"""
import logging
from decimal import Decimal
from typing import List, Optional, Tuple

import httpx
from sqlalchemy.orm import Session

from . import config, crud, ledger, models, schemas, validators, webhooks, workflow
from .auth import ADMIN, CUSTOMER, SERVICE_PROVIDER, CurrentUser, system_actor
from .clients import catalog_client
from .clients.momo_client import GatewayResult, MoMoClient
from .errors import (
    CatalogUnavailable,
    Forbidden,
    GatewayDeclined,
    GatewayUnavailable,
    InvalidTransition,
    NotFound,
    UnknownTransaction,
    ValidationError,
)

logger = logging.getLogger(__name__)

GATEWAY_ACTOR = "gateway"


async def price_items(items: List[schemas.OrderItemCreate], token: Optional[str] = None) -> List[dict]:
    """
    Check every line item against the catalog and price it.

    A unit price supplied by the client is kept; a missing one is taken from
    the catalog.

    Raises:
        NotFound: A referenced service does not exist
        CatalogUnavailable: The catalog could not be reached
    """
    line_items = []
    for item in items:
        try:
            service = await catalog_client.lookup_service(item.service_id, token)
        except httpx.HTTPError as e:
            logger.error(f"Catalog lookup for service {item.service_id} failed: {e!r}")
            raise CatalogUnavailable(f"Catalog service unavailable: {e}")

        if service is None:
            raise NotFound(f"Service not found: {item.service_id}")

        unit_price = item.unit_price if item.unit_price is not None else Decimal(str(service.get("price", 0)))
        line_items.append(workflow.price_line(
            service_id=item.service_id,
            service_name=service.get("name") or item.service_id,
            quantity=item.quantity,
            unit_price=unit_price,
            special_instructions=item.special_instructions,
        ))
    return line_items


async def place_order(
    db: Session,
    customer: CurrentUser,
    order: schemas.OrderCreate,
    token: Optional[str] = None,
) -> Tuple[models.Order, models.Payment]:
    """
    Validate, price and create an order together with its payment.

    Both rows are written in one transaction: if the payment cannot be
    created, the order is rolled back.

    Raises:
        Forbidden: Caller is not a customer
        ValidationError: Bad items, schedule or discount
        NotFound: Unknown catalog service
        CatalogUnavailable: Catalog unreachable
    """
    if customer.role != CUSTOMER:
        raise Forbidden("Only customers can place orders")

    is_valid, error_message = validators.validate_order_items(order.items)
    if not is_valid:
        raise ValidationError(error_message)
    is_valid, error_message = validators.validate_schedule(order)
    if not is_valid:
        raise ValidationError(error_message)

    line_items = await price_items(order.items, token)

    delivery_fee = config.URGENT_DELIVERY_FEE if order.is_urgent else config.DELIVERY_FEE
    totals = workflow.compute_totals(line_items, config.TAX_RATE, delivery_fee)
    gross = totals["subtotal"] + totals["tax"] + totals["delivery_fee"]
    is_valid, error_message = validators.validate_discount(order.discount, gross)
    if not is_valid:
        raise ValidationError(error_message)
    totals = workflow.compute_totals(line_items, config.TAX_RATE, delivery_fee, order.discount)

    try:
        db_order = workflow.create_order(db, customer.id, order, line_items, totals)
        payment = ledger.create_payment(db, db_order, order.payment_method)
        db.commit()
    except Exception:
        db.rollback()
        logger.error(f"Order placement for customer {customer.id} rolled back")
        raise

    db.refresh(db_order)
    db.refresh(payment)
    logger.info(f"Order {db_order.id} placed by {customer.id}: total {db_order.total}, payment {payment.id}")
    webhooks.notify_order_created({
        "order_id": db_order.id,
        "order_number": db_order.order_number,
        "customer_id": db_order.customer_id,
        "total": str(db_order.total),
        "payment_id": payment.id,
    })
    return db_order, payment


async def change_order_status(
    db: Session,
    order_id: str,
    actor: CurrentUser,
    target: str,
    notes: Optional[str] = None,
) -> models.Order:
    """
    Apply a requested order status change.

    Cancellations also cancel the payment; a worker releasing an assigned
    order (``assigned -> confirmed``) is removed from the payment in the same
    transaction.
    """
    if target == "cancelled":
        return await cancel_order(db, order_id, actor, notes)

    previous = workflow.get_order(db, order_id).status
    try:
        order = workflow.transition(db, order_id, actor, target, notes, commit=False)
        if previous == "assigned" and target == "confirmed":
            ledger.assign_worker(db, order_id, None, commit=False)
        db.commit()
    except Exception:
        db.rollback()
        raise

    webhooks.notify_order_status_changed(order_id, previous, order.status, actor.id)
    return order


async def cancel_order(
    db: Session,
    order_id: str,
    actor: CurrentUser,
    reason: Optional[str] = None,
) -> models.Order:
    """
    Cancel an order and, unless it is already final, its payment.

    Both changes are committed together. A completed payment is left
    untouched (refunds are handled outside this service); a failed payment is
    walked back through the retry edge before it is cancelled. The payment is
    read again after the order write so a concurrent settlement is seen.
    """
    previous = workflow.get_order(db, order_id).status
    payment = None
    payment_status = None

    try:
        order = workflow.transition(db, order_id, actor, "cancelled", reason, commit=False)
        payment = ledger.get_payment_for_order(db, order_id)
        if payment is not None:
            db.refresh(payment)
            payment_status = payment.status
        if payment is not None and payment_status not in ledger.TERMINAL_STATUSES:
            note = f"Order cancelled: {reason}" if reason else "Order cancelled"
            if payment_status == "failed":
                ledger.transition(db, payment.id, "pending", actor.id, note, commit=False)
            ledger.transition(db, payment.id, "cancelled", actor.id, note, commit=False)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    webhooks.notify_order_status_changed(order_id, previous, "cancelled", actor.id)
    if payment is not None and payment_status not in ledger.TERMINAL_STATUSES:
        webhooks.notify_payment_status_changed(payment.id, order_id, "cancelled")
    elif payment is not None:
        logger.info(f"Order {order_id} cancelled; payment {payment.id} left {payment_status}")
    return order


async def self_assign(db: Session, order_id: str, worker: CurrentUser) -> models.Order:
    """
    Claim an unclaimed order for the calling service provider.

    The claim and the payment's worker are committed together.

    Raises:
        Forbidden: Caller is not a service provider
        NotAvailable / AlreadyAssigned: See workflow.assign_self
    """
    if worker.role != SERVICE_PROVIDER:
        raise Forbidden("Only service providers can assign orders to themselves")

    try:
        order = workflow.assign_self(db, order_id, worker.id, commit=False)
        ledger.assign_worker(db, order_id, worker.id, commit=False)
        db.commit()
    except Exception:
        db.rollback()
        raise

    webhooks.notify_order_assigned(order_id, worker.id)
    return order


def _authorize_payment(payment: models.Payment, actor: CurrentUser, allow_customer: bool, allow_worker: bool) -> None:
    if actor.role == ADMIN:
        return
    if allow_customer and actor.role == CUSTOMER and payment.customer_id == actor.id:
        return
    if allow_worker and actor.role == SERVICE_PROVIDER and payment.worker_id == actor.id:
        return
    raise Forbidden(f"Not authorized for payment {payment.id}")


def get_payment(db: Session, payment_id: str, actor: CurrentUser) -> models.Payment:
    payment = ledger.get_payment(db, payment_id)
    _authorize_payment(payment, actor, allow_customer=True, allow_worker=True)
    return payment


async def create_payment_for_order(
    db: Session,
    order_id: str,
    actor: CurrentUser,
    method: str,
) -> models.Payment:
    """
    Create the payment of an order that has none.

    Raises:
        NotFound: Unknown order
        Forbidden: Caller is neither the order's customer nor an admin
        DuplicatePayment: The order already has a payment
    """
    order = workflow.get_order(db, order_id)
    if actor.role != ADMIN and not (actor.role == CUSTOMER and order.customer_id == actor.id):
        raise Forbidden(f"Not authorized to create a payment for order {order_id}")

    try:
        payment = ledger.create_payment(db, order, method)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(payment)
    return payment


async def _on_payment_completed(db: Session, payment: models.Payment) -> None:
    """A settled payment confirms an order that is still pending."""
    order = workflow.get_order(db, payment.order_id)
    if order.status != "pending":
        return
    try:
        workflow.transition(db, order.id, system_actor(GATEWAY_ACTOR), "confirmed", "Payment completed")
    except InvalidTransition as e:
        # The order moved on concurrently; the payment stays completed
        logger.warning(f"Order {order.id} not confirmed after payment {payment.id}: {e.detail}")
        return
    webhooks.notify_order_status_changed(order.id, "pending", "confirmed", GATEWAY_ACTOR)


async def change_payment_status(
    db: Session,
    payment_id: str,
    actor: CurrentUser,
    target: str,
    notes: Optional[str] = None,
    transaction_id: Optional[str] = None,
) -> models.Payment:
    """
    Manually move a payment along the ledger edges (admin or assigned worker).
    """
    payment = ledger.get_payment(db, payment_id)
    _authorize_payment(payment, actor, allow_customer=False, allow_worker=True)

    payment = ledger.transition(db, payment_id, target, actor.id, notes or "", transaction_id)
    webhooks.notify_payment_status_changed(payment.id, payment.order_id, payment.status)
    if payment.status == "completed":
        await _on_payment_completed(db, payment)
    return payment


async def _settle(db: Session, payment: models.Payment, result: GatewayResult) -> Tuple[models.Payment, bool]:
    payment, changed = ledger.apply_gateway_result(db, payment.id, result, GATEWAY_ACTOR)
    if changed:
        webhooks.notify_payment_status_changed(payment.id, payment.order_id, payment.status)
        if payment.status == "completed":
            await _on_payment_completed(db, payment)
    return payment, changed


def _raise_for_gateway(result: GatewayResult) -> None:
    if result.unavailable:
        raise GatewayUnavailable(f"Mobile money provider unavailable: {result.message}")
    if not result.accepted:
        raise GatewayDeclined(result.message or "Payment declined by the mobile money provider")


async def initiate_mobile_money(
    db: Session,
    payment_id: str,
    actor: CurrentUser,
    phone_number: str,
    gateway: MoMoClient,
    customer_name: Optional[str] = None,
) -> Tuple[models.Payment, GatewayResult]:
    """
    Start a mobile-money collection for a payment.

    The transaction reference is stored before the provider is called so a
    callback arriving before this request finishes can still be correlated.
    Provider failures are recorded on the payment first and then surfaced.

    Raises:
        Forbidden: Caller is neither the paying customer nor an admin
        ValidationError: Wrong payment method or malformed phone number
        InvalidTransition: Payment is in flight or already final
        GatewayUnavailable: Provider could not be reached (payment failed)
        GatewayDeclined: Provider rejected the payment (payment failed)
    """
    payment = ledger.get_payment(db, payment_id)
    _authorize_payment(payment, actor, allow_customer=True, allow_worker=False)

    if payment.method != "momo":
        raise ValidationError(f"Payment {payment_id} is not a mobile money payment")
    if payment.status == "processing":
        raise InvalidTransition(payment.status, "processing", f"Payment {payment_id} is already being processed")
    if payment.status in ledger.TERMINAL_STATUSES:
        raise InvalidTransition(payment.status, "processing")

    phone = gateway.format_phone_number(phone_number)
    if payment.status == "failed":
        payment = ledger.transition(db, payment.id, "pending", actor.id, "Mobile money retry")

    order = workflow.get_order(db, payment.order_id)
    provider_ref = gateway.new_reference()
    payment = ledger.attach_provider_reference(db, payment.id, provider_ref, phone)

    result = await gateway.initiate(
        amount=payment.amount,
        phone_number=phone,
        customer_name=customer_name or actor.email,
        order_ref=order.order_number,
        provider_ref=provider_ref,
    )
    payment, _ = await _settle(db, payment, result)
    _raise_for_gateway(result)
    return payment, result


async def check_mobile_money_status(
    db: Session,
    payment_id: str,
    actor: CurrentUser,
    gateway: MoMoClient,
) -> Tuple[models.Payment, GatewayResult]:
    """
    Poll the provider for a payment's mobile-money transaction and apply it.

    Repeated polls with the same answer change nothing.
    """
    payment = ledger.get_payment(db, payment_id)
    _authorize_payment(payment, actor, allow_customer=True, allow_worker=True)
    if not payment.provider_ref:
        raise ValidationError(f"Payment {payment_id} has no mobile money transaction")

    result = await gateway.check_status(payment.provider_ref)
    payment, _ = await _settle(db, payment, result)
    _raise_for_gateway(result)
    return payment, result


async def record_gateway_callback(db: Session, provider_ref: str, result: GatewayResult) -> models.Payment:
    """
    Correlate a provider notification with its payment and apply it.

    Raises:
        UnknownTransaction: No payment carries this reference
    """
    payment = ledger.get_by_provider_ref(db, provider_ref)
    if payment is None:
        logger.warning(f"Gateway callback for unknown transaction {provider_ref}")
        raise UnknownTransaction(f"Unknown transaction reference: {provider_ref}")

    payment, changed = await _settle(db, payment, result)
    if not changed:
        logger.info(f"Gateway callback for {provider_ref} changed nothing (payment {payment.status})")
    return payment


def purge_order(db: Session, order_id: str, actor: CurrentUser) -> None:
    """
    Physically delete an order with its payment and both histories.

    Raises:
        Forbidden: Caller is not an admin
        NotFound: Unknown order
    """
    if actor.role != ADMIN:
        raise Forbidden("Only admins can delete orders")
    if not crud.purge_order(db, order_id):
        raise NotFound(f"Order {order_id} not found")
    logger.warning(f"Order {order_id} purged by admin {actor.id}")
