"""
Orders Service API

This module implements a FastAPI-based microservice that coordinates laundry
service orders and the payments attached to them, including mobile-money
(MoMo) payments confirmed asynchronously by the provider.

Endpoints:
    GET /healthz: Health check endpoint for orchestration systems
    POST /orders: Place an order (creates its payment too)
    GET /orders: List orders visible to the caller, with filters
    GET /orders/{order_id}: Get a single order
    GET /orders/{order_id}/timeline: Order status history
    PUT /orders/{order_id}/status: Change an order's status
    POST /orders/{order_id}/assign: Service provider self-assignment
    DELETE /orders/{order_id}: Purge an order (admin only)
    GET /payments: List payments visible to the caller, with filters
    POST /payments: Create the payment of an order that has none
    GET /payments/{payment_id}: Get a payment
    GET /payments/{payment_id}/history: Payment status history
    PUT /payments/{payment_id}/status: Change a payment's status
    POST /payments/{payment_id}/momo: Start a mobile-money payment
    GET /payments/{payment_id}/momo/status: Poll the provider
    POST /payments/momo/callback: Provider notification

Attributes:
    app (FastAPI): The FastAPI application instance configured with the title "orders-service"
"""
import hmac
import logging
from datetime import datetime
from functools import lru_cache
from typing import List, Optional

from fastapi import FastAPI, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import auth, config, coordinator, crud, ledger, models, schemas
from .arbiter import CLAIMABLE_STATUSES
from .clients.momo_client import GatewayResult, MoMoClient
from .database import engine, get_db
from .errors import OrderflowError

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Create database tables
models.Base.metadata.create_all(bind=engine)

app = FastAPI(title="orders-service")


@lru_cache()
def get_gateway() -> MoMoClient:
    """Dependency providing the mobile-money client, built once from the environment."""
    return MoMoClient(config.gateway_config_from_env())


@app.exception_handler(OrderflowError)
async def orderflow_error_handler(request: Request, exc: OrderflowError):
    """Render domain errors as {"detail", "code"} with their HTTP status."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.code}: {exc.detail}")
    else:
        logger.info(f"{request.method} {request.url.path}: {exc.code}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})


def _order_visible(order: models.Order, user: auth.CurrentUser) -> bool:
    return (
        user.role == auth.ADMIN
        or order.customer_id == user.id
        or order.worker_id == user.id
        # Providers may inspect the orders they could claim
        or (
            user.role == auth.SERVICE_PROVIDER
            and order.worker_id is None
            and order.status in CLAIMABLE_STATUSES
        )
    )


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the orders service.

    Returns:
        dict: {"status": "healthy"} when the service is operational.
    """
    return {"status": "healthy"}


@app.post("/orders", response_model=schemas.OrderWithPayment, status_code=status.HTTP_201_CREATED)
async def create_order(
    order: schemas.OrderCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Place a new order (customers only).

    Line items are checked against the catalog and totals are computed on the
    server. The order and its payment are created together.

    Raises:
        400 on invalid items, schedule or discount; 404 for unknown services;
        403 if the caller is not a customer; 503 if the catalog is unavailable
    """
    db_order, payment = await coordinator.place_order(db, current_user, order, token=current_user.token)
    data = schemas.Order.model_validate(db_order).model_dump()
    return schemas.OrderWithPayment(**data, payment=schemas.Payment.model_validate(payment))


@app.get("/orders", response_model=List[schemas.Order])
def list_orders(
    status_filter: Optional[schemas.OrderStatus] = Query(None, alias="status"),
    customer_id: Optional[str] = None,
    worker_id: Optional[str] = None,
    available: bool = False,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    List orders visible to the caller.

    Customers see their own orders. Service providers see the orders assigned
    to them, or with ``available=true`` the unclaimed pending/confirmed
    orders. Admins see every order and may filter by customer and worker.
    """
    limit = max(1, min(limit, 500))
    if current_user.role == auth.CUSTOMER:
        customer_id, worker_id, available = current_user.id, None, False
    elif current_user.role == auth.SERVICE_PROVIDER:
        customer_id = None
        worker_id = None if available else current_user.id

    return crud.get_orders(
        db,
        status=status_filter,
        customer_id=customer_id,
        worker_id=worker_id,
        available=available,
        skip=skip,
        limit=limit,
    )


@app.get("/orders/{order_id}", response_model=schemas.Order)
def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get a single order by ID (customer, assigned provider or admin).

    Raises:
        HTTPException: 403 if not authorized
        HTTPException: 404 if order not found
    """
    db_order = crud.get_order(db, order_id=order_id)
    if db_order is None:
        raise HTTPException(status_code=404, detail="Order not found")

    if not _order_visible(db_order, current_user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to view this order"
        )
    return db_order


@app.get("/orders/{order_id}/timeline", response_model=List[schemas.OrderEvent])
def get_order_timeline(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get the timeline of events for an order (customer, assigned provider or admin).

    Returns:
        List of order events in chronological order
    """
    db_order = crud.get_order(db, order_id=order_id)
    if db_order is None:
        raise HTTPException(status_code=404, detail="Order not found")

    if not _order_visible(db_order, current_user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to view this order's timeline"
        )
    return crud.get_order_events(db, order_id)


@app.put("/orders/{order_id}/status", response_model=schemas.Order)
async def update_order_status(
    order_id: str,
    update: schemas.OrderStatusUpdate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Change an order's status.

    Customers and service providers may only change their own orders and only
    along the declared edges; admins may apply any change. Cancelling an
    order also cancels its payment unless the payment is already final.

    Raises:
        400 invalid transition; 403 not authorized; 404 order not found
    """
    return await coordinator.change_order_status(db, order_id, current_user, update.status, update.notes)


@app.post("/orders/{order_id}/assign", response_model=schemas.Order)
async def assign_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_service_provider)
):
    """
    Claim an unclaimed order for the calling service provider.

    Exactly one of several concurrent claims succeeds; the others receive
    409 ``already_assigned``. A provider repeating a successful claim also
    receives 409 and should compare ``worker_id`` with its own id.
    """
    return await coordinator.self_assign(db, order_id, current_user)


@app.delete("/orders/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Purge an order with its payment and histories (admin only).

    Raises:
        403 if the caller is not an admin; 404 if order not found
    """
    coordinator.purge_order(db, order_id, current_user)


@app.post("/payments", response_model=schemas.Payment, status_code=status.HTTP_201_CREATED)
async def create_payment(
    payment: schemas.PaymentCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Create the payment of an order that has none (order's customer or admin).

    Raises:
        400 if the order already has a payment; 403 not authorized; 404 order not found
    """
    return await coordinator.create_payment_for_order(db, payment.order_id, current_user, payment.method)


@app.get("/payments", response_model=List[schemas.Payment])
def list_payments(
    status_filter: Optional[schemas.PaymentStatus] = Query(None, alias="status"),
    method: Optional[schemas.PaymentMethod] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    List payments visible to the caller, newest first.

    Customers and service providers see the payments they are party to (as
    customer or as worker); ``user_id`` is ignored for them. Admins see every
    payment and may narrow the list to one user.
    """
    limit = max(1, min(limit, 500))
    if current_user.role != auth.ADMIN:
        user_id = current_user.id

    return crud.get_payments(
        db,
        status=status_filter,
        method=method,
        start_date=start_date,
        end_date=end_date,
        user_id=user_id,
        skip=skip,
        limit=limit,
    )


@app.post("/payments/momo/callback", response_model=schemas.Payment)
async def momo_callback(
    callback: schemas.GatewayCallback,
    db: Session = Depends(get_db),
    gateway: MoMoClient = Depends(get_gateway),
    x_callback_token: Optional[str] = Header(None),
):
    """
    Receive a mobile-money provider notification.

    Duplicate notifications for a completed payment are accepted and change
    nothing. When a shared callback token is configured, it must be sent in
    the ``X-Callback-Token`` header.

    Raises:
        401 bad callback token; 404 unknown transaction reference
    """
    expected = gateway.config.callback_token
    if expected and not hmac.compare_digest(x_callback_token or "", expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid callback token")

    result = GatewayResult(
        accepted=callback.status != "failed",
        provider_ref=callback.provider_ref,
        sub_status=callback.status,
        provider_transaction_id=callback.transaction_id,
        message=callback.message,
        amount=callback.amount,
    )
    return await coordinator.record_gateway_callback(db, callback.provider_ref, result)


@app.get("/payments/{payment_id}", response_model=schemas.Payment)
def get_payment(
    payment_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Get a payment (its customer, its service provider or admin)."""
    return coordinator.get_payment(db, payment_id, current_user)


@app.get("/payments/{payment_id}/history", response_model=List[schemas.PaymentEvent])
def get_payment_history(
    payment_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Get the status history of a payment in chronological order."""
    coordinator.get_payment(db, payment_id, current_user)
    return ledger.get_history(db, payment_id)


@app.put("/payments/{payment_id}/status", response_model=schemas.Payment)
async def update_payment_status(
    payment_id: str,
    update: schemas.PaymentStatusUpdate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Change a payment's status (admin or the order's service provider).

    Raises:
        400 invalid transition; 403 not authorized; 404 payment not found
    """
    return await coordinator.change_payment_status(
        db, payment_id, current_user, update.status, update.notes, update.transaction_id
    )


@app.post("/payments/{payment_id}/momo", response_model=schemas.MoMoPaymentResponse)
async def initiate_momo_payment(
    payment_id: str,
    request: schemas.MoMoPaymentRequest,
    db: Session = Depends(get_db),
    gateway: MoMoClient = Depends(get_gateway),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Start a mobile-money payment (paying customer or admin).

    Raises:
        400 bad phone number or payment state; 402 declined by the provider;
        503 provider unavailable. In both gateway cases the payment is
        recorded as failed and can be retried.
    """
    payment, result = await coordinator.initiate_mobile_money(
        db, payment_id, current_user, request.phone_number, gateway, request.customer_name
    )
    return schemas.MoMoPaymentResponse(
        payment=schemas.Payment.model_validate(payment),
        provider_ref=result.provider_ref,
        gateway_status=result.sub_status,
        message=result.message,
    )


@app.get("/payments/{payment_id}/momo/status", response_model=schemas.MoMoPaymentResponse)
async def check_momo_status(
    payment_id: str,
    db: Session = Depends(get_db),
    gateway: MoMoClient = Depends(get_gateway),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Poll the provider for a mobile-money payment and apply the answer."""
    payment, result = await coordinator.check_mobile_money_status(db, payment_id, current_user, gateway)
    return schemas.MoMoPaymentResponse(
        payment=schemas.Payment.model_validate(payment),
        provider_ref=result.provider_ref,
        gateway_status=result.sub_status,
        message=result.message,
    )
