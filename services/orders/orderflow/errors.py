"""
Domain errors for the Orders service.

Every error carries the HTTP status it maps to, so route handlers can let
them propagate and a single exception handler renders the response.
"""
from fastapi import status


class OrderflowError(Exception):
    """Base class for all domain errors."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = "error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(OrderflowError):
    """Malformed or missing input, rejected before any write."""
    code = "validation_error"


class NotFound(OrderflowError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class Forbidden(OrderflowError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class InvalidTransition(OrderflowError):
    code = "invalid_transition"

    def __init__(self, current: str, target: str, detail: str = None):
        super().__init__(detail or f"Invalid status transition from {current} to {target}")
        self.current = current
        self.target = target


class NotAvailable(OrderflowError):
    """The order is not in a state that can be claimed."""
    status_code = status.HTTP_409_CONFLICT
    code = "not_available"


class AlreadyAssigned(OrderflowError):
    status_code = status.HTTP_409_CONFLICT
    code = "already_assigned"

    def __init__(self, order_id: str, worker_id: str = None):
        super().__init__(f"Order {order_id} is already assigned")
        self.order_id = order_id
        self.worker_id = worker_id


class DuplicatePayment(OrderflowError):
    code = "duplicate_payment"


class UnknownTransaction(OrderflowError):
    """A gateway callback referenced no known payment."""
    status_code = status.HTTP_404_NOT_FOUND
    code = "unknown_transaction"


class GatewayUnavailable(OrderflowError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "gateway_unavailable"


class GatewayDeclined(OrderflowError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    code = "gateway_declined"


class CatalogUnavailable(OrderflowError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "catalog_unavailable"
