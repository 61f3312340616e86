"""
Shared fixtures for the orders service tests.

Every test gets its own SQLite database file; the FastAPI app is pointed at it
through a get_db override. The catalog is replaced by an in-memory lookup and
the mobile-money provider by an httpx.MockTransport.
"""
import os

# Must be set before orderflow is imported: the engine is built at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["WEBHOOK_URLS"] = ""

from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import sessionmaker

from orderflow import config, ledger, models, schemas, workflow
from orderflow.auth import CurrentUser
from orderflow.clients import catalog_client
from orderflow.clients.momo_client import MoMoClient
from orderflow.database import get_db, make_engine
from orderflow.main import app, get_gateway

CATALOG = {
    "svc-wash": {"id": "svc-wash", "name": "Wash & Fold", "price": 15.0},
    "svc-dry": {"id": "svc-dry", "name": "Dry Cleaning", "price": 25.0},
    "svc-iron": {"id": "svc-iron", "name": "Ironing", "price": 4.5},
}

MOMO_BASE_URL = "https://momo.test/v1"


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'orders.db'}")
    models.Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# ============================================================================
# ACTORS
# ============================================================================

@pytest.fixture
def customer():
    return CurrentUser(id="cust-1", email="ama@example.com", role="customer")


@pytest.fixture
def other_customer():
    return CurrentUser(id="cust-2", email="kofi@example.com", role="customer")


@pytest.fixture
def worker_a():
    return CurrentUser(id="worker-a", email="a@laundry.example.com", role="service_provider")


@pytest.fixture
def worker_b():
    return CurrentUser(id="worker-b", email="b@laundry.example.com", role="service_provider")


@pytest.fixture
def admin():
    return CurrentUser(id="admin-1", email="admin@laundry.example.com", role="admin")


def auth_headers(user: CurrentUser) -> dict:
    token = jwt.encode(
        {"sub": user.id, "email": user.email, "role": user.role},
        config.SECRET_KEY,
        algorithm=config.ALGORITHM,
    )
    return {"Authorization": f"Bearer {token}"}


# ============================================================================
# COLLABORATORS
# ============================================================================

@pytest.fixture
def catalog(monkeypatch):
    """Replace the catalog service with the CATALOG dict."""
    async def lookup(service_id, token=None):
        return CATALOG.get(service_id)

    mock = AsyncMock(side_effect=lookup)
    monkeypatch.setattr(catalog_client, "lookup_service", mock)
    return mock


def momo_gateway(handler) -> MoMoClient:
    """A MoMoClient whose provider is the given httpx handler."""
    gateway_config = config.GatewayConfig(base_url=MOMO_BASE_URL, timeout=1.0)
    return MoMoClient(gateway_config, transport=httpx.MockTransport(handler))


def provider_answer(status: str, **extra):
    """Handler answering every provider call with the given status."""
    def handler(request: httpx.Request) -> httpx.Response:
        body = {"status": status, "message": f"provider says {status}"}
        body.update(extra)
        return httpx.Response(200, json=body)
    return handler


# ============================================================================
# DATA
# ============================================================================

def order_payload(**overrides) -> schemas.OrderCreate:
    """Two washes at 15.00 and one dry cleaning at 25.00."""
    data = {
        "items": [
            {"service_id": "svc-wash", "quantity": 2, "unit_price": "15.00"},
            {"service_id": "svc-dry", "quantity": 1, "unit_price": "25.00"},
        ],
        "pickup_address": {"street": "12 Oxford St", "city": "Accra"},
        "delivery_address": {"street": "12 Oxford St", "city": "Accra"},
        "pickup_date": (datetime(2026, 11, 2, 9, 0)).isoformat(),
        "delivery_date": (datetime(2026, 11, 2, 9, 0) + timedelta(days=2)).isoformat(),
        "payment_method": "cash",
    }
    data.update(overrides)
    return schemas.OrderCreate(**data)


def create_order_row(db, customer: CurrentUser, method: str = "cash", **overrides) -> models.Order:
    """Insert a pending order with its payment, bypassing the catalog."""
    payload = order_payload(payment_method=method, **overrides)
    line_items = [
        workflow.price_line(item.service_id, CATALOG[item.service_id]["name"], item.quantity, item.unit_price)
        for item in payload.items
    ]
    totals = workflow.compute_totals(line_items, Decimal("0.10"), Decimal("5.00"))
    order = workflow.create_order(db, customer.id, payload, line_items, totals)
    ledger.create_payment(db, order, method)
    db.commit()
    db.refresh(order)
    return order


# ============================================================================
# API
# ============================================================================

@pytest.fixture
def client(session_factory, catalog):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def use_gateway():
    """Install a provider handler for the API; returns a setter."""
    def install(handler):
        app.dependency_overrides[get_gateway] = lambda: momo_gateway(handler)
    return install
