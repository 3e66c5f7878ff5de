"""
Shared fixtures: an in-memory SQLite database per test, a FastAPI test client
bound to it, and small factories for orders and tables.
"""

import os

# Settings are read at import time; point the engine at SQLite before anything imports it
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret"
os.environ.pop("REDIS_URL", None)

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from rms_pos import models  # noqa: F401
from rms_pos.db import get_session
from rms_pos.main import app
from rms_pos.orders import create_order
from rms_pos.security import create_access_token
from rms_pos.tables import create_table

TENANT = "tenant-1"
OTHER_TENANT = "tenant-2"
OUTLET = "outlet-00a1"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def client(engine):
    def get_test_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = get_test_session
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    token = create_access_token({"tenant_id": TENANT, "role": "MANAGER", "sub": "staff-1"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_order(session):
    def factory(items=None, tenant_id=TENANT, outlet_id=OUTLET, **kwargs):
        if items is None:
            items = [{
                "menu_item_id": "m-curry",
                "menu_item_name": "Chicken Curry",
                "quantity": 2,
                "unit_price": Decimal("10.50"),
            }]
        kwargs.setdefault("order_type", "DINE_IN")
        kwargs.setdefault("tax_rate", Decimal("0.18"))
        return create_order(session, tenant_id, outlet_id, items=items, **kwargs)

    return factory


@pytest.fixture
def make_table(session):
    counter = {"n": 0}

    def factory(capacity=4, tenant_id=TENANT, outlet_id=OUTLET, **kwargs):
        counter["n"] += 1
        kwargs.setdefault("table_number", f"T{counter['n']}")
        return create_table(session, tenant_id, outlet_id, capacity=capacity, **kwargs)

    return factory


def two_item_order():
    """10.50 x 2 + 5.00 x 1: subtotal 26.00, tax at 18% 4.68, total 30.68"""
    return [
        {"menu_item_id": "m-curry", "menu_item_name": "Chicken Curry", "quantity": 2, "unit_price": Decimal("10.50")},
        {"menu_item_id": "m-naan", "menu_item_name": "Garlic Naan", "quantity": 1, "unit_price": Decimal("5.00")},
    ]


@pytest.fixture
def two_items():
    return two_item_order()
