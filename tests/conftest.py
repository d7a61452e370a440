import time

import httpx
import mongomock
import pytest
from fastapi.testclient import TestClient

import auth
import database
import inventory
import main
from catalog_sync import CatalogClient

PASSWORD = "password123"


def catalog_client(items=None, status_code=200):
    """Catalog client answering from memory instead of the network."""
    def handler(request):
        return httpx.Response(status_code, json=items if items is not None else [])
    return CatalogClient(base_url="https://catalog.test", transport=httpx.MockTransport(handler))


@pytest.fixture(autouse=True)
def db():
    handle = database.init_db(mongomock.MongoClient(), "shop_test")
    auth.login_attempts.reset()
    main.app.dependency_overrides[main.get_catalog_client] = lambda: catalog_client()
    yield handle
    main.app.dependency_overrides.clear()
    auth.login_attempts.reset()
    auth.login_attempts.clock = time.time


def make_user(email, role="CUSTOMER", name="Test User", password=PASSWORD):
    return auth.register_user(name, email, password, role)


def login_client(email, password=PASSWORD):
    client = TestClient(main.app)
    resp = client.post("/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return client


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def admin():
    return make_user("admin@example.com", role="ADMIN", name="Admin")


@pytest.fixture
def customer():
    return make_user("cliente@example.com", name="Juan Cliente")


@pytest.fixture
def other_customer():
    return make_user("otro@example.com", name="Otro Cliente")


@pytest.fixture
def admin_client(admin):
    return login_client(admin.email)


@pytest.fixture
def customer_client(customer):
    return login_client(customer.email)


@pytest.fixture
def other_client(other_customer):
    return login_client(other_customer.email)


@pytest.fixture
def product():
    return inventory.create_product(name="Widget", description="A widget", price=5.0, stock=10)


def stock_of(product_id):
    return inventory.get_product(product_id)["stock"]
