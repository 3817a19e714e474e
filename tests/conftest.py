import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main

ADMIN_KEY = "test-admin-key"


class FakePayments:
    """Stands in for SnapClient.request_token; records every call."""

    def __init__(self, response=None, error=None):
        self.response = response if response is not None else {"token": "snap-token-1", "redirect_url": "https://pay/1"}
        self.error = error
        self.calls = []

    def request_token(self, name, email, amount):
        self.calls.append({"name": name, "email": email, "amount": amount})
        if self.error is not None:
            raise self.error
        return self.response


class FakeWidget:
    def __init__(self):
        self.calls = []

    def pay(self, token, order_id, redirect_url=None):
        self.calls.append({"token": token, "order_id": order_id})
        return {"token": token, "redirect_url": redirect_url, "client_key": "client-key", "order_id": order_id}


@pytest.fixture
def db(monkeypatch):
    mock_db = mongomock.MongoClient()["fixiestore_test"]
    monkeypatch.setattr(database, "db", mock_db)
    database.ensure_indexes(mock_db)
    return mock_db


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def widget():
    return FakeWidget()


@pytest.fixture
def client(db, payments, widget, monkeypatch):
    monkeypatch.setenv("ADMIN_API_KEY", ADMIN_KEY)
    main.app.dependency_overrides[main.get_payments] = lambda: payments
    main.app.dependency_overrides[main.get_widget] = lambda: widget
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}


def login_as(client, name="Neil", email="neil@example.com", password="secret123"):
    client.post("/api/auth/register", json={"name": name, "email": email, "password": password})
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def user_headers(client):
    return login_as(client)


@pytest.fixture
def make_product(client, admin_headers):
    def _make(name="Track Frame", price=100000, stock=5, **extra):
        body = {"name": name, "price": price, "stock": stock, **extra}
        response = client.post("/api/admin/products", json=body, headers=admin_headers)
        assert response.status_code == 200, response.text
        return response.json()["id"]
    return _make
