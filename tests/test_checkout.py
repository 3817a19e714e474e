import pytest

from cart import Cart
from checkout import Checkout, CheckoutError, compute_totals
from conftest import FakePayments, FakeWidget, login_as
from payment import PaymentError


def cart_of(*lines):
    return [{"product": {"price": price}, "quantity": qty} for price, qty in lines]


@pytest.mark.parametrize("lines,method,expected", [
    ([(100000, 2)], "regular", 200000),
    ([(100000, 2)], "express", 225000),
    ([(15000, 1), (2500, 4)], "regular", 25000),
    ([], "express", 25000),
])
def test_compute_totals(lines, method, expected):
    totals = compute_totals(cart_of(*lines), method)
    assert totals["total"] == expected
    assert totals["subtotal"] == sum(p * q for p, q in lines)


def test_unknown_shipping_method():
    with pytest.raises(CheckoutError):
        compute_totals(cart_of((1, 1)), "teleport")


@pytest.fixture
def shopper(db):
    db["user"].insert_one({"name": "Neil SJ", "email": "neil@example.com"})
    user = db["user"].find_one()
    return {"id": str(user["_id"]), "name": "Neil SJ", "email": "neil@example.com"}


@pytest.fixture
def stocked_cart(db, shopper):
    db["product"].insert_one({"name": "Track Frame", "price": 100000, "stock": 5})
    product_id = str(db["product"].find_one()["_id"])
    Cart(db, shopper["id"]).add(product_id, 2)
    return product_id


def test_place_order_happy_path(db, shopper, stocked_cart):
    payments, widget = FakePayments(), FakeWidget()
    handoff = Checkout(db, payments, widget).place_order(shopper, "transfer", "express")

    assert handoff["token"] == "snap-token-1"
    assert handoff["total_price"] == 225000
    assert payments.calls == [{"name": "Neil SJ", "email": "neil@example.com", "amount": 225000}]
    assert widget.calls == [{"token": "snap-token-1", "order_id": handoff["order_id"]}]

    order = db["order"].find_one()
    assert order["status"] == "pending"
    assert order["total_price"] == 225000
    assert order["shipping_method"] == "express"
    assert order["payment_method"] == "transfer"
    assert order["snap_token"] == "snap-token-1"


def test_empty_cart_creates_nothing(db, shopper):
    payments = FakePayments()
    with pytest.raises(CheckoutError) as exc:
        Checkout(db, payments, FakeWidget()).place_order(shopper, "transfer", "regular")
    assert exc.value.status_code == 400
    assert db["order"].count_documents({}) == 0
    assert payments.calls == []


def test_unauthenticated_creates_nothing(db, stocked_cart):
    payments = FakePayments()
    with pytest.raises(CheckoutError) as exc:
        Checkout(db, payments, FakeWidget()).place_order(None, "transfer", "regular")
    assert exc.value.status_code == 401
    assert db["order"].count_documents({}) == 0
    assert payments.calls == []


def test_token_request_failure_leaves_order_pending(db, shopper, stocked_cart):
    widget = FakeWidget()
    checkout = Checkout(db, FakePayments(error=PaymentError("HTTP 500")), widget)
    with pytest.raises(CheckoutError) as exc:
        checkout.place_order(shopper, "transfer", "regular")

    assert exc.value.message == "Failed to request payment token"
    assert db["order"].find_one()["status"] == "pending"
    assert widget.calls == []


@pytest.mark.parametrize("response,token", [
    ({"snap_token": "legacy"}, "legacy"),
    ({"token": "", "snap_token": "second"}, "second"),
    ({"token": "first", "snap_token": "second"}, "first"),
])
def test_token_field_fallback(db, shopper, stocked_cart, response, token):
    handoff = Checkout(db, FakePayments(response=response), FakeWidget()).place_order(shopper, "ewallet", "regular")
    assert handoff["token"] == token


def test_missing_token_is_fatal(db, shopper, stocked_cart):
    widget = FakeWidget()
    with pytest.raises(CheckoutError) as exc:
        Checkout(db, FakePayments(response={"error_messages": ["bad key"]}), widget).place_order(shopper, "transfer", "regular")
    assert exc.value.status_code == 502
    assert db["order"].find_one()["status"] == "pending"
    assert widget.calls == []


def test_missing_widget_runtime_is_fatal(db, shopper, stocked_cart):
    with pytest.raises(CheckoutError) as exc:
        Checkout(db, FakePayments(), None).place_order(shopper, "transfer", "regular")
    assert exc.value.status_code == 503
    assert db["order"].find_one()["status"] == "pending"


def test_same_idempotency_key_places_one_order(db, shopper, stocked_cart):
    payments = FakePayments()
    checkout = Checkout(db, payments, FakeWidget())
    first = checkout.place_order(shopper, "transfer", "regular", idempotency_key="attempt-1")
    second = checkout.place_order(shopper, "transfer", "regular", idempotency_key="attempt-1")

    assert first["order_id"] == second["order_id"]
    assert db["order"].count_documents({}) == 1
    assert len(payments.calls) == 1


def test_retry_after_failed_token_reuses_order_and_total(db, shopper, stocked_cart):
    with pytest.raises(CheckoutError):
        Checkout(db, FakePayments(error=PaymentError("down")), FakeWidget()).place_order(
            shopper, "transfer", "regular", idempotency_key="attempt-2")

    # cart changes after the order row exists must not change the charge
    Cart(db, shopper["id"]).add(stocked_cart, 3)
    payments = FakePayments()
    handoff = Checkout(db, payments, FakeWidget()).place_order(shopper, "transfer", "regular", idempotency_key="attempt-2")

    assert db["order"].count_documents({}) == 1
    assert handoff["total_price"] == 200000
    assert payments.calls[0]["amount"] == 200000


def test_idempotency_key_of_another_user(db, shopper, stocked_cart):
    Checkout(db, FakePayments(), FakeWidget()).place_order(shopper, "transfer", "regular", idempotency_key="k")
    with pytest.raises(CheckoutError) as exc:
        Checkout(db, FakePayments(), FakeWidget()).place_order(
            {"id": "someone-else", "name": "X", "email": "x@example.com"}, "transfer", "regular", idempotency_key="k")
    assert exc.value.status_code == 409


def test_success_marks_paid_and_clears_cart(db, shopper, stocked_cart):
    checkout = Checkout(db, FakePayments(), FakeWidget())
    order_id = checkout.place_order(shopper, "transfer", "regular")["order_id"]

    result = checkout.handle_payment_event(shopper, order_id, "success")

    assert result["order"]["status"] == "paid"
    assert result["cart_count"] == 0
    assert result["notification"]["title"] == "Payment successful"
    assert db["cartitem"].count_documents({"user_id": shopper["id"]}) == 0


def test_replayed_success_keeps_newer_cart(db, shopper, stocked_cart):
    checkout = Checkout(db, FakePayments(), FakeWidget())
    order_id = checkout.place_order(shopper, "transfer", "regular")["order_id"]
    checkout.confirm_payment(shopper["id"], order_id)
    paid_at = db["order"].find_one()["paid_at"]

    # the shopper starts a new cart, then the old success is delivered again
    Cart(db, shopper["id"]).add(stocked_cart)
    result = checkout.handle_payment_event(shopper, order_id, "success")
    assert result["order"]["status"] == "paid"
    assert result["cart_count"] == 1
    assert db["order"].find_one()["paid_at"] == paid_at
    assert Cart(db, shopper["id"]).count() == 1


def test_confirm_payment_finishes_interrupted_cart_clear(db, shopper, stocked_cart):
    checkout = Checkout(db, FakePayments(), FakeWidget())
    order_id = checkout.place_order(shopper, "transfer", "regular")["order_id"]
    # order marked paid, cart delete never happened
    db["order"].update_one({}, {"$set": {"status": "paid", "cart_cleared": False}})
    assert Cart(db, shopper["id"]).count() == 1

    order = checkout.confirm_payment(shopper["id"], order_id)
    assert order["status"] == "paid"
    assert order["cart_cleared"] is True
    assert Cart(db, shopper["id"]).count() == 0


@pytest.mark.parametrize("event,has_notification", [("pending", True), ("error", True), ("close", False)])
def test_non_success_events_do_not_mutate(db, shopper, stocked_cart, event, has_notification):
    checkout = Checkout(db, FakePayments(), FakeWidget())
    order_id = checkout.place_order(shopper, "transfer", "regular")["order_id"]

    result = checkout.handle_payment_event(shopper, order_id, event, {"status_code": "407"})

    assert db["order"].find_one()["status"] == "pending"
    assert result["cart_count"] == 1
    assert (result["notification"] is not None) == has_notification


def test_error_event_notification_is_destructive(db, shopper, stocked_cart):
    checkout = Checkout(db, FakePayments(), FakeWidget())
    order_id = checkout.place_order(shopper, "transfer", "regular")["order_id"]
    result = checkout.handle_payment_event(shopper, order_id, "error")
    assert result["notification"]["variant"] == "destructive"


def test_payment_event_for_foreign_order(db, shopper, stocked_cart):
    checkout = Checkout(db, FakePayments(), FakeWidget())
    order_id = checkout.place_order(shopper, "transfer", "regular")["order_id"]
    with pytest.raises(CheckoutError) as exc:
        checkout.handle_payment_event({"id": "intruder"}, order_id, "success")
    assert exc.value.status_code == 404
    assert db["order"].find_one()["status"] == "pending"


# HTTP flow

def test_checkout_over_http(client, payments, widget, make_product):
    headers = login_as(client)
    product_id = make_product(price=100000, stock=3)
    client.post("/api/cart", json={"product_id": product_id, "quantity": 2}, headers=headers)

    summary = client.get("/api/checkout/summary", params={"shipping_method": "express"}, headers=headers).json()
    assert summary["subtotal"] == 200000
    assert summary["total"] == 225000

    response = client.post(
        "/api/checkout",
        json={"payment_method": "ewallet", "shipping_method": "express"},
        headers={**headers, "Idempotency-Key": "click-1"},
    )
    assert response.status_code == 200, response.text
    order_id = response.json()["order_id"]
    assert response.json()["token"] == "snap-token-1"

    # double submit of the same click
    again = client.post(
        "/api/checkout",
        json={"payment_method": "ewallet", "shipping_method": "express"},
        headers={**headers, "Idempotency-Key": "click-1"},
    )
    assert again.json()["order_id"] == order_id
    assert len(client.get("/api/orders", headers=headers).json()) == 1

    response = client.post(f"/api/orders/{order_id}/payment-result", json={"event": "success"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["cart_count"] == 0
    assert client.get(f"/api/orders/{order_id}", headers=headers).json()["status"] == "paid"
    assert client.get("/api/cart/count", headers=headers).json()["cart_count"] == 0


def test_gateway_amount_is_whole_rupiah(client, payments, widget, make_product):
    headers = login_as(client)
    product_id = make_product(price=100000, stock=3)
    client.post("/api/cart", json={"product_id": product_id, "quantity": 2}, headers=headers)

    response = client.post("/api/checkout", json={"payment_method": "transfer", "shipping_method": "express"}, headers=headers)
    assert response.status_code == 200, response.text
    amount = payments.calls[0]["amount"]
    assert amount == 225000
    assert isinstance(amount, int)


def test_checkout_over_http_without_login(client, db):
    response = client.post("/api/checkout", json={"payment_method": "transfer", "shipping_method": "regular"})
    assert response.status_code == 401
    assert db["order"].count_documents({}) == 0


def test_checkout_over_http_with_empty_cart(client, db, payments):
    headers = login_as(client)
    response = client.post("/api/checkout", json={}, headers=headers)
    assert response.status_code == 400
    assert payments.calls == []
    assert db["order"].count_documents({}) == 0


def test_checkout_over_http_gateway_failure(client, db, payments, widget, make_product):
    payments.error = PaymentError("HTTP 401")
    headers = login_as(client)
    client.post("/api/cart", json={"product_id": make_product()}, headers=headers)

    response = client.post("/api/checkout", json={}, headers=headers)
    assert response.status_code == 502
    assert response.json()["detail"] == "Failed to request payment token"
    assert db["order"].find_one()["status"] == "pending"
    assert widget.calls == []
