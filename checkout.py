"""
Checkout sequence

Turns the current user's cart into a pending order, obtains a Snap token for
its total and hands the token to the payment widget. Widget callbacks come
back through `handle_payment_event`; a successful payment marks the order
paid and clears the cart.

An order's total_price is computed once, when the order row is inserted, and
is never recomputed from the cart afterwards.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import database
from cart import Cart
from database import serialize_doc, to_object_id
from payment import PaymentError, extract_token
from schemas import Notification, Order, OrderItem

logger = logging.getLogger(__name__)

SHIPPING_COSTS = {"regular": 0, "express": 25000}


class CheckoutError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def shipping_cost(method: str) -> int:
    if method not in SHIPPING_COSTS:
        raise CheckoutError(f"Unknown shipping method: {method}", 422)
    return SHIPPING_COSTS[method]


def gross_amount(total: float) -> int:
    """Gateway amounts are whole rupiah."""
    return int(round(total))


def compute_totals(items: List[Dict[str, Any]], shipping_method: str) -> Dict[str, float]:
    subtotal = sum(item["product"]["price"] * item["quantity"] for item in items)
    shipping = shipping_cost(shipping_method)
    return {"subtotal": subtotal, "shipping_cost": shipping, "total": subtotal + shipping}


class Checkout:
    """
    db: the store; payments: anything with request_token(name, email, amount);
    widget: anything with pay(token, order_id, redirect_url), or None when the
    payment runtime is not available.
    """

    def __init__(self, db, payments, widget=None):
        self.db = db
        self.payments = payments
        self.widget = widget

    @property
    def orders(self):
        return self.db["order"]

    def load_cart(self, user_id: str) -> List[Dict[str, Any]]:
        return Cart(self.db, user_id).items()

    def summary(self, user: Dict[str, Any], shipping_method: str = "regular") -> Dict[str, Any]:
        items = self.load_cart(user["id"])
        return {"items": items, "shipping_method": shipping_method, **compute_totals(items, shipping_method)}

    def place_order(self, user: Optional[Dict[str, Any]], payment_method: str, shipping_method: str,
                    idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        if not user:
            raise CheckoutError("Cannot place order: not logged in", 401)
        user_id = user["id"]
        key = idempotency_key or uuid.uuid4().hex

        order = self.orders.find_one({"idempotency_key": key})
        if order is not None:
            order = self._resume(order, user_id)
            if order.get("snap_token"):
                return self._handoff(order)
        else:
            items = self.load_cart(user_id)
            if not items:
                raise CheckoutError("Cannot place order: cart is empty", 400)
            order = self._insert_order(user_id, items, payment_method, shipping_method, key)

        order_id = str(order["_id"])
        try:
            data = self.payments.request_token(
                user.get("name") or "", user.get("email") or "", gross_amount(order["total_price"]))
        except PaymentError as exc:
            logger.warning("Checkout aborted for order %s: %s", order_id, exc)
            raise CheckoutError("Failed to request payment token", 502) from exc

        token = extract_token(data)
        if not token:
            logger.warning("Checkout aborted for order %s: no token in gateway response", order_id)
            raise CheckoutError("Failed to create Snap token", 502)

        order = self.orders.find_one_and_update(
            {"_id": order["_id"]},
            {"$set": {"snap_token": token, "redirect_url": data.get("redirect_url"), "updated_at": database.now()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._handoff(order)

    def _resume(self, order: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        if order["user_id"] != user_id:
            raise CheckoutError("Idempotency key already used", 409)
        if order["status"] != "pending":
            raise CheckoutError("Order already paid", 409)
        logger.info("Resuming order %s for repeated checkout attempt", order["_id"])
        return order

    def _insert_order(self, user_id, items, payment_method, shipping_method, key) -> Dict[str, Any]:
        totals = compute_totals(items, shipping_method)
        order = Order(
            user_id=user_id,
            items=[
                OrderItem(
                    product_id=item["product_id"],
                    name=item["product"]["name"],
                    price=item["product"]["price"],
                    quantity=item["quantity"],
                )
                for item in items
            ],
            subtotal=totals["subtotal"],
            shipping_cost=totals["shipping_cost"],
            total_price=totals["total"],
            status="pending",
            payment_method=payment_method,
            shipping_method=shipping_method,
            idempotency_key=key,
        )
        doc = order.model_dump()
        doc["created_at"] = doc["updated_at"] = database.now()
        try:
            order_id = str(self.orders.insert_one(doc).inserted_id)
        except DuplicateKeyError:
            # a concurrent submit with the same key won the insert
            existing = self.orders.find_one({"idempotency_key": key})
            return self._resume(existing, user_id)
        except PyMongoError as exc:
            raise CheckoutError(str(exc), 500) from exc
        logger.info("Order %s created (pending, total %s)", order_id, totals["total"])
        return self.orders.find_one({"_id": to_object_id(order_id)})

    def _handoff(self, order: Dict[str, Any]) -> Dict[str, Any]:
        order_id = str(order["_id"])
        if self.widget is None:
            raise CheckoutError("Payment widget is not ready", 503)
        try:
            handoff = self.widget.pay(order["snap_token"], order_id, order.get("redirect_url"))
        except PaymentError as exc:
            raise CheckoutError(str(exc), 503) from exc
        return {**handoff, "order_id": order_id, "total_price": order["total_price"], "status": order["status"]}

    def get_order(self, user: Dict[str, Any], order_id: str) -> Dict[str, Any]:
        oid = to_object_id(order_id)
        order = self.orders.find_one({"_id": oid, "user_id": user["id"]}) if oid else None
        if not order:
            raise CheckoutError("Order not found", 404)
        return order

    def confirm_payment(self, user_id: str, order_id: str) -> Dict[str, Any]:
        """Mark the order paid and clear the user's cart.

        The cart is cleared once per order: `cart_cleared` is set after the
        delete, so a retry after a partial failure completes the pair while a
        replayed success for a settled order leaves newer cart rows alone.
        """
        oid = to_object_id(order_id)
        stamp = database.now()
        order = self.orders.find_one_and_update(
            {"_id": oid, "user_id": user_id, "status": "pending"},
            {"$set": {"status": "paid", "paid_at": stamp, "updated_at": stamp, "cart_cleared": False}},
            return_document=ReturnDocument.AFTER,
        )
        if order is None:
            order = self.orders.find_one({"_id": oid, "user_id": user_id})
            if order is None:
                raise CheckoutError("Order not found", 404)
        else:
            logger.info("Order %s paid", order_id)
        if order.get("cart_cleared") is False:
            Cart(self.db, user_id).clear()
            order = self.orders.find_one_and_update(
                {"_id": oid}, {"$set": {"cart_cleared": True}}, return_document=ReturnDocument.AFTER
            )
        return order

    def handle_payment_event(self, user: Dict[str, Any], order_id: str, event: str,
                             result: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        order = self.get_order(user, order_id)
        cart = Cart(self.db, user["id"])
        notification = None
        if event == "success":
            order = self.confirm_payment(user["id"], order_id)
            notification = Notification(title="Payment successful", description="Thank you for shopping at FixieStore.")
        elif event == "pending":
            logger.info("Order %s awaiting payment: %s", order_id, result)
            notification = Notification(title="Waiting for payment", description="Complete the payment to process your order.")
        elif event == "error":
            logger.warning("Payment error for order %s: %s", order_id, result)
            notification = Notification(
                title="Payment failed",
                description="The payment gateway reported an error.",
                variant="destructive",
            )
        elif event == "close":
            logger.info("Payment popup closed without completing order %s", order_id)
        else:
            raise CheckoutError(f"Unknown payment event: {event}", 422)
        return {
            "order": serialize_doc(order),
            "cart_count": cart.count(),
            "notification": notification.model_dump() if notification else None,
        }
