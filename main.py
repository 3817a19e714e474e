import logging
import os
import re
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import database
from auth import (
    bearer_token, close_session, get_current_user, get_optional_user, hash_password,
    open_session, public_user, require_admin, verify_password,
)
from cart import Cart, CartError
from checkout import Checkout, CheckoutError
from database import (
    DatabaseUnavailable, create_document, ensure_indexes, get_documents, serialize_doc, to_object_id,
)
from payment import SnapClient, SnapWidget
from schemas import (
    CartAddIn, CartUpdateIn, Category, CheckoutIn, LoginIn, Notification, PaymentResultIn,
    Product, RegisterIn, Review, ShippingMethod, User,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("fixiestore")

NEWEST_FIRST = [("created_at", -1), ("_id", -1)]


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
    else:
        logger.warning("DATABASE_URL/DATABASE_NAME not set; running without a database")
    if not os.getenv("ADMIN_API_KEY"):
        logger.warning("ADMIN_API_KEY not set; admin endpoints are open to every caller")
    yield


app = FastAPI(title="FixieStore API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Error translation

@app.exception_handler(DatabaseUnavailable)
def database_unavailable(request: Request, exc: DatabaseUnavailable):
    return JSONResponse(status_code=500, content={"detail": "Database not available"})

@app.exception_handler(PyMongoError)
def store_error(request: Request, exc: PyMongoError):
    logger.error("Store call failed on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})

@app.exception_handler(CheckoutError)
@app.exception_handler(CartError)
def domain_error(request: Request, exc):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

# Dependencies

def get_store():
    return database.get_db()

def get_payments() -> SnapClient:
    return SnapClient()

def get_widget() -> Optional[SnapWidget]:
    widget = SnapWidget()
    return widget if widget.available else None

def get_checkout(db=Depends(get_store), payments=Depends(get_payments), widget=Depends(get_widget)) -> Checkout:
    return Checkout(db, payments, widget)

def product_or_404(db, product_id: str) -> Dict[str, Any]:
    oid = to_object_id(product_id)
    if oid is None:
        raise HTTPException(status_code=400, detail="Invalid product id")
    item = db["product"].find_one({"_id": oid})
    if not item:
        raise HTTPException(status_code=404, detail="Product not found")
    return item

def check_category(db, category_id: Optional[str]) -> Optional[str]:
    """Return the canonical form of category_id, or 400 when it does not exist."""
    if category_id is None:
        return None
    oid = to_object_id(category_id)
    if oid is None or db["category"].count_documents({"_id": oid}) == 0:
        raise HTTPException(status_code=400, detail="Category not found")
    return str(oid)

@app.get("/")
def read_root():
    return {"message": "FixieStore Backend Ready"}

@app.get("/schema")
def get_schema():
    """Expose basic schema info for the database viewer."""
    return {
        "collections": [
            "user", "session", "category", "product", "review", "cartitem", "order"
        ]
    }

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "payment_gateway": "✅ Set" if os.getenv("MIDTRANS_SERVER_KEY") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()[:10]
        else:
            response["database"] = "⚠️  Available but not initialized"
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response

# Auth

@app.post("/api/auth/register")
def register(payload: RegisterIn, db=Depends(get_store)):
    if db["user"].find_one({"email": payload.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = User(name=payload.name, email=payload.email, password_hash=hash_password(payload.password))
    try:
        user_id = create_document("user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    return {"id": user_id, "name": user.name, "email": user.email, "role": user.role}

@app.post("/api/auth/login")
def login(payload: LoginIn, db=Depends(get_store)):
    user = db["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = open_session(str(user["_id"]))
    return {"token": token, "user": public_user(user)}

@app.post("/api/auth/logout")
def logout(authorization: Optional[str] = Header(default=None), db=Depends(get_store)):
    token = bearer_token(authorization)
    if token:
        close_session(db, token)
    return {"ok": True}

@app.get("/api/auth/me")
def me(user=Depends(get_current_user)):
    return public_user(user)

# Categories

@app.get("/api/categories")
def list_categories(db=Depends(get_store)):
    return get_documents("category", sort=[("name", 1)])

# Products

@app.get("/api/products")
def list_products(
    category_id: Optional[str] = None,
    q: Optional[str] = Query(None, description="Substring of name or brand"),
    db=Depends(get_store),
):
    filt: Dict[str, Any] = {}
    if category_id:
        oid = to_object_id(category_id)
        filt["category_id"] = str(oid) if oid else category_id
    if q:
        pattern = re.escape(q)
        filt["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"brand": {"$regex": pattern, "$options": "i"}},
        ]
    return [serialize_doc(x) for x in db["product"].find(filt).sort(NEWEST_FIRST)]

@app.get("/api/products/{product_id}")
def get_product(product_id: str, db=Depends(get_store)):
    item = serialize_doc(product_or_404(db, product_id))
    category = None
    if item.get("category_id"):
        category = db["category"].find_one({"_id": to_object_id(item["category_id"])})
    item["category_name"] = category["name"] if category else None
    related_ids = [oid for oid in map(to_object_id, item.get("related_products") or []) if oid is not None]
    item["related"] = [
        {"id": str(p["_id"]), "name": p.get("name"), "price": p.get("price"), "image_url": p.get("image_url")}
        for p in db["product"].find({"_id": {"$in": related_ids}})
    ]
    return item

# Reviews

@app.get("/api/products/{product_id}/reviews")
def product_reviews(product_id: str, db=Depends(get_store)):
    reviews = list(db["review"].find({"product_id": product_id}).sort(NEWEST_FIRST))
    profile_ids = {r["profile_id"] for r in reviews}
    names = {
        str(u["_id"]): u.get("name")
        for u in db["user"].find({"_id": {"$in": [to_object_id(p) for p in profile_ids if to_object_id(p)]}})
    }
    items = []
    for r in reviews:
        r = serialize_doc(r)
        r["username"] = names.get(r["profile_id"])
        items.append(r)
    return items

@app.post("/api/products/{product_id}/reviews")
def add_review(product_id: str, rev: Review, user=Depends(get_current_user), db=Depends(get_store)):
    product_or_404(db, product_id)
    data = rev.model_dump()
    data["product_id"] = product_id
    data["profile_id"] = user["id"]
    _id = create_document("review", data)
    return {"id": _id, "notification": Notification(title="Review submitted").model_dump()}

# Cart

@app.get("/api/cart")
def get_cart(user=Depends(get_current_user), db=Depends(get_store)):
    cart = Cart(db, user["id"])
    return {"items": cart.items(), "cart_count": cart.count()}

@app.get("/api/cart/count")
def cart_count(user=Depends(get_current_user), db=Depends(get_store)):
    return {"cart_count": Cart(db, user["id"]).count()}

@app.post("/api/cart")
def add_to_cart(item: CartAddIn, user=Depends(get_current_user), db=Depends(get_store)):
    count = Cart(db, user["id"]).add(item.product_id, item.quantity)
    return {"cart_count": count, "notification": Notification(title="Added to cart").model_dump()}

@app.patch("/api/cart/{item_id}")
def update_cart(item_id: str, payload: CartUpdateIn, user=Depends(get_current_user), db=Depends(get_store)):
    return {"cart_count": Cart(db, user["id"]).set_quantity(item_id, payload.quantity)}

@app.delete("/api/cart/{item_id}")
def remove_cart(item_id: str, user=Depends(get_current_user), db=Depends(get_store)):
    return {"cart_count": Cart(db, user["id"]).remove(item_id)}

# Checkout & orders

@app.get("/api/checkout/summary")
def checkout_summary(
    shipping_method: ShippingMethod = "regular",
    user=Depends(get_current_user),
    checkout: Checkout = Depends(get_checkout),
):
    return checkout.summary(user, shipping_method)

@app.post("/api/checkout")
def place_order(
    payload: CheckoutIn,
    idempotency_key: Optional[str] = Header(default=None),
    user=Depends(get_optional_user),
    checkout: Checkout = Depends(get_checkout),
):
    return checkout.place_order(user, payload.payment_method, payload.shipping_method, idempotency_key)

@app.get("/api/orders")
def list_orders(user=Depends(get_current_user), db=Depends(get_store)):
    return [serialize_doc(x) for x in db["order"].find({"user_id": user["id"]}).sort(NEWEST_FIRST)]

@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), checkout: Checkout = Depends(get_checkout)):
    return serialize_doc(checkout.get_order(user, order_id))

@app.post("/api/orders/{order_id}/payment-result")
def payment_result(
    order_id: str,
    payload: PaymentResultIn,
    user=Depends(get_current_user),
    checkout: Checkout = Depends(get_checkout),
):
    return checkout.handle_payment_event(user, order_id, payload.event, payload.result)

# Payment proxy

@app.post("/api/create-transaction")
def create_transaction(body: Dict[str, Any] = Body(...), payments: SnapClient = Depends(get_payments)):
    try:
        return payments.create_transaction(body.get("name"), body.get("email"), body.get("amount"))
    except Exception:
        logger.exception("Proxy error")
        return JSONResponse(status_code=500, content={"message": "Internal Server Error"})

# Admin

@app.post("/api/admin/categories", dependencies=[Depends(require_admin)])
def create_category(cat: Category, db=Depends(get_store)):
    try:
        cat_id = create_document("category", cat)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Category slug already exists")
    return {"id": cat_id}

@app.put("/api/admin/categories/{category_id}", dependencies=[Depends(require_admin)])
def update_category(category_id: str, cat: Category, db=Depends(get_store)):
    data = cat.model_dump()
    data["updated_at"] = database.now()
    try:
        res = db["category"].find_one_and_update(
            {"_id": to_object_id(category_id)}, {"$set": data}, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Category slug already exists")
    if not res:
        raise HTTPException(status_code=404, detail="Category not found")
    return serialize_doc(res)

@app.delete("/api/admin/categories/{category_id}", dependencies=[Depends(require_admin)])
def delete_category(category_id: str, db=Depends(get_store)):
    oid = to_object_id(category_id)
    used = db["product"].count_documents({"category_id": str(oid)}) if oid else 0
    if used:
        raise HTTPException(status_code=409, detail=f"Category is used by {used} product(s)")
    res = db["category"].delete_one({"_id": oid})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Category not found")
    return {"deleted": True}

@app.get("/api/admin/products", dependencies=[Depends(require_admin)])
def admin_list_products(db=Depends(get_store)):
    return [serialize_doc(x) for x in db["product"].find().sort(NEWEST_FIRST)]

@app.post("/api/admin/products", dependencies=[Depends(require_admin)])
def create_product(prod: Product, db=Depends(get_store)):
    prod.category_id = check_category(db, prod.category_id)
    prod_id = create_document("product", prod)
    return {"id": prod_id, "notification": Notification(title="Product added").model_dump()}

@app.put("/api/admin/products/{product_id}", dependencies=[Depends(require_admin)])
def update_product(product_id: str, prod: Product, db=Depends(get_store)):
    prod.category_id = check_category(db, prod.category_id)
    data = prod.model_dump()
    data["updated_at"] = database.now()
    res = db["product"].find_one_and_update(
        {"_id": to_object_id(product_id)}, {"$set": data}, return_document=ReturnDocument.AFTER
    )
    if not res:
        raise HTTPException(status_code=404, detail="Product not found")
    return serialize_doc(res)

@app.delete("/api/admin/products/{product_id}", dependencies=[Depends(require_admin)])
def delete_product(product_id: str, db=Depends(get_store)):
    res = db["product"].delete_one({"_id": to_object_id(product_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    db["cartitem"].delete_many({"product_id": str(to_object_id(product_id))})
    return {"deleted": True, "notification": Notification(title="Product deleted").model_dump()}

@app.get("/api/admin/orders", dependencies=[Depends(require_admin)])
def admin_list_orders(status: Optional[str] = None, db=Depends(get_store)):
    filt = {"status": status} if status else {}
    return get_documents("order", filt, sort=NEWEST_FIRST)

@app.delete("/api/admin/orders/{order_id}", dependencies=[Depends(require_admin)])
def delete_order(order_id: str, db=Depends(get_store)):
    res = db["order"].delete_one({"_id": to_object_id(order_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Order not found")
    return {"deleted": True}

# Seed demo data if database empty
@app.post("/api/admin/seed", dependencies=[Depends(require_admin)])
def seed_data(db=Depends(get_store)):
    if db["product"].count_documents({}) > 0:
        return {"ok": True, "message": "Already seeded"}
    categories = [
        {"name": "Complete Bikes", "slug": "complete-bikes", "description": "Ready-to-ride fixed gear bikes"},
        {"name": "Frames", "slug": "frames", "description": "Track and fixie framesets"},
        {"name": "Wheelsets", "slug": "wheelsets", "description": "Flip-flop and deep section wheels"},
    ]
    category_ids = {c["slug"]: create_document("category", c) for c in categories}
    products = []
    for i in range(1, 7):
        products.append(Product(
            name=f"Urban Fixie {i}",
            description="Lightweight fixed gear bike for city riding.",
            long_description="Alloy frame, flip-flop hub and bullhorn bar.",
            price=2500000 + 250000 * i,
            stock=10 if i % 3 else 0,
            image_url="https://images.unsplash.com/photo-1485965120184-e220f721d03e?q=80&w=1200&auto=format&fit=crop",
            brand="Fixie Co" if i % 2 else "Trackline",
            category_id=category_ids["complete-bikes"],
            specifications={"frame": "alloy", "gearing": "46x16"},
            variants={"size": ["49", "52", "55"], "color": ["black", "white"]},
        ))
    for p in products:
        create_document("product", p)
    return {"ok": True, "inserted": len(products)}

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
