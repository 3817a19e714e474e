"""
Cart state

All reads and writes of a user's cart go through `Cart`. Every mutation
returns the refreshed cart-count (the number of cartitem rows), so callers
never keep their own copy of it.
"""
import logging
from typing import Any, Dict, List

from pymongo import ReturnDocument

import database
from database import serialize_doc, to_object_id
from schemas import CartItem

logger = logging.getLogger(__name__)


class CartError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class Cart:
    def __init__(self, db, user_id: str):
        self.db = db
        self.user_id = user_id

    @property
    def rows(self):
        return self.db["cartitem"]

    def count(self) -> int:
        return self.rows.count_documents({"user_id": self.user_id})

    def items(self) -> List[Dict[str, Any]]:
        """Cart rows joined with their product. Rows whose product is gone are skipped."""
        rows = list(self.rows.find({"user_id": self.user_id}).sort([("created_at", 1), ("_id", 1)]))
        ids = [to_object_id(r["product_id"]) for r in rows]
        products = {
            str(p["_id"]): serialize_doc(p)
            for p in self.db["product"].find({"_id": {"$in": [i for i in ids if i is not None]}})
        }
        result = []
        for row in rows:
            product = products.get(row["product_id"])
            if product is None:
                continue
            item = serialize_doc(row)
            item["product"] = product
            result.append(item)
        return result

    def add(self, product_id: str, quantity: int = 1) -> int:
        """Add a product, merging into an existing row for the same product."""
        oid = to_object_id(product_id)
        product = self.db["product"].find_one({"_id": oid}) if oid else None
        if not product:
            raise CartError("Product not found", 404)
        if product.get("stock", 0) <= 0:
            raise CartError("Product is out of stock")
        row = CartItem(user_id=self.user_id, product_id=str(oid), quantity=quantity)
        stamp = database.now()
        self.rows.update_one(
            {"user_id": row.user_id, "product_id": row.product_id},
            {
                "$inc": {"quantity": row.quantity},
                "$set": {"updated_at": stamp},
                "$setOnInsert": {"created_at": stamp},
            },
            upsert=True,
        )
        return self.count()

    def set_quantity(self, item_id: str, quantity: int) -> int:
        oid = to_object_id(item_id)
        res = None
        if oid is not None:
            res = self.rows.find_one_and_update(
                {"_id": oid, "user_id": self.user_id},
                {"$set": {"quantity": quantity, "updated_at": database.now()}},
                return_document=ReturnDocument.AFTER,
            )
        if not res:
            raise CartError("Cart item not found", 404)
        return self.count()

    def remove(self, item_id: str) -> int:
        oid = to_object_id(item_id)
        if oid is None or self.rows.delete_one({"_id": oid, "user_id": self.user_id}).deleted_count == 0:
            raise CartError("Cart item not found", 404)
        return self.count()

    def clear(self) -> int:
        res = self.rows.delete_many({"user_id": self.user_id})
        logger.info("Cleared %d cart rows for user %s", res.deleted_count, self.user_id)
        return self.count()
