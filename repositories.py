"""
Collection wrappers injected into the route handlers.

Each repository owns one collection. Writes that must not race (cart merge,
inventory decrement, order state changes) are single conditional updates
rather than read-then-write sequences.
"""
import logging
from typing import List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import (
    CART,
    CATEGORIES,
    ORDERS,
    PAYMENTS,
    PRODUCTS,
    REVIEWS,
    SLIDERS,
    USERS,
    parse_object_id,
)
from schemas import CartItem, Category, Order, Payment, Product, Slider, User

logger = logging.getLogger(__name__)

# Fields of product_info an update may replace
PRODUCT_UPDATE_FIELDS = ("name", "description", "category", "image", "price", "quantity")

# Bookkeeping of apply_sale, not part of the product as served
HIDDEN_PRODUCT_FIELDS = {"applied_payments": 0}

APPLIED = "applied"
ALREADY_APPLIED = "already_applied"
INSUFFICIENT_STOCK = "insufficient_stock"
MISSING = "missing"


def page_args(per_page: int, page_index: int):
    per_page = max(1, per_page)
    return per_page * max(0, page_index), per_page


class UserRepository:
    def __init__(self, db: Database):
        self.col = db[USERS]

    def get(self, uid: str) -> Optional[dict]:
        return self.col.find_one({"uid": uid})

    def register(self, user: User):
        """Insert ``user`` unless the uid exists; returns None on duplicates."""
        if self.col.find_one({"uid": user.uid}, {"_id": 1}):
            return None
        try:
            return self.col.insert_one(user.model_dump(exclude_none=True))
        except DuplicateKeyError:
            return None

    def list(self) -> List[dict]:
        return list(self.col.find({}).sort("createAt", DESCENDING))

    def set_role(self, uid: str, role: str, seller_info: Optional[dict] = None):
        update = {"role": role}
        if seller_info is not None:
            update["seller_info"] = seller_info
        return self.col.update_one({"uid": uid}, {"$set": update})


class CatalogRepository:
    def __init__(self, db: Database):
        self.col = db[PRODUCTS]

    def list_visible(self, per_page: int, page_index: int, category: Optional[str] = None):
        filt = {"visibility": True}
        if category:
            filt["product_info.category"] = category
        skip, limit = page_args(per_page, page_index)
        items = list(self.col.find(filt, HIDDEN_PRODUCT_FIELDS).sort("createAt", DESCENDING).skip(skip).limit(limit))
        return items, self.col.count_documents(filt)

    def list_by_seller(self, seller_uid: str) -> List[dict]:
        return list(self.col.find({"seller_info.seller_uid": seller_uid}, HIDDEN_PRODUCT_FIELDS).sort("createAt", DESCENDING))

    def get(self, product_id: str) -> Optional[dict]:
        return self.col.find_one({"_id": parse_object_id(product_id, "Product")}, HIDDEN_PRODUCT_FIELDS)

    def create(self, product: Product):
        return self.col.insert_one(product.model_dump(exclude_none=True))

    def update(self, product_id: str, fields: dict):
        update = {f"product_info.{k}": v for k, v in fields.items() if k in PRODUCT_UPDATE_FIELDS}
        if not update:
            return None
        return self.col.update_one({"_id": parse_object_id(product_id, "Product")}, {"$set": update})

    def set_visibility(self, product_id: str, visibility: bool):
        return self.col.update_one(
            {"_id": parse_object_id(product_id, "Product")}, {"$set": {"visibility": visibility}}
        )

    def delete(self, product_id: str):
        return self.col.delete_one({"_id": parse_object_id(product_id, "Product")})

    def count(self) -> int:
        return self.col.count_documents({})

    def top_sales(self, limit: int = 5) -> List[dict]:
        return list(self.col.find({}, HIDDEN_PRODUCT_FIELDS).sort("product_info.totalSale", DESCENDING).limit(limit))

    def recent(self, limit: int = 5) -> List[dict]:
        return list(self.col.find({}, HIDDEN_PRODUCT_FIELDS).sort("createAt", DESCENDING).limit(limit))

    def apply_sale(self, product_id: str, quantity: int, payment_id: str) -> str:
        """Move ``quantity`` units from stock to sales for one payment.

        A single conditional update: it only matches while enough stock
        remains and while this payment has not been applied yet, so
        concurrent purchases cannot lose decrements and a retried payment
        cannot apply twice.
        """
        oid = parse_object_id(product_id, "Product")
        doc = self.col.find_one_and_update(
            {
                "_id": oid,
                "product_info.quantity": {"$gte": quantity},
                "applied_payments": {"$ne": payment_id},
            },
            {
                "$inc": {"product_info.quantity": -quantity, "product_info.totalSale": quantity},
                "$push": {"applied_payments": payment_id},
            },
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            return APPLIED
        current = self.col.find_one({"_id": oid}, {"applied_payments": 1})
        if current is None:
            return MISSING
        if payment_id in current.get("applied_payments", []):
            return ALREADY_APPLIED
        return INSUFFICIENT_STOCK


class CategoryRepository:
    def __init__(self, db: Database):
        self.col = db[CATEGORIES]

    def list(self, limit: int = 0) -> List[dict]:
        cursor = self.col.find({})
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def by_slug(self, slug: str) -> Optional[dict]:
        return self.col.find_one({"slug": slug})

    def create(self, category: Category):
        """Returns None when the slug is taken."""
        try:
            return self.col.insert_one(category.model_dump(exclude_none=True))
        except DuplicateKeyError:
            return None


class SliderRepository:
    def __init__(self, db: Database):
        self.col = db[SLIDERS]

    def list(self) -> List[dict]:
        return list(self.col.find({}).sort("createAt", DESCENDING))

    def create(self, slider: Slider):
        return self.col.insert_one(slider.model_dump(exclude_none=True))

    def delete(self, slider_id: str):
        return self.col.delete_one({"_id": parse_object_id(slider_id, "Slider")})


class ReviewRepository:
    def __init__(self, db: Database):
        self.col = db[REVIEWS]

    def for_product(self, product_id: str) -> List[dict]:
        return list(self.col.find({"product_id": product_id}).sort("createAt", DESCENDING))

    def create(self, doc: dict):
        return self.col.insert_one(doc)


class CartRepository:
    def __init__(self, db: Database):
        self.col = db[CART]

    def _increment(self, uid: str, product_id: str, quantity: int):
        return self.col.update_one(
            {"uid": uid, "product_info.id": product_id},
            {"$inc": {"product_info.quantity": quantity}},
        )

    def add(self, item: CartItem):
        """Merge ``item`` into the owner's cart.

        An existing line for the same product is incremented in place;
        otherwise a new line is inserted. The unique (uid, product) index
        turns a concurrent double insert into an increment.
        """
        product_id = item.product_info.id
        res = self._increment(item.uid, product_id, item.product_info.quantity)
        if res.matched_count:
            return res
        try:
            return self.col.insert_one(item.model_dump(exclude_none=True))
        except DuplicateKeyError:
            return self._increment(item.uid, product_id, item.product_info.quantity)

    def list(self, uid: str) -> List[dict]:
        return list(self.col.find({"uid": uid}))

    def remove(self, uid: str, item_id: str):
        return self.col.delete_one({"_id": parse_object_id(item_id, "Cart item"), "uid": uid})

    def clear(self, uid: str, item_ids: List) -> int:
        return self.col.delete_many({"uid": uid, "_id": {"$in": item_ids}}).deleted_count


class OrderRepository:
    def __init__(self, db: Database):
        self.col = db[ORDERS]

    def get(self, order_id: str) -> Optional[dict]:
        return self.col.find_one({"_id": parse_object_id(order_id, "Order")})

    def create(self, order: Order):
        return self.col.insert_one(order.model_dump(exclude_none=True))

    def for_customer(self, uid: str) -> List[dict]:
        return list(self.col.find({"customer_uid": uid}).sort("createAt", DESCENDING))

    def list(self, per_page: int, page_index: int):
        skip, limit = page_args(per_page, page_index)
        items = list(self.col.find({}).sort("createAt", DESCENDING).skip(skip).limit(limit))
        return items, self.col.count_documents({})

    def count(self) -> int:
        return self.col.count_documents({})

    def mark_paid(self, order_id: str, address: str, transaction_id: str) -> bool:
        res = self.col.update_one(
            {"_id": parse_object_id(order_id, "Order"), "payment_status": False, "order_status": "payment pending"},
            {
                "$set": {
                    "payment_status": True,
                    "order_status": "processing",
                    "address": address,
                    "transactionId": transaction_id,
                }
            },
        )
        return res.modified_count == 1

    def set_status(self, order_id: str, current: str, new: str) -> bool:
        """Compare-and-set of ``order_status``."""
        res = self.col.update_one(
            {"_id": parse_object_id(order_id, "Order"), "order_status": current},
            {"$set": {"order_status": new}},
        )
        return res.modified_count == 1


class PaymentRepository:
    def __init__(self, db: Database):
        self.col = db[PAYMENTS]

    def get(self, payment_id: str) -> Optional[dict]:
        return self.col.find_one({"_id": parse_object_id(payment_id, "Payment")})

    def by_transaction(self, transaction_id: str) -> Optional[dict]:
        return self.col.find_one({"transactionId": transaction_id})

    def create(self, payment: Payment):
        return self.col.insert_one(payment.model_dump())

    def finish_inventory(self, payment_id, status: str, adjusted: List[str], backordered: List[dict]):
        return self.col.update_one(
            {"_id": payment_id},
            {"$set": {"inventory_status": status, "adjusted": adjusted, "backordered": backordered}},
        )

    def reject(self, payment_id, reason: str):
        return self.col.update_one(
            {"_id": payment_id}, {"$set": {"inventory_status": "rejected", "rejected_reason": reason}}
        )

    def newest_first(self, per_page: int, page_index: int):
        skip, limit = page_args(per_page, page_index)
        items = list(self.col.find({}).sort("createAt", DESCENDING).skip(skip).limit(limit))
        return items, self.col.count_documents({})

    def oldest_first(self) -> List[dict]:
        return list(self.col.find({}, {"price": 1, "createAt": 1}).sort("createAt", 1))
