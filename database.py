"""
MongoDB access for the marketplace.

One collection per entity (see schemas.py). The client is opened by the
application lifespan and handed to request handlers through ``get_db``;
nothing here holds a module-level connection.
"""
import logging
from datetime import datetime

from bson.errors import InvalidId
from bson.objectid import ObjectId
from fastapi import Request
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

import config
from errors import NotFound

logger = logging.getLogger(__name__)

USERS = "user"
PRODUCTS = "product"
CATEGORIES = "category"
SLIDERS = "slider"
REVIEWS = "review"
CART = "cart"
ORDERS = "order"
PAYMENTS = "payment"


def connect(url: str = None) -> MongoClient:
    timeout = config.DB_TIMEOUT_MS
    return MongoClient(
        url or config.DATABASE_URL,
        serverSelectionTimeoutMS=timeout,
        connectTimeoutMS=timeout,
        socketTimeoutMS=timeout,
    )


def ensure_indexes(db: Database) -> None:
    db[USERS].create_index("uid", unique=True)
    db[CATEGORIES].create_index("slug", unique=True)
    db[CART].create_index([("uid", ASCENDING), ("product_info.id", ASCENDING)], unique=True)
    db[PAYMENTS].create_index("transactionId", unique=True)
    db[ORDERS].create_index("customer_uid")
    db[PRODUCTS].create_index("seller_info.seller_uid")
    logger.info("Indexes ensured on %s", db.name)


def get_db(request: Request) -> Database:
    return request.app.state.db


# ----------------------- Helpers -----------------------

def serialize_doc(doc):
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.get("_id")
    if isinstance(_id, ObjectId):
        doc["id"] = str(_id)
        del doc["_id"]
    for k, v in list(doc.items()):
        if isinstance(v, datetime):
            doc[k] = v.isoformat()
        elif isinstance(v, ObjectId):
            doc[k] = str(v)
        elif isinstance(v, dict):
            doc[k] = serialize_doc(v)
    return doc


def parse_object_id(value: str, what: str = "Document") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")


def insert_result(res) -> dict:
    return {"acknowledged": res.acknowledged, "insertedId": str(res.inserted_id)}


def update_result(res) -> dict:
    return {
        "acknowledged": res.acknowledged,
        "matchedCount": res.matched_count,
        "modifiedCount": res.modified_count,
    }


def delete_result(res) -> dict:
    return {"acknowledged": res.acknowledged, "deletedCount": res.deleted_count}
