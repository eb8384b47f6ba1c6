from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from shared.utils import NotFoundException


def str_to_oid(id: str, what: str = "Resource") -> ObjectId:
    try:
        return ObjectId(id)
    except (InvalidId, TypeError):
        raise NotFoundException(f"{what} not found")


def with_id(doc: Optional[dict]) -> Optional[dict]:
    """Copy a Mongo document, exposing `_id` as a string `id`."""
    if doc is None:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return doc


async def ensure_indexes(db: AsyncIOMotorDatabase):
    await db.users.create_index("email", unique=True)
    await db.products.create_index([("category", ASCENDING), ("is_available", ASCENDING)])
    await db.products.create_index([("name", "text"), ("description", "text")])
    await db.customizations.create_index([("type", ASCENDING), ("is_available", ASCENDING)])
    await db.carts.create_index(
        "user_id", unique=True, partialFilterExpression={"user_id": {"$type": "string"}}
    )
    await db.carts.create_index(
        "session_id", unique=True, partialFilterExpression={"session_id": {"$type": "string"}}
    )
    await db.coupons.create_index("code", unique=True)
    await db.coupons.create_index([("is_active", ASCENDING), ("valid_until", ASCENDING)])
    await db.orders.create_index("order_number", unique=True)
    await db.orders.create_index([("order_date", ASCENDING), ("sequence", DESCENDING)])
    await db.orders.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    await db.orders.create_index("status")
    await db.preferences.create_index("user_id", unique=True)
