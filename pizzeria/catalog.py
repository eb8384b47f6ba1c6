import logging
from datetime import datetime
from typing import Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError
from pymongo import ASCENDING, ReturnDocument

from shared.utils import (
    NotFoundException, InvalidStateException, InsufficientStockException
)
from pizzeria.documents import str_to_oid
from pizzeria.models import CustomizationDB

logger = logging.getLogger(__name__)

LOW_STOCK_THRESHOLD = 10

CUSTOMIZATION_FIELDS = (
    "name", "type", "price", "is_vegetarian", "is_available", "applicable_categories",
)


def price_for(product: dict, size: Optional[str]) -> float:
    """Size price when the product defines a positive one, else the base price."""
    option = (product.get("sizes") or {}).get(size) if size else None
    if option and option.get("price", 0) > 0:
        return float(option["price"])
    return float(product["price"])


def size_available(product: dict, size: Optional[str]) -> bool:
    option = (product.get("sizes") or {}).get(size) if size else None
    if option is None:
        return True
    return option.get("available", True)


class Catalog:
    """Read side of the product collection plus the two inventory mutations."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_product(self, product_id: str) -> dict:
        product = await self.db.products.find_one({"_id": str_to_oid(product_id, "Product")})
        if not product:
            raise NotFoundException("Product not found")
        return product

    async def get_customization(self, customization_id: str) -> dict:
        customization = await self.db.customizations.find_one(
            {"_id": str_to_oid(customization_id, "Customization")}
        )
        if not customization:
            raise NotFoundException("Customization not found")
        return customization

    def ensure_purchasable(self, product: dict, quantity: int, size: Optional[str] = None):
        if not product.get("is_available", True):
            raise InvalidStateException(f"{product['name']} is not available")
        if size and not size_available(product, size):
            raise InvalidStateException(f"{product['name']} is not available in size {size}")
        if product.get("inventory", 0) < quantity:
            raise InsufficientStockException(product["name"], product.get("inventory", 0))

    async def deduct(self, product_id: str, quantity: int) -> dict:
        # Decrement only if enough stock remains; never read-modify-write
        updated = await self.db.products.find_one_and_update(
            {"_id": str_to_oid(product_id, "Product"), "inventory": {"$gte": quantity}},
            {"$inc": {"inventory": -quantity}, "$set": {"updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            product = await self.get_product(product_id)
            raise InsufficientStockException(product["name"], product.get("inventory", 0))
        logger.info(
            f"Deducted {quantity} of {updated['name']}, {updated['inventory']} left",
            extra={"product_id": product_id},
        )
        return updated

    async def restore(self, product_id: str, quantity: int) -> dict:
        if quantity < 0:
            raise InvalidStateException("Cannot restore a negative quantity")
        updated = await self.db.products.find_one_and_update(
            {"_id": str_to_oid(product_id, "Product")},
            {"$inc": {"inventory": quantity}, "$set": {"updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise NotFoundException("Product not found")
        return updated

    async def set_inventory(self, product_id: str, inventory: int) -> dict:
        if inventory < 0:
            raise InvalidStateException("Inventory cannot be negative")
        updated = await self.db.products.find_one_and_update(
            {"_id": str_to_oid(product_id, "Product")},
            {"$set": {"inventory": inventory, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise NotFoundException("Product not found")
        return updated

    async def menu(self) -> Dict[str, List[dict]]:
        """Orderable products grouped by category, alphabetical within each."""
        cursor = self.db.products.find(
            {"is_available": True, "inventory": {"$gt": 0}}
        ).sort("name", ASCENDING)
        grouped: Dict[str, List[dict]] = {}
        async for product in cursor:
            grouped.setdefault(product["category"], []).append(product)
        return grouped

    async def low_stock(self, threshold: int = LOW_STOCK_THRESHOLD) -> List[dict]:
        cursor = self.db.products.find(
            {"is_available": True, "inventory": {"$lte": threshold}}
        ).sort("inventory", ASCENDING)
        return await cursor.to_list(length=None)

    # --- Customizations ---
    async def list_customizations(self, include_unavailable: bool = False) -> List[dict]:
        query = {} if include_unavailable else {"is_available": True}
        cursor = self.db.customizations.find(query).sort([("type", ASCENDING), ("name", ASCENDING)])
        return await cursor.to_list(length=None)

    async def update_customization(self, customization_id: str, changes: dict) -> dict:
        customization = await self.get_customization(customization_id)
        update_data = {
            k: v for k, v in changes.items()
            if k in CUSTOMIZATION_FIELDS and v is not None
        }

        merged = {**customization, **update_data}
        merged.pop("_id")
        try:
            CustomizationDB(**merged)
        except ValidationError as e:
            raise InvalidStateException(f"Invalid customization update: {e.errors()[0]['msg']}")

        if update_data:
            await self.db.customizations.update_one({"_id": customization["_id"]}, {"$set": update_data})
        return await self.get_customization(customization_id)

    async def toggle_customization(self, customization_id: str) -> dict:
        customization = await self.get_customization(customization_id)
        return await self.db.customizations.find_one_and_update(
            {"_id": customization["_id"]},
            {"$set": {"is_available": not customization.get("is_available", True)}},
            return_document=ReturnDocument.AFTER,
        )

    async def delete_customization(self, customization_id: str):
        # Cart and order lines keep their own name and price snapshot
        customization = await self.get_customization(customization_id)
        await self.db.customizations.delete_one({"_id": customization["_id"]})
