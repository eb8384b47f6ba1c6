import logging
from datetime import datetime
from typing import List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from shared.utils import settings, NotFoundException, InvalidStateException
from pizzeria.catalog import Catalog, price_for
from pizzeria.identity import IdentityContext
from pizzeria.models import CartDB, CartItemDB, SelectedCustomization
from pizzeria.pricing import cart_totals

logger = logging.getLogger(__name__)


def line_key(product_id: str, size: str, customization_ids: List[str]) -> tuple:
    # Customization order does not make a different line
    return (str(product_id), size, tuple(sorted(customization_ids)))


def item_key(item: dict) -> tuple:
    return line_key(
        item["product_id"],
        item.get("size"),
        [c["customization_id"] for c in item.get("customizations") or []],
    )


class CartService:
    def __init__(self, db: AsyncIOMotorDatabase, catalog: Optional[Catalog] = None,
                 tax_rate: float = settings.TAX_RATE):
        self.db = db
        self.catalog = catalog or Catalog(db)
        self.tax_rate = tax_rate

    async def get(self, identity: IdentityContext) -> dict:
        cart = await self.db.carts.find_one(identity.owner_filter())
        if cart:
            return cart

        cart_db = CartDB(user_id=identity.user_id, session_id=identity.session_id)
        try:
            res = await self.db.carts.insert_one(cart_db.dict(by_alias=True, exclude={"id"}))
        except DuplicateKeyError:
            # Another request created it first
            return await self.db.carts.find_one(identity.owner_filter())
        return await self.db.carts.find_one({"_id": res.inserted_id})

    async def add_item(
        self,
        identity: IdentityContext,
        product_id: str,
        quantity: int = 1,
        size: str = "medium",
        customization_ids: Optional[List[str]] = None,
        notes: Optional[str] = None,
    ) -> dict:
        if quantity < 1:
            raise InvalidStateException("Quantity must be at least 1")

        product = await self.catalog.get_product(product_id)
        customizations = await self._resolve_customizations(product, customization_ids or [])

        cart = await self.get(identity)
        items = [dict(item) for item in cart.get("items", [])]

        key = line_key(product_id, size, [c.customization_id for c in customizations])
        existing = next((item for item in items if item_key(item) == key), None)
        new_quantity = quantity + (existing["quantity"] if existing else 0)

        # Validate against the cumulative quantity before touching the cart
        self.catalog.ensure_purchasable(product, new_quantity, size)

        if existing:
            existing["quantity"] = new_quantity
        else:
            items.append(CartItemDB(
                id=str(ObjectId()),
                product_id=str(product["_id"]),
                name=product["name"],
                quantity=quantity,
                size=size,
                price=price_for(product, size),
                customizations=customizations,
                notes=notes,
            ).dict())

        return await self._save(cart, items)

    async def update_item_quantity(self, identity: IdentityContext, item_id: str, quantity: int) -> dict:
        cart = await self.get(identity)
        items = [dict(item) for item in cart.get("items", [])]
        item = next((i for i in items if i["id"] == item_id), None)
        if item is None:
            raise NotFoundException("Item not found in cart")

        if quantity <= 0:
            items.remove(item)
        else:
            if quantity > item["quantity"]:
                product = await self.catalog.get_product(item["product_id"])
                self.catalog.ensure_purchasable(product, quantity, item.get("size"))
            item["quantity"] = quantity

        return await self._save(cart, items)

    async def remove_item(self, identity: IdentityContext, item_id: str) -> dict:
        cart = await self.get(identity)
        items = [dict(item) for item in cart.get("items", []) if item["id"] != item_id]
        if len(items) == len(cart.get("items", [])):
            raise NotFoundException("Item not found in cart")
        return await self._save(cart, items)

    async def clear(self, identity: IdentityContext) -> dict:
        cart = await self.get(identity)
        return await self._save(cart, [])

    async def merge(self, user_id: str, session_id: str) -> dict:
        """Fold a guest cart into the user's cart. Safe to call again after it has run."""
        # Claiming the guest cart by deleting it means a repeat call finds nothing
        guest_cart = await self.db.carts.find_one_and_delete({"session_id": session_id})
        try:
            user_cart = await self.get(IdentityContext.for_user(user_id))
            if not guest_cart or not guest_cart.get("items"):
                return user_cart

            items = [dict(item) for item in user_cart.get("items", [])]
            for guest_item in guest_cart["items"]:
                match = next((item for item in items if item_key(item) == item_key(guest_item)), None)
                if match:
                    match["quantity"] += guest_item["quantity"]
                else:
                    items.append(dict(guest_item))

            merged = await self._save(user_cart, items)
        except Exception:
            if guest_cart:
                # Put the claimed guest cart back so its lines are not lost
                await self.db.carts.insert_one(guest_cart)
                logger.warning(
                    "Cart merge failed, guest cart restored",
                    extra={"user_id": user_id, "session_id": session_id},
                )
            raise

        logger.info(
            f"Merged {len(guest_cart['items'])} guest line(s) into user cart",
            extra={"user_id": user_id, "session_id": session_id},
        )
        return merged

    async def _resolve_customizations(self, product: dict, customization_ids: List[str]) -> List[SelectedCustomization]:
        selected = []
        for customization_id in customization_ids:
            customization = await self.catalog.get_customization(customization_id)
            if not customization.get("is_available", True):
                raise InvalidStateException(f"{customization['name']} is not available")
            applicable = customization.get("applicable_categories") or []
            if applicable and product.get("category") not in applicable:
                raise InvalidStateException(
                    f"{customization['name']} cannot be added to {product['name']}"
                )
            selected.append(SelectedCustomization(
                customization_id=str(customization["_id"]),
                name=customization["name"],
                price=float(customization.get("price", 0)),
            ))
        return selected

    async def _save(self, cart: dict, items: List[dict]) -> dict:
        # Items and derived totals go out in a single document update
        totals = cart_totals(items, self.tax_rate)
        now = datetime.utcnow()
        await self.db.carts.update_one(
            {"_id": cart["_id"]},
            {"$set": {"items": items, **totals, "updated_at": now}},
        )
        cart = dict(cart)
        cart.update(items=items, updated_at=now, **totals)
        return cart
