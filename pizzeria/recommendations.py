import logging
from collections import Counter
from datetime import datetime, timedelta
from itertools import zip_longest
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING

from pizzeria.documents import str_to_oid

logger = logging.getLogger(__name__)

MAX_PER_CATEGORY = 2
TRENDING_DAYS = 7
DIETARY_FLAGS = ("vegetarian", "spicy")

ORDERABLE = {"is_available": True, "inventory": {"$gt": 0}}

# What to suggest alongside a category already in the cart
COMPLEMENTS = {
    "pizza": ("sides", "drink", "bread"),
    "sides": ("drink", "pizza"),
    "bread": ("drink", "pizza"),
    "drink": ("sides", "bread"),
}


class PreferenceTracker:
    """Learns what a customer likes from the orders they place."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def record_order(self, order: dict):
        # Runs after checkout has committed; a failure here only costs us data
        try:
            await self._record(order)
        except Exception:
            logger.exception(
                "Preference update failed", extra={"order_number": order.get("order_number")}
            )

    async def _record(self, order: dict):
        increments = Counter()
        for item in order["items"]:
            product_id = item["product_id"]
            await self.db.products.update_one(
                {"_id": str_to_oid(product_id, "Product")},
                {"$inc": {"order_count": item["quantity"]}},
            )
            if not order.get("user_id"):
                continue
            product = await self.db.products.find_one({"_id": str_to_oid(product_id, "Product")})
            increments[f"favorite_products.{product_id}"] += item["quantity"]
            increments["total_items"] += item["quantity"]
            if product:
                increments[f"favorite_categories.{product['category']}"] += item["quantity"]
                if product.get("is_vegetarian"):
                    increments["vegetarian_items"] += item["quantity"]
                if product.get("is_spicy"):
                    increments["spicy_items"] += item["quantity"]

        if not order.get("user_id"):
            return

        await self.db.preferences.update_one(
            {"user_id": order["user_id"]},
            {
                "$inc": {**increments, "total_orders": 1, "total_spent": order["total"]},
                "$set": {"updated_at": datetime.utcnow()},
            },
            upsert=True,
        )


def _time_slot(now: datetime) -> Optional[str]:
    hour = now.hour
    if 11 <= hour < 14:
        return "lunch"
    if 17 <= hour < 21:
        return "dinner"
    if hour >= 21 or hour < 2:
        return "late_night"
    return None


def _leans_towards(preferences: dict, flag: str) -> bool:
    # A stated preference wins; otherwise half of what they ordered must match
    if (preferences.get("dietary_preferences") or {}).get(flag):
        return True
    total_items = preferences.get("total_items") or 0
    return bool(total_items) and preferences.get(f"{flag}_items", 0) / total_items >= 0.5


def score_product(product: dict, preferences: dict, now: datetime) -> dict:
    score = 0.0
    reasons = []
    product_id = str(product["_id"])

    score += min(product.get("order_count", 0), 100) / 10

    favorites = preferences.get("favorite_products") or {}
    if product_id in favorites:
        score += min(favorites[product_id] * 5, 50)
        reasons.append("Based on your previous orders")

    categories = preferences.get("favorite_categories") or {}
    if product.get("category") in categories:
        score += min(categories[product["category"]] * 2, 20)
        reasons.append(f"You love {product['category']}")

    slot = _time_slot(now)
    if slot == "dinner" and product.get("category") == "pizza":
        score += 10
        reasons.append("Dinner favorite")
    elif slot == "late_night" and product.get("category") == "sides":
        score += 15
        reasons.append("Perfect for late night")
    elif slot == "lunch" and product.get("category") in ("bread", "drink"):
        score += 10
        reasons.append("Great for lunch")

    if product.get("is_vegetarian") and _leans_towards(preferences, "vegetarian"):
        score += 25
        reasons.append("Vegetarian friendly")
    if product.get("is_spicy") and _leans_towards(preferences, "spicy"):
        score += 20
        reasons.append("Spicy, just how you like it")

    if product_id not in favorites:
        score += 5
        if not reasons:
            reasons.append("Try something new!")

    rating = product.get("rating") or 0
    score += rating * 2
    if rating >= 4.5:
        reasons.append("Highly rated")

    return {"product": product, "score": round(score, 2), "reasons": reasons}


def diversify(scored: List[dict], limit: int) -> List[dict]:
    picked = []
    per_category = Counter()
    for entry in scored:
        category = entry["product"].get("category")
        if per_category[category] < MAX_PER_CATEGORY:
            picked.append(entry)
            per_category[category] += 1
        if len(picked) == limit:
            return picked

    # Not enough variety on the menu; top up with the best of the rest
    for entry in scored:
        if entry not in picked:
            picked.append(entry)
        if len(picked) == limit:
            break
    return picked


class RecommendationService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def popular(self, limit: int = 6) -> List[dict]:
        cursor = self.db.products.find(ORDERABLE).sort(
            [("order_count", DESCENDING), ("rating", DESCENDING)]
        ).limit(limit)
        products = await cursor.to_list(length=limit)
        return [{"product": p, "score": float(p.get("order_count", 0)), "reasons": ["Popular right now"]}
                for p in products]

    async def recommend(self, user_id: Optional[str], limit: int = 6,
                        now: Optional[datetime] = None) -> List[dict]:
        if not user_id:
            return await self.popular(limit)

        preferences = await self.db.preferences.find_one({"user_id": user_id})
        if not preferences:
            return await self.popular(limit)

        now = now or datetime.utcnow()
        products = await self.db.products.find(ORDERABLE).to_list(length=None)
        scored = sorted(
            (score_product(p, preferences, now) for p in products),
            key=lambda entry: entry["score"],
            reverse=True,
        )
        return diversify(scored, limit)

    async def trending(self, limit: int = 6, days: int = TRENDING_DAYS,
                       now: Optional[datetime] = None) -> List[dict]:
        """Most ordered products over the last few days, by units sold."""
        since = (now or datetime.utcnow()) - timedelta(days=days)
        rows = await self.db.orders.aggregate([
            {"$match": {"created_at": {"$gte": since}, "status": {"$ne": "cancelled"}}},
            {"$unwind": "$items"},
            {"$group": {"_id": "$items.product_id", "quantity": {"$sum": "$items.quantity"}}},
            {"$sort": {"quantity": -1}},
            {"$limit": limit},
        ]).to_list(length=None)

        sold = {row["_id"]: row["quantity"] for row in rows}
        products = await self.db.products.find(
            {"_id": {"$in": [str_to_oid(pid, "Product") for pid in sold]}, **ORDERABLE}
        ).to_list(length=None)
        products.sort(key=lambda p: sold[str(p["_id"])], reverse=True)
        return [{"product": p, "score": float(sold[str(p["_id"])]), "reasons": ["Trending this week"]}
                for p in products]

    async def similar(self, product_ids: List[str], limit: int = 4) -> List[dict]:
        """
        Suggestions for a cart: other products from the same categories,
        alternating with products from categories that go well with them.
        """
        oids = [str_to_oid(pid, "Product") for pid in product_ids]
        in_cart = await self.db.products.find({"_id": {"$in": oids}}).to_list(length=None)
        categories = sorted({p["category"] for p in in_cart})
        complements = sorted({
            c for category in categories for c in COMPLEMENTS.get(category, ()) if c not in categories
        })

        base = {"_id": {"$nin": oids}, **ORDERABLE}
        same = await self.db.products.find(
            {**base, "category": {"$in": categories}}
        ).sort("order_count", DESCENDING).limit(limit * 2).to_list(length=None)
        extra = await self.db.products.find(
            {**base, "category": {"$in": complements}}
        ).sort("order_count", DESCENDING).limit(limit).to_list(length=None)

        picked = []
        for pair in zip_longest(same, extra):
            for product, reason in zip(pair, ("Similar to items in your cart", "Goes great with your order")):
                if product is not None and len(picked) < limit:
                    picked.append({"product": product, "score": float(product.get("order_count", 0)),
                                   "reasons": [reason]})
        return picked

    async def preferences(self, user_id: str) -> dict:
        stored = await self.db.preferences.find_one({"user_id": user_id}) or {}
        return {
            "user_id": user_id,
            "favorite_products": stored.get("favorite_products") or {},
            "favorite_categories": stored.get("favorite_categories") or {},
            "total_orders": stored.get("total_orders", 0),
            "total_spent": round(stored.get("total_spent", 0), 2),
            "dietary_preferences": {
                flag: bool((stored.get("dietary_preferences") or {}).get(flag))
                for flag in DIETARY_FLAGS
            },
        }

    async def update_dietary(self, user_id: str, **flags) -> dict:
        dietary = {flag: bool(flags.get(flag)) for flag in DIETARY_FLAGS}
        await self.db.preferences.update_one(
            {"user_id": user_id},
            {"$set": {"dietary_preferences": dietary, "updated_at": datetime.utcnow()}},
            upsert=True,
        )
        logger.info("Dietary preferences updated", extra={"user_id": user_id})
        return await self.preferences(user_id)

    async def reorder_suggestions(self, user_id: str, limit: int = 5) -> List[dict]:
        stored = await self.db.preferences.find_one({"user_id": user_id}) or {}
        counts = stored.get("favorite_products") or {}
        if not counts:
            return []

        products = await self.db.products.find(
            {"_id": {"$in": [str_to_oid(pid, "Product") for pid in counts]}, "is_available": True}
        ).to_list(length=None)
        products.sort(key=lambda p: counts[str(p["_id"])], reverse=True)
        return [
            {"product": p, "order_count": counts[str(p["_id"])],
             "reason": f"Ordered {counts[str(p['_id'])]} times"}
            for p in products[:limit]
        ]
