import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from shared.utils import (
    to_money, utc_naive, NotFoundException, ConflictException, InvalidStateException
)
from pizzeria.documents import str_to_oid
from pizzeria.models import CouponDB

logger = logging.getLogger(__name__)

# Fields an administrator may change; code and usage counters are not among them
UPDATABLE_FIELDS = (
    "description", "type", "value", "min_order_amount", "max_discount",
    "usage_limit", "user_usage_limit", "valid_from", "valid_until", "is_active",
)

CONSUME_ATTEMPTS = 5


@dataclass
class CouponValidation:
    valid: bool
    discount: float = 0
    reason: Optional[str] = None
    coupon: Optional[dict] = None


def normalize_code(code: str) -> str:
    return code.strip().upper()


def calculate_discount(coupon: dict, subtotal) -> Decimal:
    subtotal = to_money(subtotal)
    if subtotal < to_money(coupon.get("min_order_amount") or 0):
        return Decimal("0.00")

    if coupon["type"] == "percentage":
        discount = subtotal * to_money(coupon["value"]) / 100
        if coupon.get("max_discount") is not None:
            discount = min(discount, to_money(coupon["max_discount"]))
    else:
        discount = to_money(coupon["value"])

    # A coupon never takes the order below zero
    return to_money(min(discount, subtotal))


def user_usage(coupon: dict, user_id: Optional[str]) -> int:
    if not user_id:
        return 0
    return (coupon.get("used_by") or {}).get(user_id, 0)


def usage_exhausted_reason(coupon: dict, user_id: Optional[str]) -> Optional[str]:
    usage_limit = coupon.get("usage_limit")
    if usage_limit is not None and coupon.get("used_count", 0) >= usage_limit:
        return "Coupon usage limit reached"
    user_limit = coupon.get("user_usage_limit")
    if user_id and user_limit is not None and user_usage(coupon, user_id) >= user_limit:
        return "You have already used this coupon the maximum number of times"
    return None


class CouponLedger:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def find_by_code(self, code: str) -> Optional[dict]:
        return await self.db.coupons.find_one({"code": normalize_code(code)})

    async def validate(self, code: str, subtotal, user_id: Optional[str] = None,
                       now: Optional[datetime] = None) -> CouponValidation:
        now = now or datetime.utcnow()
        coupon = await self.find_by_code(code)

        if not coupon:
            return CouponValidation(False, reason="Invalid coupon code")
        if not coupon.get("is_active", True):
            return CouponValidation(False, reason="Coupon is not active", coupon=coupon)
        if now < utc_naive(coupon["valid_from"]):
            return CouponValidation(False, reason="Coupon is not yet valid", coupon=coupon)
        if now > utc_naive(coupon["valid_until"]):
            return CouponValidation(False, reason="Coupon has expired", coupon=coupon)

        # Global limit first, then the caller's own limit
        reason = usage_exhausted_reason(coupon, user_id)
        if reason:
            return CouponValidation(False, reason=reason, coupon=coupon)

        min_order = coupon.get("min_order_amount") or 0
        if to_money(subtotal) < to_money(min_order):
            return CouponValidation(
                False, reason=f"Minimum order amount is {float(min_order):.2f}", coupon=coupon
            )

        discount = calculate_discount(coupon, subtotal)
        return CouponValidation(True, discount=float(discount), coupon=coupon)

    async def consume(self, code: str, user_id: Optional[str] = None) -> dict:
        """
        Record one redemption against the global counter and, when given, the
        user's counter.

        The update only lands if the counters still hold the values read just
        before it, so two checkouts racing for the last use cannot both win.
        Raises InvalidStateException when the limits are already used up.
        """
        code = normalize_code(code)
        for _ in range(CONSUME_ATTEMPTS):
            coupon = await self.db.coupons.find_one({"code": code})
            if not coupon:
                raise NotFoundException("Coupon not found")

            reason = usage_exhausted_reason(coupon, user_id)
            if reason:
                raise InvalidStateException(reason)

            query = {"_id": coupon["_id"], "used_count": coupon.get("used_count", 0)}
            increment = {"used_count": 1}
            if user_id:
                used_key = f"used_by.{user_id}"
                seen = user_usage(coupon, user_id)
                query[used_key] = seen if seen else {"$exists": False}
                increment[used_key] = 1

            updated = await self.db.coupons.find_one_and_update(
                query,
                {"$inc": increment, "$set": {"updated_at": datetime.utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
            if updated is not None:
                logger.info("Coupon redeemed", extra={"coupon_code": code, "user_id": user_id})
                return updated

        raise ConflictException("Coupon is being redeemed concurrently, please retry")

    async def release(self, code: str, user_id: Optional[str] = None):
        """Give back a redemption recorded for an order that was then abandoned."""
        increment = {"used_count": -1}
        query = {"code": normalize_code(code), "used_count": {"$gt": 0}}
        if user_id:
            increment[f"used_by.{user_id}"] = -1
            query[f"used_by.{user_id}"] = {"$gt": 0}
        await self.db.coupons.update_one(query, {"$inc": increment})
        if user_id:
            # consume() treats a missing per-user key as "never used"
            await self.db.coupons.update_one(
                {"code": normalize_code(code), f"used_by.{user_id}": 0},
                {"$unset": {f"used_by.{user_id}": ""}},
            )
        logger.warning("Coupon redemption released", extra={"coupon_code": code, "user_id": user_id})

    # --- Administration ---
    async def create(self, data: dict) -> dict:
        data = dict(data)
        data["code"] = normalize_code(data["code"])
        for field in ("valid_from", "valid_until"):
            if data.get(field):
                data[field] = utc_naive(data[field])
        if data.get("valid_from") is None:
            data.pop("valid_from", None)
        # Usage always starts from zero
        for field in ("used_count", "used_by"):
            data.pop(field, None)

        if await self.find_by_code(data["code"]):
            raise ConflictException("Coupon code already exists")

        try:
            coupon_db = CouponDB(**data)
        except ValidationError as e:
            raise InvalidStateException(f"Invalid coupon: {e.errors()[0]['msg']}")
        try:
            res = await self.db.coupons.insert_one(coupon_db.dict(by_alias=True, exclude={"id"}))
        except DuplicateKeyError:
            raise ConflictException("Coupon code already exists")
        return await self.db.coupons.find_one({"_id": res.inserted_id})

    async def get(self, coupon_id: str) -> dict:
        coupon = await self.db.coupons.find_one({"_id": str_to_oid(coupon_id, "Coupon")})
        if not coupon:
            raise NotFoundException("Coupon not found")
        return coupon

    async def list_coupons(self, is_active: Optional[bool] = None, page: int = 1, limit: int = 20):
        query = {}
        if is_active is not None:
            query["is_active"] = is_active
        skip = (page - 1) * limit
        total = await self.db.coupons.count_documents(query)
        cursor = self.db.coupons.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)
        return await cursor.to_list(length=limit), total

    async def update(self, coupon_id: str, changes: dict) -> dict:
        coupon = await self.get(coupon_id)
        update_data = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS}
        for field in ("valid_from", "valid_until"):
            if update_data.get(field):
                update_data[field] = utc_naive(update_data[field])

        # Re-validate the merged document so a partial update cannot break it
        merged = {**coupon, **update_data}
        merged.pop("_id")
        try:
            CouponDB(**merged)
        except ValidationError as e:
            raise InvalidStateException(f"Invalid coupon update: {e.errors()[0]['msg']}")

        if update_data:
            update_data["updated_at"] = datetime.utcnow()
            await self.db.coupons.update_one({"_id": coupon["_id"]}, {"$set": update_data})
        return await self.get(coupon_id)

    async def toggle(self, coupon_id: str) -> dict:
        coupon = await self.get(coupon_id)
        return await self.db.coupons.find_one_and_update(
            {"_id": coupon["_id"]},
            {"$set": {"is_active": not coupon.get("is_active", True), "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    async def delete(self, coupon_id: str):
        coupon = await self.get(coupon_id)
        await self.db.coupons.delete_one({"_id": coupon["_id"]})
