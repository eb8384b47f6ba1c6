"""
Checkout: turns the caller's cart into an order.

The steps run in a fixed order. Everything up to persisting the order only
reads shared state, so a failure there leaves nothing behind. The coupon is
redeemed only once the order exists, then stock is taken and the cart emptied.
If a concurrent checkout wins the last coupon use or the last units of stock
in between, the half-made order is rolled back before the error is raised.
"""
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from shared.utils import (
    settings, to_money, NotFoundException, InvalidStateException, ConflictException,
    InsufficientStockException
)
from pizzeria.cart import CartService
from pizzeria.catalog import Catalog
from pizzeria.coupons import CouponLedger
from pizzeria.identity import IdentityContext
from pizzeria.models import OrderDB, OrderItemDB
from pizzeria.notifier import Notifier
from pizzeria.order_status import PENDING
from pizzeria.pricing import customization_total, subtotal_of, tax_on
from pizzeria.recommendations import PreferenceTracker

logger = logging.getLogger(__name__)

ORDER_TYPES = ("delivery", "carryout")


def format_order_number(order_date: str, sequence: int) -> str:
    return f"ORD-{order_date}-{sequence:04d}"


def snapshot_items(cart_items: List[dict]) -> List[dict]:
    return [
        OrderItemDB(
            product_id=item["product_id"],
            name=item["name"],
            quantity=item["quantity"],
            size=item.get("size", "medium"),
            price=item["price"],
            customizations=item.get("customizations") or [],
            customization_total=float(customization_total(item)),
            notes=item.get("notes"),
        ).dict()
        for item in cart_items
    ]


def quantities_by_product(items: List[dict]) -> "OrderedDict[str, int]":
    # Two sizes of the same pizza draw on the same stock
    totals = OrderedDict()
    for item in items:
        totals[item["product_id"]] = totals.get(item["product_id"], 0) + item["quantity"]
    return totals


class CheckoutService:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        catalog: Optional[Catalog] = None,
        carts: Optional[CartService] = None,
        coupons: Optional[CouponLedger] = None,
        notifier: Optional[Notifier] = None,
        preferences: Optional[PreferenceTracker] = None,
        tax_rate: float = settings.TAX_RATE,
        delivery_fee: float = settings.DELIVERY_FEE,
        delivery_lead_minutes: int = settings.DELIVERY_LEAD_MINUTES,
        carryout_lead_minutes: int = settings.CARRYOUT_LEAD_MINUTES,
        order_number_retries: int = settings.ORDER_NUMBER_RETRIES,
    ):
        self.db = db
        self.catalog = catalog or Catalog(db)
        self.carts = carts or CartService(db, self.catalog, tax_rate=tax_rate)
        self.coupons = coupons or CouponLedger(db)
        self.notifier = notifier or Notifier()
        self.preferences = preferences or PreferenceTracker(db)
        self.tax_rate = tax_rate
        self.delivery_fee = delivery_fee
        self.lead_minutes = {"delivery": delivery_lead_minutes, "carryout": carryout_lead_minutes}
        self.order_number_retries = order_number_retries

    async def place_order(
        self,
        identity: IdentityContext,
        order_type: str,
        customer_info: dict,
        payment_method: str = "cash",
        delivery_address: Optional[dict] = None,
        coupon_code: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        now = now or datetime.utcnow()
        if order_type not in ORDER_TYPES:
            raise InvalidStateException(f"Order type must be one of: {', '.join(ORDER_TYPES)}")
        if order_type == "delivery" and not delivery_address:
            raise InvalidStateException("Delivery address required for delivery orders")

        # 1. Cart
        cart = await self.carts.get(identity)
        if not cart.get("items"):
            raise InvalidStateException("Cart is empty")

        # 2. Re-check live stock; the cart may be hours old
        wanted = quantities_by_product(cart["items"])
        for item in cart["items"]:
            try:
                product = await self.catalog.get_product(item["product_id"])
            except NotFoundException:
                raise NotFoundException(f"{item['name']} is no longer available")
            self.catalog.ensure_purchasable(product, wanted[item["product_id"]], item.get("size"))

        # 3. Freeze the lines
        order_items = snapshot_items(cart["items"])

        # 4. Price from the snapshot, not from the cart's cached totals
        subtotal = subtotal_of(order_items)
        tax = tax_on(subtotal, self.tax_rate)
        delivery_fee = to_money(self.delivery_fee) if order_type == "delivery" else Decimal("0.00")

        # 5. Coupon
        discount = Decimal("0.00")
        applied_code = None
        if coupon_code:
            result = await self.coupons.validate(coupon_code, subtotal, identity.user_id, now=now)
            if result.coupon is None:
                raise NotFoundException(result.reason)
            if not result.valid:
                raise InvalidStateException(result.reason)
            discount = to_money(result.discount)
            applied_code = result.coupon["code"]

        # 6. Total
        total = max(Decimal("0.00"), to_money(subtotal + tax + delivery_fee - discount))

        def build(order_number: str, order_date: str, sequence: int) -> dict:
            order_db = OrderDB(
                order_number=order_number,
                order_date=order_date,
                sequence=sequence,
                user_id=identity.user_id,
                session_id=identity.session_id,
                items=order_items,
                subtotal=float(subtotal),
                tax=float(tax),
                delivery_fee=float(delivery_fee),
                discount=float(discount),
                coupon_code=applied_code,
                total=float(total),
                type=order_type,
                status=PENDING,
                status_history=[{"status": PENDING, "at": now}],
                payment_method=payment_method,
                customer_info=customer_info,
                delivery_address=delivery_address if order_type == "delivery" else None,
                notes=notes,
                estimated_delivery=now + timedelta(minutes=self.lead_minutes[order_type]),
                created_at=now,
            )
            return order_db.dict(by_alias=True, exclude={"id"})

        # 7-8. Number and persist
        order = await self._insert_order(build, now)

        # 9. Redeem the coupon now that the order exists
        if applied_code:
            try:
                await self.coupons.consume(applied_code, identity.user_id)
            except (InvalidStateException, ConflictException, NotFoundException):
                await self.db.orders.delete_one({"_id": order["_id"]})
                logger.warning(
                    "Coupon ran out before redemption, order withdrawn",
                    extra={"order_number": order["order_number"], "coupon_code": applied_code},
                )
                raise

        # 10. Take the stock
        deducted: List[Tuple[str, int]] = []
        try:
            for product_id, quantity in wanted.items():
                await self.catalog.deduct(product_id, quantity)
                deducted.append((product_id, quantity))
        except InsufficientStockException:
            await self._abandon(order, deducted, applied_code, identity)
            raise

        # 11. Empty the cart
        await self.carts.clear(identity)

        logger.info(
            f"Order placed for {float(total):.2f}",
            extra={
                "order_number": order["order_number"],
                "user_id": identity.user_id,
                "session_id": identity.session_id,
                "event": "order.created",
            },
        )

        # Fire-and-forget; neither can fail the checkout
        await self.notifier.order_created(order)
        await self.preferences.record_order(order)

        # 12.
        return order

    async def _next_sequence(self, order_date: str) -> int:
        latest = await self.db.orders.find_one(
            {"order_date": order_date}, sort=[("sequence", DESCENDING)]
        )
        return (latest["sequence"] if latest else 0) + 1

    async def _insert_order(self, build, now: datetime) -> dict:
        order_date = now.strftime("%Y%m%d")
        sequence = await self._next_sequence(order_date)
        for _ in range(self.order_number_retries):
            order = build(format_order_number(order_date, sequence), order_date, sequence)
            try:
                res = await self.db.orders.insert_one(order)
            except DuplicateKeyError:
                logger.warning(
                    "Order number taken, retrying",
                    extra={"order_number": order["order_number"]},
                )
                sequence = max(sequence + 1, await self._next_sequence(order_date))
                continue
            order["_id"] = res.inserted_id
            return order
        raise ConflictException("Could not allocate a unique order number, please retry")

    async def _abandon(self, order: dict, deducted: List[Tuple[str, int]],
                       coupon_code: Optional[str], identity: IdentityContext):
        for product_id, quantity in deducted:
            await self.catalog.restore(product_id, quantity)
        if coupon_code:
            await self.coupons.release(coupon_code, identity.user_id)
        await self.db.orders.delete_one({"_id": order["_id"]})
        logger.warning(
            "Stock ran out during checkout, order withdrawn",
            extra={"order_number": order["order_number"]},
        )
