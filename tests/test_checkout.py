"""Tests for turning carts into orders."""

import re
from datetime import datetime

import pytest

from shared.utils import (
    ConflictException, InsufficientStockException, InvalidStateException, NotFoundException
)
from pizzeria.checkout import CheckoutService, format_order_number
from pizzeria.notifier import EventPublisher, Notifier
from pizzeria.recommendations import PreferenceTracker


async def fill_cart(carts, identity, product, quantity=1, **kwargs):
    return await carts.add_item(identity, str(product["_id"]), quantity=quantity, **kwargs)


class TestPlaceOrder:
    async def test_delivery_totals(self, checkout, carts, guest, make_product, customer_info, address):
        product = await make_product(price=299, inventory=10)
        await fill_cart(carts, guest, product, quantity=2)

        order = await checkout.place_order(guest, "delivery", customer_info, delivery_address=address)

        assert order["subtotal"] == 598.0
        assert order["tax"] == 59.8
        assert order["delivery_fee"] == 50.0
        assert order["discount"] == 0.0
        assert order["total"] == 707.8
        assert order["status"] == "pending"
        assert order["payment_status"] == "pending"
        assert order["session_id"] == guest.session_id

    async def test_carryout_has_no_delivery_fee(self, checkout, carts, guest, make_product, customer_info):
        product = await make_product(price=100)
        await fill_cart(carts, guest, product)

        order = await checkout.place_order(guest, "carryout", customer_info)

        assert order["delivery_fee"] == 0.0
        assert order["total"] == 110.0
        assert order["delivery_address"] is None

    async def test_side_effects(self, db, checkout, carts, guest, make_product, customer_info, events):
        product = await make_product(inventory=10)
        await fill_cart(carts, guest, product, quantity=3)

        order = await checkout.place_order(guest, "carryout", customer_info)

        stock = await db.products.find_one({"_id": product["_id"]})
        assert stock["inventory"] == 7
        assert stock["order_count"] == 3
        cart = await carts.get(guest)
        assert cart["items"] == []
        assert await db.orders.count_documents({}) == 1
        assert events[0][0] == "order.created"
        assert events[0][1]["order_number"] == order["order_number"]

    async def test_order_number_format(self, checkout, carts, guest, make_product, customer_info):
        product = await make_product()
        await fill_cart(carts, guest, product)
        now = datetime(2024, 3, 9, 18, 30)

        order = await checkout.place_order(guest, "carryout", customer_info, now=now)

        assert order["order_number"] == "ORD-20240309-0001"
        assert re.match(r"^ORD-\d{8}-\d{4}$", order["order_number"])

    async def test_sequence_increments_per_day(self, checkout, carts, guest, make_product, customer_info):
        product = await make_product()
        now = datetime(2024, 3, 9, 12, 0)

        numbers = []
        for _ in range(3):
            await fill_cart(carts, guest, product)
            order = await checkout.place_order(guest, "carryout", customer_info, now=now)
            numbers.append(order["order_number"])

        assert numbers == ["ORD-20240309-0001", "ORD-20240309-0002", "ORD-20240309-0003"]

    async def test_estimated_delivery(self, checkout, carts, guest, make_product, customer_info, address):
        product = await make_product()
        now = datetime(2024, 3, 9, 12, 0)
        await fill_cart(carts, guest, product)

        order = await checkout.place_order(guest, "delivery", customer_info, delivery_address=address, now=now)

        assert order["estimated_delivery"] == datetime(2024, 3, 9, 12, 45)

    async def test_empty_cart(self, checkout, guest, customer_info):
        with pytest.raises(InvalidStateException, match="Cart is empty"):
            await checkout.place_order(guest, "carryout", customer_info)

    async def test_delivery_needs_address(self, checkout, carts, guest, make_product, customer_info):
        product = await make_product()
        await fill_cart(carts, guest, product)

        with pytest.raises(InvalidStateException):
            await checkout.place_order(guest, "delivery", customer_info)


class TestStockRecheck:
    async def test_stock_dropped_since_add(self, db, checkout, carts, guest, make_product, customer_info):
        product = await make_product(inventory=5)
        await fill_cart(carts, guest, product, quantity=4)
        await db.products.update_one({"_id": product["_id"]}, {"$set": {"inventory": 2}})

        with pytest.raises(InsufficientStockException):
            await checkout.place_order(guest, "carryout", customer_info)

        assert await db.orders.count_documents({}) == 0
        stock = await db.products.find_one({"_id": product["_id"]})
        assert stock["inventory"] == 2
        cart = await carts.get(guest)
        assert cart["items"][0]["quantity"] == 4

    async def test_sizes_share_stock(self, db, checkout, carts, guest, make_product, customer_info):
        product = await make_product(inventory=5)
        await fill_cart(carts, guest, product, quantity=3, size="medium")
        await fill_cart(carts, guest, product, quantity=2, size="large")
        await db.products.update_one({"_id": product["_id"]}, {"$set": {"inventory": 4}})

        with pytest.raises(InsufficientStockException):
            await checkout.place_order(guest, "carryout", customer_info)

    async def test_product_switched_off(self, db, checkout, carts, guest, make_product, customer_info):
        product = await make_product()
        await fill_cart(carts, guest, product)
        await db.products.update_one({"_id": product["_id"]}, {"$set": {"is_available": False}})

        with pytest.raises(InvalidStateException):
            await checkout.place_order(guest, "carryout", customer_info)

    async def test_product_deleted(self, db, checkout, carts, guest, make_product, customer_info):
        product = await make_product(name="Hawaiian")
        await fill_cart(carts, guest, product)
        await db.products.delete_one({"_id": product["_id"]})

        with pytest.raises(NotFoundException, match="Hawaiian is no longer available"):
            await checkout.place_order(guest, "carryout", customer_info)


class TestSnapshot:
    async def test_order_keeps_prices_after_product_edit(
        self, db, checkout, carts, guest, make_product, make_customization, customer_info
    ):
        product = await make_product(name="Pepperoni", price=299)
        cheese = await make_customization(price=40)
        await fill_cart(carts, guest, product, customization_ids=[str(cheese["_id"])])

        order = await checkout.place_order(guest, "carryout", customer_info)
        await db.products.update_one(
            {"_id": product["_id"]}, {"$set": {"name": "Pepperoni Deluxe", "price": 999}}
        )

        stored = await db.orders.find_one({"_id": order["_id"]})
        item = stored["items"][0]
        assert item["name"] == "Pepperoni"
        assert item["price"] == 299
        assert item["customization_total"] == 40
        assert item["customizations"][0]["name"] == "Extra Cheese"
        assert stored["subtotal"] == 339.0


class TestCoupons:
    async def test_coupon_applied_and_consumed_once(
        self, db, checkout, carts, customer, make_product, make_coupon, customer_info
    ):
        product = await make_product(price=500)
        await make_coupon(code="SAVE20", value=20, max_discount=200, usage_limit=10)
        await fill_cart(carts, customer, product, quantity=2)

        order = await checkout.place_order(customer, "carryout", customer_info, coupon_code="save20")

        assert order["discount"] == 200.0
        assert order["coupon_code"] == "SAVE20"
        # 1000 + 100 tax - 200
        assert order["total"] == 900.0
        coupon = await db.coupons.find_one({"code": "SAVE20"})
        assert coupon["used_count"] == 1
        assert coupon["used_by"] == {"user-1": 1}

    async def test_invalid_coupon_blocks_checkout(
        self, db, checkout, carts, customer, make_product, customer_info
    ):
        product = await make_product()
        await fill_cart(carts, customer, product)

        with pytest.raises(NotFoundException, match="Invalid coupon code"):
            await checkout.place_order(customer, "carryout", customer_info, coupon_code="NOPE")

        assert await db.orders.count_documents({}) == 0

    async def test_expired_coupon_is_invalid_state(
        self, db, checkout, carts, customer, make_product, make_coupon, customer_info
    ):
        product = await make_product()
        await make_coupon(
            code="OLD", valid_from=datetime(2020, 1, 1), valid_until=datetime(2020, 2, 1)
        )
        await fill_cart(carts, customer, product)

        with pytest.raises(InvalidStateException, match="Coupon has expired"):
            await checkout.place_order(customer, "carryout", customer_info, coupon_code="OLD")

        assert await db.orders.count_documents({}) == 0

    async def test_total_never_negative(
        self, checkout, carts, customer, make_product, make_coupon, customer_info
    ):
        product = await make_product(price=30)
        await make_coupon(code="HUGE", type="fixed", value=1000)
        await fill_cart(carts, customer, product)

        order = await checkout.place_order(customer, "carryout", customer_info, coupon_code="HUGE")

        assert order["discount"] == 30.0
        assert order["total"] >= 0

    async def test_failed_stock_releases_coupon(
        self, db, carts, coupons, catalog, customer, make_product, make_coupon, customer_info, notifier
    ):
        product = await make_product(inventory=5)
        await make_coupon(code="SAVE20", usage_limit=1)
        await fill_cart(carts, customer, product, quantity=3)

        class RacingCatalog(type(catalog)):
            async def deduct(self, product_id, quantity):
                # Someone else bought the stock between the re-check and the deduction
                await self.db.products.update_one({"_id": product["_id"]}, {"$set": {"inventory": 1}})
                return await super().deduct(product_id, quantity)

        racing = RacingCatalog(db)
        service = CheckoutService(
            db, catalog=racing, carts=carts, coupons=coupons, notifier=notifier,
            preferences=PreferenceTracker(db),
        )

        with pytest.raises(InsufficientStockException):
            await service.place_order(customer, "carryout", customer_info, coupon_code="SAVE20")

        assert await db.orders.count_documents({}) == 0
        coupon = await db.coupons.find_one({"code": "SAVE20"})
        assert coupon["used_count"] == 0
        assert coupon["used_by"] == {}
        cart = await carts.get(customer)
        assert len(cart["items"]) == 1


class TestOrderNumberCollisions:
    async def test_collision_is_retried(self, db, checkout, carts, guest, make_product, customer_info):
        await db.orders.create_index("order_number", unique=True)
        # Taken number that the sequence scan cannot see
        await db.orders.insert_one({"order_number": format_order_number("20240309", 1)})
        product = await make_product()
        await fill_cart(carts, guest, product)

        order = await checkout.place_order(guest, "carryout", customer_info, now=datetime(2024, 3, 9, 10, 0))

        assert order["order_number"] == "ORD-20240309-0002"

    async def test_retries_exhausted(self, db, carts, catalog, coupons, guest, make_product, customer_info, notifier):
        await db.orders.create_index("order_number", unique=True)
        await db.orders.insert_one({"order_number": format_order_number("20240309", 1)})
        product = await make_product(inventory=10)
        await fill_cart(carts, guest, product, quantity=2)
        service = CheckoutService(
            db, catalog=catalog, carts=carts, coupons=coupons, notifier=notifier,
            preferences=PreferenceTracker(db), order_number_retries=1,
        )

        with pytest.raises(ConflictException):
            await service.place_order(guest, "carryout", customer_info, now=datetime(2024, 3, 9, 10, 0))

        stock = await db.products.find_one({"_id": product["_id"]})
        assert stock["inventory"] == 10
        cart = await carts.get(guest)
        assert cart["items"][0]["quantity"] == 2


class TestNotificationFailures:
    async def test_broken_publisher_does_not_fail_checkout(
        self, db, carts, catalog, coupons, guest, make_product, customer_info
    ):
        class BrokenPublisher(EventPublisher):
            async def publish(self, event, payload):
                raise RuntimeError("bus down")

        service = CheckoutService(
            db, catalog=catalog, carts=carts, coupons=coupons,
            notifier=Notifier(BrokenPublisher(), webhook_url=None),
            preferences=PreferenceTracker(db),
        )
        product = await make_product()
        await fill_cart(carts, guest, product)

        order = await service.place_order(guest, "carryout", customer_info)

        assert order["status"] == "pending"
        assert await db.orders.count_documents({}) == 1
