import logging
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from shared.utils import (
    settings, NotFoundException, ForbiddenException, InvalidStateException,
    InvalidTransitionException
)
from pizzeria.catalog import Catalog
from pizzeria.documents import str_to_oid
from pizzeria.identity import IdentityContext
from pizzeria.notifier import Notifier

logger = logging.getLogger(__name__)

PENDING = "pending"
CONFIRMED = "confirmed"
PREPARING = "preparing"
READY = "ready"
DELIVERED = "delivered"
CANCELLED = "cancelled"

ORDER_STATUSES = (PENDING, CONFIRMED, PREPARING, READY, DELIVERED, CANCELLED)

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDING: frozenset({CONFIRMED, CANCELLED}),
    CONFIRMED: frozenset({PREPARING, CANCELLED}),
    PREPARING: frozenset({READY, CANCELLED}),
    READY: frozenset({DELIVERED}),
    DELIVERED: frozenset(),
    CANCELLED: frozenset(),
}

# Customers lose the right to cancel once the kitchen has started
OWNER_CANCELLABLE = frozenset({PENDING, CONFIRMED})


def allowed_transitions(current: str, allow_cancel_from_ready: bool = False) -> FrozenSet[str]:
    allowed = TRANSITIONS.get(current, frozenset())
    if current == READY and allow_cancel_from_ready:
        allowed = allowed | {CANCELLED}
    return allowed


def can_transition(current: str, target: str, allow_cancel_from_ready: bool = False) -> bool:
    return target in allowed_transitions(current, allow_cancel_from_ready)


def owner_can_cancel(current: str) -> bool:
    return current in OWNER_CANCELLABLE


class OrderStatusMachine:
    """Moves orders through their lifecycle and applies each state's side effects."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        catalog: Optional[Catalog] = None,
        notifier: Optional[Notifier] = None,
        allow_cancel_from_ready: bool = settings.ALLOW_ADMIN_CANCEL_FROM_READY,
    ):
        self.db = db
        self.catalog = catalog or Catalog(db)
        self.notifier = notifier or Notifier()
        self.allow_cancel_from_ready = allow_cancel_from_ready

    async def get_order(self, order_id: str) -> dict:
        order = await self.db.orders.find_one({"_id": str_to_oid(order_id, "Order")})
        if not order:
            raise NotFoundException("Order not found")
        return order

    async def transition(self, order_id: str, new_status: str) -> dict:
        """Admin-driven move along the transition table."""
        if new_status not in ORDER_STATUSES:
            raise InvalidStateException(f"Unknown order status: {new_status}")
        order = await self.get_order(order_id)
        if not can_transition(order["status"], new_status, self.allow_cancel_from_ready):
            raise InvalidTransitionException(order["status"], new_status)
        return await self._apply(order, new_status)

    async def cancel_by_owner(self, order_id: str, identity: IdentityContext) -> dict:
        order = await self.get_order(order_id)
        if identity.is_admin:
            return await self.transition(order_id, CANCELLED)
        if not identity.owns(order):
            raise ForbiddenException("Not authorized to cancel this order")
        if not owner_can_cancel(order["status"]):
            raise InvalidTransitionException(order["status"], CANCELLED)
        return await self._apply(order, CANCELLED)

    async def _apply(self, order: dict, new_status: str) -> dict:
        now = datetime.utcnow()
        changes = {"status": new_status, "updated_at": now}
        if new_status == DELIVERED:
            changes["completed_at"] = now
            changes["payment_status"] = "paid"
        elif new_status == CANCELLED:
            changes["cancelled_at"] = now

        # Only the request that actually moves the order off its current status
        # gets to run the side effects, so stock is restored once per order
        updated = await self.db.orders.find_one_and_update(
            {"_id": order["_id"], "status": order["status"]},
            {"$set": changes, "$push": {"status_history": {"status": new_status, "at": now}}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            current = await self.get_order(str(order["_id"]))
            raise InvalidTransitionException(current["status"], new_status)

        if new_status == CANCELLED:
            await self._restore_inventory(updated)

        logger.info(
            f"Order moved from {order['status']} to {new_status}",
            extra={"order_number": updated["order_number"], "event": "order.status_changed"},
        )
        await self.notifier.status_changed(updated)
        return updated

    async def _restore_inventory(self, order: dict):
        for item in order["items"]:
            try:
                await self.catalog.restore(item["product_id"], item["quantity"])
            except NotFoundException:
                # Product deleted since the order was placed; nothing to put back
                logger.warning(
                    f"Cannot restore stock for removed product {item['name']}",
                    extra={"order_number": order["order_number"], "product_id": item["product_id"]},
                )
