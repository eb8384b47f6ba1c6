import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set

import httpx

from shared.utils import settings

logger = logging.getLogger(__name__)

Listener = Callable[[str, dict], Awaitable[None]]

ORDER_CREATED = "order.created"
ORDER_STATUS_CHANGED = "order.status_changed"


class EventPublisher:
    """In-process fan-out to whoever subscribed (live order tracking, group sessions)."""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    def subscribe(self, event: str, listener: Listener):
        self._listeners.setdefault(event, []).append(listener)

    def unsubscribe(self, event: str, listener: Listener):
        if listener in self._listeners.get(event, []):
            self._listeners[event].remove(listener)

    async def publish(self, event: str, payload: dict):
        for listener in list(self._listeners.get(event, [])):
            try:
                await listener(event, payload)
            except Exception:
                logger.exception(f"Listener failed for {event}", extra={"event": event})


def _iso(value):
    return value.isoformat() if isinstance(value, datetime) else value


def order_event_payload(order: dict) -> dict:
    return {
        "order_id": str(order.get("_id", order.get("id"))),
        "order_number": order["order_number"],
        "status": order["status"],
        "user_id": order.get("user_id"),
        "session_id": order.get("session_id"),
        "total": order["total"],
        "type": order["type"],
        "estimated_delivery": _iso(order.get("estimated_delivery")),
        "timestamp": datetime.utcnow().isoformat(),
    }


class Notifier:
    """
    Fire-and-forget order notifications.

    Publishes to in-process listeners and, when a webhook URL is configured,
    POSTs the same payload there from a background task so a slow endpoint
    never holds up the request. Nothing raised in here reaches the caller.
    """

    def __init__(
        self,
        publisher: Optional[EventPublisher] = None,
        webhook_url: Optional[str] = settings.NOTIFY_WEBHOOK_URL,
        timeout: float = settings.NOTIFY_TIMEOUT_SECONDS,
    ):
        self.publisher = publisher or EventPublisher()
        self.webhook_url = webhook_url
        self.timeout = timeout
        # Strong references; the event loop only keeps weak ones to tasks
        self._deliveries: Set[asyncio.Task] = set()

    @property
    def pending_deliveries(self) -> int:
        return len(self._deliveries)

    async def order_created(self, order: dict):
        await self._send(ORDER_CREATED, order)

    async def status_changed(self, order: dict):
        await self._send(ORDER_STATUS_CHANGED, order)

    async def drain(self):
        """Wait for webhook deliveries still in flight."""
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    async def _send(self, event: str, order: dict):
        try:
            payload = order_event_payload(order)
            await self.publisher.publish(event, payload)
            if self.webhook_url:
                task = asyncio.create_task(self._deliver(event, payload))
                self._deliveries.add(task)
                task.add_done_callback(self._deliveries.discard)
        except Exception:
            logger.exception(
                "Order notification failed",
                extra={"event": event, "order_number": order.get("order_number")},
            )

    async def _deliver(self, event: str, payload: dict):
        try:
            await self._post(event, payload)
        except Exception:
            logger.exception(
                "Webhook delivery crashed",
                extra={"event": event, "order_number": payload.get("order_number")},
            )

    async def _post(self, event: str, payload: dict):
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(
                    self.webhook_url,
                    json={"event": event, "data": payload},
                    headers={"X-Event": event},
                )
                response.raise_for_status()
            except (httpx.RequestError, httpx.HTTPStatusError) as e:
                logger.warning(
                    f"Webhook delivery failed: {e}",
                    extra={"event": event, "order_number": payload["order_number"]},
                )
