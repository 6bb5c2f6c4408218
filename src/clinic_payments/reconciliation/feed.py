"""In-process change feed for payment completion events."""

import asyncio
import logging
from typing import Awaitable, Callable, Set

from .models import PaymentCompletedEvent

logger = logging.getLogger(__name__)

PaymentCompletedHandler = Callable[[PaymentCompletedEvent], Awaitable[None]]


class Subscription:
    """Handle returned by PaymentChangeFeed.subscribe()."""

    def __init__(self, feed: "PaymentChangeFeed", callback: PaymentCompletedHandler):
        self._feed = feed
        self.callback = callback

    @property
    def active(self) -> bool:
        return self.callback in self._feed.subscribers

    def unsubscribe(self) -> None:
        self._feed.unsubscribe(self.callback)


class PaymentChangeFeed:
    """
    Publish/subscribe channel for "payment became completed" events.

    Publishing never waits for subscribers: each callback runs in its own task
    so a slow or failing handler cannot hold up the publisher.
    """

    def __init__(self):
        self.subscribers: Set[PaymentCompletedHandler] = set()
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, callback: PaymentCompletedHandler) -> Subscription:
        self.subscribers.add(callback)
        logger.info(f"Payment feed subscriber added. Total subscribers: {len(self.subscribers)}")
        return Subscription(self, callback)

    def unsubscribe(self, callback: PaymentCompletedHandler) -> None:
        self.subscribers.discard(callback)
        logger.info(f"Payment feed subscriber removed. Total subscribers: {len(self.subscribers)}")

    def publish(self, event: PaymentCompletedEvent) -> int:
        """Dispatch an event to every subscriber; returns the number notified."""
        if not self.subscribers:
            return 0

        for callback in self.subscribers.copy():
            task = asyncio.create_task(self._safe_callback(callback, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        logger.debug(
            f"Published completion of payment {event.payment_id} "
            f"(appointment {event.appointment_id}) to {len(self.subscribers)} subscribers"
        )
        return len(self.subscribers)

    async def _safe_callback(self, callback: PaymentCompletedHandler, event: PaymentCompletedEvent) -> None:
        try:
            await callback(event)
        except Exception as e:
            logger.error(f"Error in payment feed subscriber for appointment {event.appointment_id}: {e}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for all in-flight subscriber callbacks to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
