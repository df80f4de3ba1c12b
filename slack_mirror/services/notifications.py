"""Fan-out of live message notifications to independent subscribers.

Publishing never blocks ingestion: each subscriber owns a bounded queue and
a full queue drops the newest notification. The store stays the durable
record, so a slow or disconnected subscriber only misses live events.
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Iterator
from typing import Final

from slack_mirror.config.logging_config import get_logger
from slack_mirror.domain.models import MessageNotification
from slack_mirror.observability.metrics import NOTIFICATIONS_DROPPED_TOTAL

logger = get_logger(__name__)

DEFAULT_SUBSCRIPTION_SIZE: Final[int] = 1000


class Subscription:
    """One subscriber's bounded view of the notification stream."""

    def __init__(self, hub: NotificationHub, maxsize: int) -> None:
        self._hub = hub
        self._queue: queue.Queue[MessageNotification] = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, notification: MessageNotification) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(notification)
        except queue.Full:
            self.dropped += 1
            return False
        return True

    def get(self, timeout: float | None = None) -> MessageNotification | None:
        """Return the next notification, or None when the timeout expires."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[MessageNotification]:
        items: list[MessageNotification] = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                return items

    def iter(self, poll_timeout: float = 1.0) -> Iterator[MessageNotification]:
        """Yield notifications until the subscription is closed."""
        while not self._closed:
            item = self.get(timeout=poll_timeout)
            if item is not None:
                yield item

    def close(self) -> None:
        self._closed = True
        self._hub.unsubscribe(self)


class NotificationHub:
    """Multi-subscriber notification point for stored message events."""

    def __init__(self, default_maxsize: int = DEFAULT_SUBSCRIPTION_SIZE) -> None:
        if default_maxsize <= 0:
            raise ValueError("default_maxsize must be positive")
        self._default_maxsize = default_maxsize
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, maxsize: int | None = None) -> Subscription:
        subscription = Subscription(self, maxsize or self._default_maxsize)
        with self._lock:
            self._subscribers.append(subscription)
        logger.debug("notification_subscriber_added", subscribers=self.subscriber_count)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, notification: MessageNotification) -> int:
        """Offer a notification to every subscriber without blocking.

        Returns:
            Number of subscribers that accepted it
        """
        with self._lock:
            subscribers = list(self._subscribers)

        delivered = 0
        for subscription in subscribers:
            if subscription.offer(notification):
                delivered += 1
            else:
                NOTIFICATIONS_DROPPED_TOTAL.inc()
        return delivered


__all__ = ["NotificationHub", "Subscription"]
