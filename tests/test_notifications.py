from __future__ import annotations

import pytest

from slack_mirror.domain.models import MessageNotification, NotificationKind
from slack_mirror.services.notifications import NotificationHub


def _notification(ts: str) -> MessageNotification:
    return MessageNotification(kind=NotificationKind.NEW, channel_id="C1", ts=ts, text=ts)


def test_every_subscriber_receives_each_notification() -> None:
    hub = NotificationHub(10)
    first = hub.subscribe()
    second = hub.subscribe()

    delivered = hub.publish(_notification("1.0"))

    assert delivered == 2
    assert [item.ts for item in first.drain()] == ["1.0"]
    assert [item.ts for item in second.drain()] == ["1.0"]


def test_full_queue_drops_newest_without_blocking() -> None:
    hub = NotificationHub(2)
    slow = hub.subscribe()
    fast = hub.subscribe(maxsize=10)

    for index in range(5):
        hub.publish(_notification(f"{index}.0"))

    assert [item.ts for item in slow.drain()] == ["0.0", "1.0"]
    assert slow.dropped == 3
    assert len(fast.drain()) == 5


def test_closed_subscription_is_detached() -> None:
    hub = NotificationHub(10)
    subscription = hub.subscribe()

    subscription.close()

    assert hub.subscriber_count == 0
    assert hub.publish(_notification("1.0")) == 0
    assert subscription.get(timeout=0.01) is None


def test_publish_without_subscribers_is_noop() -> None:
    assert NotificationHub().publish(_notification("1.0")) == 0


def test_queue_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        NotificationHub(0)


def test_iteration_stops_once_subscription_closes() -> None:
    hub = NotificationHub(10)
    subscription = hub.subscribe()
    hub.publish(_notification("1.0"))
    hub.publish(_notification("2.0"))

    received = []
    for item in subscription.iter(poll_timeout=0.01):
        received.append(item.ts)
        if len(received) == 2:
            subscription.close()

    assert received == ["1.0", "2.0"]
