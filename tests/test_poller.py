from __future__ import annotations

import time

import pytest

from slack_mirror.adapters.sqlite_store import SQLiteStore
from slack_mirror.clients.slack_gateway import SlackGateway
from slack_mirror.domain.models import NotificationKind
from slack_mirror.services.notifications import NotificationHub
from slack_mirror.services.shutdown import ShutdownController
from slack_mirror.use_cases.poller import Poller
from tests.conftest import FakeClock, FakeSlackClient, raw_message

NOW = 1_700_000_500.0


def _poller(
    store: SQLiteStore,
    gateway: SlackGateway,
    hub: NotificationHub,
    **options: object,
) -> Poller:
    options.setdefault("wall_clock", lambda: NOW)
    return Poller(store, gateway, hub, **options)  # type: ignore[arg-type]


@pytest.fixture
def hub() -> NotificationHub:
    return NotificationHub(100)


def test_cold_start_sets_cursor_to_now_without_fetching(
    store: SQLiteStore,
    gateway: SlackGateway,
    fake_client: FakeSlackClient,
    hub: NotificationHub,
) -> None:
    fake_client.add_channel("C1", "general")
    fake_client.add_messages("C1", [raw_message("1600000000.000100")])
    subscription = hub.subscribe()

    result = _poller(store, gateway, hub).poll_once()

    assert fake_client.count("conversations.history") == 0
    assert result.channels_initialized == 1
    assert store.get_poll_cursor("C1") == f"{NOW:.6f}"
    assert store.count_messages() == 0
    assert subscription.drain() == []


def test_new_messages_are_stored_and_notified(
    store: SQLiteStore,
    gateway: SlackGateway,
    fake_client: FakeSlackClient,
    hub: NotificationHub,
) -> None:
    fake_client.add_channel("C1", "general")
    subscription = hub.subscribe()
    poller = _poller(store, gateway, hub)
    poller.poll_once()

    fake_client.add_messages(
        "C1",
        [
            raw_message("1699999999.000100", "too old"),
            raw_message("1700000600.000100", "first new"),
            raw_message("1700000700.000100", "second new"),
        ],
    )
    result = poller.poll_once()

    notifications = subscription.drain()
    assert sorted(notification.text for notification in notifications) == [
        "first new",
        "second new",
    ]
    assert all(notification.kind == NotificationKind.NEW for notification in notifications)
    assert all(notification.source == "poller" for notification in notifications)
    assert result.notifications == 2
    assert store.count_messages("C1") == 2
    assert store.get_poll_cursor("C1") == "1700000700.000100"

    poller.poll_once()
    assert subscription.drain() == []


def test_thread_replies_are_polled(
    store: SQLiteStore,
    gateway: SlackGateway,
    fake_client: FakeSlackClient,
    hub: NotificationHub,
) -> None:
    root_ts = "1700000600.000100"
    root = raw_message(root_ts, "question", thread_ts=root_ts, reply_count=1)
    reply = raw_message("1700000601.000100", "answer", thread_ts=root_ts)
    fake_client.add_channel("C1", "general")
    poller = _poller(store, gateway, hub)
    poller.poll_once()

    fake_client.add_messages("C1", [root])
    fake_client.replies[("C1", root_ts)] = [root, reply]
    subscription = hub.subscribe()
    poller.poll_once()

    assert sorted(notification.text for notification in subscription.drain()) == [
        "answer",
        "question",
    ]
    assert store.get_message("C1", "1700000601.000100") is not None


def test_non_member_and_archived_channels_are_not_tracked(
    store: SQLiteStore,
    gateway: SlackGateway,
    fake_client: FakeSlackClient,
    hub: NotificationHub,
) -> None:
    fake_client.add_channel("C1", "member")
    fake_client.add_channel("C2", "outsider", is_member=False)
    fake_client.add_channel("C3", "old", is_archived=True)

    poller = _poller(store, gateway, hub)
    poller.refresh_channels()

    assert [channel.id for channel in poller.tracked_channels] == ["C1"]


def test_permanent_error_drops_channel_until_refresh(
    store: SQLiteStore,
    gateway: SlackGateway,
    fake_client: FakeSlackClient,
    hub: NotificationHub,
) -> None:
    fake_client.add_channel("C1", "kicked")
    fake_client.add_channel("C2", "general")
    clock = FakeClock()
    poller = _poller(store, gateway, hub, monotonic=clock, channel_sync_interval_seconds=600)
    poller.poll_once()

    fake_client.fail("conversations.history", "not_in_channel", channel="C1")
    result = poller.poll_once()

    assert result.skipped == ["C1"]
    assert [channel.id for channel in poller.tracked_channels] == ["C2"]

    poller.poll_once()
    assert fake_client.count("conversations.history", "C1") == 1

    clock.advance(601)
    poller.poll_once()
    assert fake_client.count("conversations.history", "C1") == 2


def test_transient_error_keeps_channel(
    store: SQLiteStore,
    gateway: SlackGateway,
    fake_client: FakeSlackClient,
    hub: NotificationHub,
) -> None:
    fake_client.add_channel("C1", "general")
    poller = _poller(store, gateway, hub)
    poller.poll_once()

    fake_client.fail("conversations.history", "service_unavailable", channel="C1")
    result = poller.poll_once()

    assert result.skipped == ["C1"]
    assert [channel.id for channel in poller.tracked_channels] == ["C1"]


def test_auth_failure_stops_background_loop(
    store: SQLiteStore,
    gateway: SlackGateway,
    fake_client: FakeSlackClient,
    hub: NotificationHub,
) -> None:
    fake_client.fail("conversations.list", "token_revoked")
    poller = _poller(store, gateway, hub, poll_interval_seconds=0.01)

    poller.start()
    deadline = time.monotonic() + 5
    while poller.is_running and time.monotonic() < deadline:
        time.sleep(0.01)

    assert poller.is_running is False
    assert poller.auth_failed is True
    poller.stop()


def test_stop_ends_loop_promptly(
    store: SQLiteStore,
    gateway: SlackGateway,
    fake_client: FakeSlackClient,
    hub: NotificationHub,
) -> None:
    fake_client.add_channel("C1", "general")
    shutdown = ShutdownController()
    poller = _poller(store, gateway, hub, poll_interval_seconds=60, shutdown=shutdown)

    poller.start()
    time.sleep(0.05)
    started = time.monotonic()
    poller.stop()

    assert time.monotonic() - started < 5
    assert poller.is_running is False
    assert shutdown.is_set()
