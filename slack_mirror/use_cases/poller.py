"""Polling live capture for credentials that cannot hold a Socket Mode connection.

User tokens and browser session tokens have no app-level token, so new
messages are discovered by paging ``conversations.history`` newer than each
channel's poll cursor. A channel seen for the first time starts at *now*;
older history is the importer's job.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Final

from slack_mirror.adapters.sqlite_store import SQLiteStore
from slack_mirror.config.logging_config import get_logger
from slack_mirror.domain.exceptions import (
    AuthInvalidError,
    RateLimitError,
    SlackMirrorError,
    StorageUnavailableError,
    TransientSlackError,
)
from slack_mirror.domain.models import (
    Channel,
    Message,
    MessageNotification,
    NotificationKind,
    PollCycleResult,
)
from slack_mirror.domain.timestamps import is_newer, max_ts, now_ts
from slack_mirror.observability.metrics import MESSAGES_UPSERTED_TOTAL
from slack_mirror.observability.tracing import run_scope
from slack_mirror.ports.slack_gateway import SlackGatewayPort
from slack_mirror.services.message_normalizer import (
    channel_from_slack,
    message_from_slack,
    user_from_slack,
)
from slack_mirror.services.notifications import NotificationHub
from slack_mirror.services.shutdown import ShutdownController

logger = get_logger(__name__)

POLL_CHANNEL_TYPES: Final[str] = "public_channel,private_channel"
LARGE_CHANNEL_COUNT_WARNING: Final[int] = 30
STOP_JOIN_TIMEOUT_SECONDS: Final[float] = 30.0


class Poller:
    """Pull-based live capture running on one background thread."""

    def __init__(
        self,
        store: SQLiteStore,
        gateway: SlackGatewayPort,
        hub: NotificationHub,
        *,
        poll_interval_seconds: float = 30.0,
        channel_sync_interval_seconds: float = 600.0,
        shutdown: ShutdownController | None = None,
        wall_clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._hub = hub
        self._poll_interval = poll_interval_seconds
        self._sync_interval = channel_sync_interval_seconds
        self._shutdown = shutdown or ShutdownController()
        self._wall_clock = wall_clock
        self._monotonic = monotonic

        self._channels: list[Channel] = []
        self._last_sync: float | None = None
        self._thread: threading.Thread | None = None
        self._running = False
        self._auth_failed = False
        self.last_cycle: PollCycleResult | None = None
        self.fatal_error: BaseException | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def auth_failed(self) -> bool:
        return self._auth_failed

    @property
    def tracked_channels(self) -> list[Channel]:
        return list(self._channels)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._run, name="slack-poller", daemon=True)
        self._thread.start()
        logger.info("poller_started", poll_interval_seconds=self._poll_interval)

    def stop(self) -> None:
        self._shutdown.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=STOP_JOIN_TIMEOUT_SECONDS)
        self._running = False
        logger.info("poller_stopped")

    def _run(self) -> None:
        with run_scope(capture="poller"):
            self._poll_loop()

    def _poll_loop(self) -> None:
        try:
            while not self._shutdown.is_set():
                try:
                    self.poll_once()
                except AuthInvalidError as exc:
                    self._auth_failed = True
                    self.fatal_error = exc
                    logger.error(
                        "poller_auth_failed",
                        error=str(exc),
                        hint="Refresh the Slack credentials and restart",
                    )
                    return
                except StorageUnavailableError as exc:
                    self.fatal_error = exc
                    logger.error("poller_storage_unavailable", error=str(exc))
                    return
                self._shutdown.wait(self._poll_interval)
        finally:
            self._running = False

    # ------------------------------------------------------------------
    # Channel list
    # ------------------------------------------------------------------

    def _sync_due(self) -> bool:
        if self._last_sync is None:
            return True
        return self._monotonic() - self._last_sync >= self._sync_interval

    def refresh_channels(self) -> list[Channel]:
        """Reload member channels and users. Transient failures keep the old list."""
        try:
            raw_channels = self._gateway.list_conversations(
                POLL_CHANNEL_TYPES, exclude_archived=True
            )
        except (AuthInvalidError, StorageUnavailableError):
            raise
        except SlackMirrorError as exc:
            logger.warning("poller_channel_sync_failed", error=str(exc))
            self._last_sync = self._monotonic()
            return self.tracked_channels

        # User and session tokens cannot join channels programmatically.
        channels = [
            channel for channel in map(channel_from_slack, raw_channels) if channel.is_member
        ]
        self._store.upsert_channels(channels)
        self._channels = channels

        try:
            self._store.upsert_users(user_from_slack(raw) for raw in self._gateway.list_users())
        except (AuthInvalidError, StorageUnavailableError):
            raise
        except SlackMirrorError as exc:
            logger.warning("poller_user_sync_failed", error=str(exc))

        self._last_sync = self._monotonic()
        logger.info("poller_channels_refreshed", channels=len(channels))
        if len(channels) > LARGE_CHANNEL_COUNT_WARNING:
            logger.warning(
                "poller_many_channels",
                channels=len(channels),
                hint="Consider a longer poll interval to stay under rate limits",
            )
        return self.tracked_channels

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def poll_once(self) -> PollCycleResult:
        """Poll every tracked channel once, sequentially.

        Raises:
            AuthInvalidError: The credential was rejected
            StorageUnavailableError: The store cannot be written
        """
        if self._sync_due():
            self.refresh_channels()

        result = PollCycleResult()
        dropped: list[str] = []
        for channel in list(self._channels):
            if self._shutdown.is_set():
                break
            try:
                self.poll_channel(channel, result)
            except (TransientSlackError, RateLimitError) as exc:
                result.skipped.append(channel.id)
                logger.warning(
                    "poll_channel_transient_failure", channel_id=channel.id, error=str(exc)
                )
            except (AuthInvalidError, StorageUnavailableError):
                raise
            except SlackMirrorError as exc:
                result.skipped.append(channel.id)
                dropped.append(channel.id)
                logger.warning(
                    "poll_channel_dropped",
                    channel_id=channel.id,
                    channel=channel.label,
                    error=str(exc),
                )

        if dropped:
            self._channels = [channel for channel in self._channels if channel.id not in dropped]

        self.last_cycle = result
        logger.debug(
            "poll_cycle_completed",
            channels_polled=result.channels_polled,
            channels_initialized=result.channels_initialized,
            messages_upserted=result.messages_upserted,
            notifications=result.notifications,
        )
        return result

    def poll_channel(self, channel: Channel, result: PollCycleResult) -> None:
        """Fetch messages newer than the channel's poll cursor.

        A channel without a cursor is cold-started: its cursor is set to now
        and nothing is fetched.
        """
        old_cursor = self._store.get_poll_cursor(channel.id)
        if old_cursor is None:
            self._store.set_poll_cursor(channel.id, now_ts(self._wall_clock()))
            result.channels_initialized += 1
            logger.info("poll_cursor_initialized", channel_id=channel.id)
            return

        result.channels_polled += 1
        newest: str | None = None
        page_cursor: str | None = None
        try:
            while True:
                page = self._gateway.history_page(
                    channel.id, oldest=old_cursor, cursor=page_cursor
                )
                messages = [message_from_slack(raw, channel.id) for raw in page.items]
                result.messages_upserted += self._store.upsert_messages(messages)
                MESSAGES_UPSERTED_TOTAL.labels(source="poller").inc(len(messages))
                newest = max_ts(newest, *(message.ts for message in messages))

                for message in messages:
                    if is_newer(message.ts, old_cursor):
                        self._notify(message, result)
                    if message.has_replies and not message.is_thread_reply:
                        self._poll_thread(
                            channel.id, message.thread_ts or message.ts, old_cursor, result
                        )

                page_cursor = page.next_cursor
                if not page_cursor or self._shutdown.is_set():
                    break
        finally:
            if newest is not None and is_newer(newest, old_cursor):
                self._store.set_poll_cursor(channel.id, newest)

    def _poll_thread(
        self, channel_id: str, thread_ts: str, since: str, result: PollCycleResult
    ) -> None:
        page_cursor: str | None = None
        try:
            while True:
                page = self._gateway.replies_page(
                    channel_id, thread_ts, oldest=since, cursor=page_cursor
                )
                messages = [message_from_slack(raw, channel_id) for raw in page.items]
                result.messages_upserted += self._store.upsert_messages(messages)
                MESSAGES_UPSERTED_TOTAL.labels(source="poller").inc(len(messages))
                for message in messages:
                    # The root is always returned first and was handled by the history pass.
                    if message.ts != thread_ts and is_newer(message.ts, since):
                        self._notify(message, result)
                page_cursor = page.next_cursor
                if not page_cursor:
                    return
        except (AuthInvalidError, StorageUnavailableError):
            raise
        except SlackMirrorError as exc:
            logger.debug(
                "poll_thread_failed",
                channel_id=channel_id,
                thread_ts=thread_ts,
                error=str(exc),
            )

    def _notify(self, message: Message, result: PollCycleResult) -> None:
        self._hub.publish(
            MessageNotification(
                kind=NotificationKind.NEW,
                channel_id=message.channel_id,
                ts=message.ts,
                user_id=message.user_id,
                text=message.text,
                source="poller",
            )
        )
        result.notifications += 1


__all__ = ["Poller"]
