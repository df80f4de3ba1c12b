"""Socket Mode live capture for bot credentials.

Every envelope is acknowledged first, then dispatched by event type. Store
writes happen on the Socket Mode client's handler threads; the shared store
serializes them.

Reaction events carry only the message key, so the message is re-fetched and
re-upserted. This race is accepted: an edit event that is applied between the
reaction event and the re-fetch can be overwritten by the older copy the
re-fetch returned. The stale text stays until the next edit, reaction or import
of that message.

An invalid credential or an unavailable store closes the connection and sets
``fatal_error``; the listener does not reconnect.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any, Final

from slack_sdk.socket_mode import SocketModeClient
from slack_sdk.socket_mode.request import SocketModeRequest
from slack_sdk.socket_mode.response import SocketModeResponse

from slack_mirror.adapters.sqlite_store import SQLiteStore
from slack_mirror.config.logging_config import get_logger
from slack_mirror.domain.exceptions import (
    AuthInvalidError,
    SlackMirrorError,
    StorageUnavailableError,
)
from slack_mirror.domain.models import (
    Message,
    MessageNotification,
    NotificationKind,
)
from slack_mirror.observability.metrics import MESSAGES_UPSERTED_TOTAL
from slack_mirror.ports.slack_gateway import SlackGatewayPort
from slack_mirror.services.message_normalizer import (
    channel_from_slack,
    message_from_slack,
    user_from_slack,
)
from slack_mirror.services.notifications import NotificationHub

logger = get_logger(__name__)

SocketClientFactory = Callable[[], Any]

EDIT_SUBTYPES: Final[frozenset[str]] = frozenset({"message_changed", "message_replied"})
DELETE_SUBTYPE: Final[str] = "message_deleted"
REACTION_EVENTS: Final[frozenset[str]] = frozenset({"reaction_added", "reaction_removed"})
CHANNEL_EVENTS: Final[frozenset[str]] = frozenset({"channel_created", "channel_rename"})


class EventListener:
    """Push-based live capture over a Socket Mode connection."""

    def __init__(
        self,
        store: SQLiteStore,
        gateway: SlackGatewayPort,
        hub: NotificationHub,
        *,
        socket_client_factory: SocketClientFactory,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._hub = hub
        self._socket_client_factory = socket_client_factory
        self._socket_client: Any | None = None
        self._running = False
        self._auth_failed = False
        self.fatal_error: BaseException | None = None
        self._known_users: set[str] = set()
        self._users_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def auth_failed(self) -> bool:
        return self._auth_failed

    def start(self) -> None:
        if self._running:
            return
        client = self._socket_client_factory()
        client.socket_mode_request_listeners.append(self._on_request)
        client.connect()
        self._socket_client = client
        self._running = True
        logger.info("event_listener_started")

    def stop(self) -> None:
        client = self._detach_client()
        if client is not None:
            client.close()
        logger.info("event_listener_stopped")

    def _detach_client(self) -> Any | None:
        client = self._socket_client
        self._socket_client = None
        self._running = False
        return client

    def _fail(self, exc: SlackMirrorError) -> None:
        """Record a fatal error and drop the connection.

        Runs on a Socket Mode handler thread, so the client is closed from a
        separate thread rather than from inside its own dispatch.
        """
        if self.fatal_error is None:
            self.fatal_error = exc
        client = self._detach_client()
        if client is not None:
            threading.Thread(
                target=client.close, name="socket-mode-close", daemon=True
            ).start()

    def _on_request(self, client: Any, request: SocketModeRequest) -> None:
        client.send_socket_mode_response(SocketModeResponse(envelope_id=request.envelope_id))
        if request.type != "events_api":
            logger.debug("socket_request_ignored", request_type=request.type)
            return
        event = (request.payload or {}).get("event") or {}
        self.handle_event(event)

    def handle_event(self, event: dict[str, Any]) -> None:
        """Apply one Events API event to the store. Never raises.

        Credential or storage failures stop the listener; later events are dropped.
        """
        event_type = event.get("type")
        if self.fatal_error is not None:
            logger.debug("event_dropped_after_failure", event_type=event_type)
            return
        try:
            if event_type == "message":
                self._handle_message(event)
            elif event_type in REACTION_EVENTS:
                self._handle_reaction(event)
            elif event_type in CHANNEL_EVENTS:
                self._handle_channel(event)
            elif event_type == "member_joined_channel":
                self._refresh_user(str(event.get("user") or ""))
            else:
                logger.debug("event_ignored", event_type=event_type)
        except AuthInvalidError as exc:
            self._auth_failed = True
            logger.error(
                "event_listener_auth_failed",
                event_type=event_type,
                error=str(exc),
                hint="Refresh the Slack credentials and restart",
            )
            self._fail(exc)
        except StorageUnavailableError as exc:
            logger.error(
                "event_listener_storage_unavailable", event_type=event_type, error=str(exc)
            )
            self._fail(exc)
        except SlackMirrorError as exc:
            logger.warning("event_handling_failed", event_type=event_type, error=str(exc))

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _handle_message(self, event: dict[str, Any]) -> None:
        channel_id = event.get("channel")
        if not channel_id:
            return
        subtype = event.get("subtype")

        if subtype == DELETE_SUBTYPE:
            deleted_ts = event.get("deleted_ts") or (event.get("previous_message") or {}).get("ts")
            if not deleted_ts:
                return
            removed = self._store.delete_message(channel_id, deleted_ts)
            logger.info("message_deleted", channel_id=channel_id, ts=deleted_ts, removed=removed)
            self._publish(NotificationKind.DELETED, channel_id, deleted_ts, None, "")
            return

        if subtype in EDIT_SUBTYPES:
            raw = event.get("message") or {}
            kind = NotificationKind.EDITED
        else:
            raw = event
            kind = NotificationKind.NEW
        if not raw.get("ts"):
            return

        message = message_from_slack(raw, channel_id)
        if message.user_id and not raw.get("bot_id"):
            self._ensure_user(message.user_id)

        self._store.upsert_message(message)
        MESSAGES_UPSERTED_TOTAL.labels(source="events").inc()
        self._publish(kind, channel_id, message.ts, message.user_id, message.text)

    def _publish(
        self,
        kind: NotificationKind,
        channel_id: str,
        ts: str,
        user_id: str | None,
        text: str,
    ) -> None:
        self._hub.publish(
            MessageNotification(
                kind=kind,
                channel_id=channel_id,
                ts=ts,
                user_id=user_id,
                text=text,
                source="events",
            )
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def _ensure_user(self, user_id: str) -> None:
        """Fetch the author's profile once per process unless already stored."""
        with self._users_lock:
            if user_id in self._known_users:
                return
        if self._store.has_user(user_id):
            with self._users_lock:
                self._known_users.add(user_id)
            return
        try:
            self._refresh_user(user_id)
        except (AuthInvalidError, StorageUnavailableError):
            raise
        except SlackMirrorError as exc:
            logger.warning("user_profile_fetch_failed", user_id=user_id, error=str(exc))

    def _refresh_user(self, user_id: str) -> None:
        if not user_id:
            return
        raw = self._gateway.get_user(user_id)
        if not raw.get("id"):
            return
        self._store.upsert_user(user_from_slack(raw))
        with self._users_lock:
            self._known_users.add(user_id)
        logger.debug("user_profile_refreshed", user_id=user_id)

    # ------------------------------------------------------------------
    # Reactions
    # ------------------------------------------------------------------

    def _handle_reaction(self, event: dict[str, Any]) -> None:
        item = event.get("item") or {}
        if item.get("type") != "message":
            return
        channel_id = item.get("channel")
        ts = item.get("ts")
        if not channel_id or not ts:
            return

        fresh = self._refetch_message(channel_id, ts)
        if fresh is None:
            logger.debug("reaction_target_not_found", channel_id=channel_id, ts=ts)
            return
        self._store.upsert_message(fresh)
        MESSAGES_UPSERTED_TOTAL.labels(source="events").inc()

    def _refetch_message(self, channel_id: str, ts: str) -> Message | None:
        """Read the current state of one message from Slack.

        Thread replies are not returned by history, so a stored reply is
        re-read through its thread.
        """
        stored = self._store.get_message(channel_id, ts)
        if stored is not None and stored.is_thread_reply and stored.thread_ts:
            page = self._gateway.replies_page(
                channel_id, stored.thread_ts, oldest=ts, latest=ts, inclusive=True
            )
        else:
            page = self._gateway.history_page(channel_id, latest=ts, inclusive=True, limit=1)

        for raw in page.items:
            if raw.get("ts") == ts:
                return message_from_slack(raw, channel_id)
        return None

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    def _handle_channel(self, event: dict[str, Any]) -> None:
        raw = event.get("channel")
        if not isinstance(raw, dict) or not raw.get("id"):
            return
        incoming = channel_from_slack(raw)
        existing = self._store.get_channel(incoming.id)
        if existing is None:
            channel = incoming
        else:
            # Rename payloads carry only id and name.
            channel = existing.model_copy(update={"name": incoming.name or existing.name})
        self._store.upsert_channel(channel)
        logger.info(
            "channel_event_applied",
            event_type=event.get("type"),
            channel_id=channel.id,
            name=channel.name,
        )


def socket_client_factory(app_token: str, web_client: Any) -> SocketClientFactory:
    """Factory for the built-in Socket Mode client sharing ``web_client``."""

    def _build() -> SocketModeClient:
        return SocketModeClient(app_token=app_token, web_client=web_client)

    return _build


__all__ = ["EventListener", "socket_client_factory"]
