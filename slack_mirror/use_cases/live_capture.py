"""Selection of the live capture variant for the resolved credential."""

from __future__ import annotations

from slack_mirror.adapters.sqlite_store import SQLiteStore
from slack_mirror.clients.slack_gateway import SlackGateway
from slack_mirror.config.logging_config import get_logger
from slack_mirror.config.settings import Settings
from slack_mirror.domain.models import SlackCredentials
from slack_mirror.ports.live_capture import LiveCapturePort
from slack_mirror.services.notifications import NotificationHub
from slack_mirror.services.shutdown import ShutdownController
from slack_mirror.use_cases.event_listener import EventListener, socket_client_factory
from slack_mirror.use_cases.poller import Poller

logger = get_logger(__name__)


def create_live_capture(
    settings: Settings,
    credentials: SlackCredentials,
    store: SQLiteStore,
    gateway: SlackGateway,
    hub: NotificationHub,
    *,
    shutdown: ShutdownController | None = None,
) -> LiveCapturePort:
    """Socket Mode listener for bot credentials, poller for everything else."""
    app_token = credentials.app_token
    if credentials.supports_push and app_token is not None:
        logger.info("live_capture_selected", variant="events", auth_mode=credentials.mode.value)
        return EventListener(
            store,
            gateway,
            hub,
            socket_client_factory=socket_client_factory(
                app_token.get_secret_value(), gateway.client
            ),
        )

    logger.info("live_capture_selected", variant="poller", auth_mode=credentials.mode.value)
    return Poller(
        store,
        gateway,
        hub,
        poll_interval_seconds=settings.poll_interval_seconds,
        channel_sync_interval_seconds=settings.channel_sync_interval_seconds,
        shutdown=shutdown,
    )


__all__ = ["create_live_capture"]
