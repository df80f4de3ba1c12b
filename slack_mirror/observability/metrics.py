"""Prometheus metrics for ingestion observability.

The exporter is started on demand (``slack-mirror listen --metrics-port``);
importing this module only registers the collectors.
"""

from __future__ import annotations

import threading
from typing import Final

from prometheus_client import Counter, Histogram, start_http_server

from slack_mirror.config.logging_config import get_logger

logger = get_logger(__name__)

SLACK_API_CALLS_TOTAL: Final[Counter] = Counter(
    "slack_mirror_api_calls_total",
    "Slack Web API calls by method and outcome",
    labelnames=("method", "outcome"),
)

RATE_LIMIT_WAITS_TOTAL: Final[Counter] = Counter(
    "slack_mirror_rate_limit_waits_total",
    "Times a caller slept on an upstream rate-limit response",
    labelnames=("component",),
)

MESSAGES_UPSERTED_TOTAL: Final[Counter] = Counter(
    "slack_mirror_messages_upserted_total",
    "Messages written to the store by producer",
    labelnames=("source",),
)

NOTIFICATIONS_DROPPED_TOTAL: Final[Counter] = Counter(
    "slack_mirror_notifications_dropped_total",
    "Live notifications dropped because a subscriber queue was full",
)

CHANNEL_IMPORT_DURATION_SECONDS: Final[Histogram] = Histogram(
    "slack_mirror_channel_import_duration_seconds",
    "Duration of one channel backfill",
    labelnames=("mode", "status"),
)

_EXPORTER_LOCK = threading.Lock()
_EXPORTER_STARTED = False


def ensure_metrics_exporter(port: int) -> None:
    """Start Prometheus HTTP exporter once per process."""

    global _EXPORTER_STARTED
    with _EXPORTER_LOCK:
        if _EXPORTER_STARTED:
            return

        try:
            start_http_server(port)
        except OSError as exc:
            logger.error(
                "metrics_exporter_start_failed",
                port=port,
                error=str(exc),
            )
            raise

        _EXPORTER_STARTED = True
        logger.info("metrics_exporter_started", port=port)


__all__ = [
    "CHANNEL_IMPORT_DURATION_SECONDS",
    "MESSAGES_UPSERTED_TOTAL",
    "NOTIFICATIONS_DROPPED_TOTAL",
    "RATE_LIMIT_WAITS_TOTAL",
    "SLACK_API_CALLS_TOTAL",
    "ensure_metrics_exporter",
]
