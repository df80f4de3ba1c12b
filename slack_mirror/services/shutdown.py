"""Cooperative stop signal shared by the importer, poller and CLI."""

from __future__ import annotations

import signal
import threading
from types import FrameType

from slack_mirror.config.logging_config import get_logger

logger = get_logger(__name__)


class ShutdownController:
    """Cancellation token checked only at loop boundaries.

    Setting it never interrupts an in-flight Slack request; loops observe it
    at the next page, channel or cycle boundary. ``wait`` returns early when
    set, so sleeps between poll cycles end promptly.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)

    def set(self) -> None:
        self._event.set()

    def request(self, signum: int, frame: FrameType | None) -> None:
        sig_name = signal.Signals(signum).name
        logger.info("shutdown_signal_received", signal=sig_name)
        self._event.set()


def install_signal_handlers(controller: ShutdownController) -> None:
    """Register SIGTERM/SIGINT handlers for graceful shutdown."""

    def _handler(signum: int, frame: FrameType | None) -> None:
        controller.request(signum, frame)

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)


__all__ = ["ShutdownController", "install_signal_handlers"]
