"""Port definition for live capture variants."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class LiveCapturePort(Protocol):
    """Common lifecycle of the push (Socket Mode) and pull (polling) capture paths."""

    def start(self) -> None:
        """Begin capturing in the background and return immediately."""

    def stop(self) -> None:
        """Stop capturing; in-flight requests complete first."""

    @property
    def is_running(self) -> bool:
        """Whether the capture path is active."""

    @property
    def auth_failed(self) -> bool:
        """Whether Slack rejected the credential while capturing."""

    @property
    def fatal_error(self) -> BaseException | None:
        """Credential or storage error that ended the capture path, if any."""


__all__ = ["LiveCapturePort"]
