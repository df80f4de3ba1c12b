"""Port definition for the Slack Web API boundary."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from slack_mirror.clients.pages import SlackPage


@runtime_checkable
class SlackGatewayPort(Protocol):
    """Read/join operations the ingestion components need from Slack.

    Every method raises only exceptions from ``slack_mirror.domain.exceptions``:
    ``ChannelUnavailableError``, ``AuthInvalidError``, ``TransientSlackError``,
    ``RateLimitError`` (after in-place retries are exhausted) or ``SlackAPIError``.
    """

    def list_conversations(self, types: str, *, exclude_archived: bool = False) -> list[dict[str, Any]]:
        """Return every conversation of the given comma-separated types."""

    def list_users(self) -> list[dict[str, Any]]:
        """Return every workspace member."""

    def get_user(self, user_id: str) -> dict[str, Any]:
        """Fetch one member object via ``users.info``."""

    def get_conversation(self, channel_id: str) -> dict[str, Any]:
        """Fetch one conversation object via ``conversations.info``."""

    def join_channel(self, channel_id: str) -> None:
        """Join a public channel."""

    def history_page(
        self,
        channel_id: str,
        *,
        oldest: str | None = None,
        latest: str | None = None,
        inclusive: bool = False,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> SlackPage:
        """Fetch one page of ``conversations.history``."""

    def replies_page(
        self,
        channel_id: str,
        thread_ts: str,
        *,
        oldest: str | None = None,
        latest: str | None = None,
        inclusive: bool = False,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> SlackPage:
        """Fetch one page of ``conversations.replies``."""

    def list_pins(self, channel_id: str) -> list[dict[str, Any]]:
        """Pinned items of one channel."""

    def list_bookmarks(self, channel_id: str) -> list[dict[str, Any]]:
        """Bookmarks of one channel."""

    def list_emoji(self) -> dict[str, str]:
        """Custom emoji map of the workspace."""

    def list_user_groups(self) -> list[dict[str, Any]]:
        """User groups including member ids."""

    def list_files(self) -> list[dict[str, Any]]:
        """File index visible to the credential."""

    def list_stars(self) -> list[dict[str, Any]]:
        """Items starred (saved) by the credential's user."""


__all__ = ["SlackGatewayPort"]
