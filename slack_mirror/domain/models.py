"""Domain models for slack-mirror.

All models use Pydantic v2 for validation and serialization.
"""

from datetime import datetime
from enum import Enum
from typing import Any

import pytz
from pydantic import BaseModel, ConfigDict, Field, SecretStr


class AuthMode(str, Enum):
    """Credential mode, resolved once at startup."""

    BOT = "bot"
    USER = "user"
    SESSION = "session"


class SlackCredentials(BaseModel):
    """Credential bundle for one Slack identity.

    Bot mode carries an app-level token for Socket Mode. Session mode carries
    the ``d`` cookie that must accompany ``xoxc-`` tokens.
    """

    mode: AuthMode
    token: SecretStr
    app_token: SecretStr | None = None
    cookie_d: SecretStr | None = None

    @property
    def supports_push(self) -> bool:
        """Whether a Socket Mode connection can be opened."""
        return self.mode == AuthMode.BOT and self.app_token is not None


class MetadataKind(str, Enum):
    """Low-value metadata synced behind a time-to-live gate."""

    PINS = "pins"
    BOOKMARKS = "bookmarks"
    EMOJI = "emoji"
    USER_GROUPS = "user_groups"
    FILES = "files"
    STARS = "stars"


class Channel(BaseModel):
    """Slack conversation (public/private channel, DM or group DM)."""

    id: str
    name: str | None = None
    is_private: bool = False
    topic: str = ""
    purpose: str = ""
    is_im: bool = False
    is_mpim: bool = False
    is_archived: bool = False
    is_member: bool = False
    user_id: str | None = Field(
        default=None, description="Counterpart user for 1:1 direct messages"
    )

    @property
    def is_public_channel(self) -> bool:
        return not (self.is_private or self.is_im or self.is_mpim)

    @property
    def label(self) -> str:
        """Human-readable label for logs."""
        return self.name or self.id


class User(BaseModel):
    """Slack workspace member."""

    id: str
    name: str = ""
    display_name: str = ""
    real_name: str = ""
    is_bot: bool = False
    deleted: bool = False
    title: str = ""
    email: str | None = None
    timezone: str | None = None
    status_text: str = ""
    status_emoji: str = ""


class Message(BaseModel):
    """Stored Slack message keyed by (channel_id, ts)."""

    channel_id: str
    ts: str
    user_id: str | None = None
    text: str = ""
    thread_ts: str | None = None
    reply_count: int = 0
    subtype: str | None = None
    reactions: list[dict[str, Any]] = Field(default_factory=list)
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    files: list[dict[str, Any]] = Field(default_factory=list)
    blocks: list[dict[str, Any]] = Field(default_factory=list)
    permalink: str | None = None
    edited_ts: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_thread_reply(self) -> bool:
        return self.thread_ts is not None and self.thread_ts != self.ts

    @property
    def has_replies(self) -> bool:
        return self.reply_count > 0


class NotificationKind(str, Enum):
    """Kind of live message notification."""

    NEW = "new"
    EDITED = "edited"
    DELETED = "deleted"


class MessageNotification(BaseModel):
    """Value published to live observers for each stored message event."""

    model_config = ConfigDict(frozen=True)

    kind: NotificationKind
    channel_id: str
    ts: str
    user_id: str | None = None
    text: str = ""
    source: str = Field(default="events", description="events or poller")


class ImportMode(str, Enum):
    """Backfill strategy chosen per channel from its import cursor."""

    FRESH = "fresh"
    INCREMENTAL = "incremental"


class ChannelImportStatus(str, Enum):
    """Terminal state of one channel's backfill in one run."""

    COMPLETED = "completed"
    SKIPPED_UNAVAILABLE = "skipped_unavailable"
    SKIPPED_TRANSIENT = "skipped_transient"
    FAILED = "failed"


class ChannelImportOutcome(BaseModel):
    """Result of importing one channel."""

    channel_id: str
    channel_name: str | None = None
    mode: ImportMode
    status: ChannelImportStatus
    messages_upserted: int = 0
    threads_imported: int = 0
    newest_ts: str | None = None
    error: str | None = None


class ImportResult(BaseModel):
    """Result of one history import run."""

    users_synced: int = 0
    channels_synced: int = 0
    channels_processed: list[str] = Field(default_factory=list)
    messages_upserted: int = 0
    outcomes: list[ChannelImportOutcome] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def skipped_channels(self) -> list[ChannelImportOutcome]:
        return [
            outcome
            for outcome in self.outcomes
            if outcome.status != ChannelImportStatus.COMPLETED
        ]


class PollCycleResult(BaseModel):
    """Result of one pass of the poller over its tracked channels."""

    channels_polled: int = 0
    channels_initialized: int = 0
    messages_upserted: int = 0
    notifications: int = 0
    skipped: list[str] = Field(default_factory=list)


class StoreStats(BaseModel):
    """Summary counters over the stored corpus."""

    messages: int
    channels: int
    users: int
    threads: int


class SearchHit(BaseModel):
    """One ranked full-text match."""

    channel_id: str
    ts: str
    user_id: str | None = None
    text: str = ""
    thread_ts: str | None = None
    reply_count: int = 0
    permalink: str | None = None
    user_name: str | None = None
    channel_name: str | None = None
    rank: float = 0.0

    @property
    def context_key(self) -> tuple[str, str]:
        """Thread (or the message itself) this hit belongs to."""
        return (self.channel_id, self.thread_ts or self.ts)


class ContextMessage(BaseModel):
    """Message row returned by thread/context/recent lookups."""

    channel_id: str
    ts: str
    user_id: str | None = None
    text: str = ""
    thread_ts: str | None = None
    reply_count: int = 0
    user_name: str | None = None
    channel_name: str | None = None

    @property
    def posted_at(self) -> datetime:
        return datetime.fromtimestamp(float(self.ts), tz=pytz.UTC)


class ContextBlock(BaseModel):
    """Expanded context around one distinct hit key."""

    kind: str = Field(..., description="thread or context")
    channel_id: str
    thread_key: str
    channel_name: str | None = None
    messages: list[ContextMessage] = Field(default_factory=list)


class AskResult(BaseModel):
    """Compound answer for a natural-language question."""

    query: str
    hits: list[SearchHit] = Field(default_factory=list)
    context: list[ContextBlock] = Field(default_factory=list)
    stats: StoreStats
