"""History import use case.

Backfills every reachable conversation into the store:

1. Sync users and the channel list
2. Split target channels into fresh (no import cursor) and incremental
3. Page each channel's history with bounded concurrency, importing threads
4. Advance each channel's import cursor to the newest message seen
5. Refresh TTL-gated metadata (pins, bookmarks, emoji, groups, files, stars)

A failure in one channel never stops its siblings. Only an invalid
credential or an unavailable store aborts the run.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from typing import Any, Final

from slack_mirror.adapters.sqlite_store import WORKSPACE_SCOPE, SQLiteStore
from slack_mirror.config.logging_config import get_logger
from slack_mirror.config.settings import Settings
from slack_mirror.domain.exceptions import (
    AuthInvalidError,
    ChannelUnavailableError,
    RateLimitError,
    SlackMirrorError,
    StorageUnavailableError,
    TransientSlackError,
)
from slack_mirror.domain.models import (
    AuthMode,
    Channel,
    ChannelImportOutcome,
    ChannelImportStatus,
    ImportMode,
    ImportResult,
    MetadataKind,
)
from slack_mirror.domain.timestamps import max_ts
from slack_mirror.observability.metrics import (
    CHANNEL_IMPORT_DURATION_SECONDS,
    MESSAGES_UPSERTED_TOTAL,
)
from slack_mirror.observability.tracing import run_scope
from slack_mirror.ports.slack_gateway import SlackGatewayPort
from slack_mirror.services.concurrency import StopSignal, run_bounded
from slack_mirror.services.message_normalizer import (
    channel_from_slack,
    message_from_slack,
    user_from_slack,
)

logger = get_logger(__name__)

FATAL_ERRORS: Final[tuple[type[Exception], ...]] = (
    AuthInvalidError,
    StorageUnavailableError,
)
CHANNEL_TYPES: Final[str] = "public_channel,private_channel"
DM_CHANNEL_TYPES: Final[str] = "mpim,im"
SECONDS_PER_HOUR: Final[float] = 3600.0


def select_channels(channels: Sequence[Channel], wanted: Sequence[str]) -> list[Channel]:
    """Keep channels whose id or name (with or without ``#``) is in ``wanted``.

    An empty ``wanted`` keeps every channel.
    """
    if not wanted:
        return list(channels)
    keys = {item.strip().lstrip("#").lower() for item in wanted if item.strip()}
    return [
        channel
        for channel in channels
        if channel.id.lower() in keys or (channel.name or "").lower() in keys
    ]


class HistoryImporter:
    """Resumable, bounded-concurrency backfill of workspace history."""

    def __init__(
        self,
        store: SQLiteStore,
        gateway: SlackGatewayPort,
        *,
        auth_mode: AuthMode,
        concurrency_full: int = 3,
        concurrency_incremental: int = 8,
        channel_filter: Sequence[str] = (),
        include_dms: bool = False,
        join_public: bool = False,
        import_metadata: bool = True,
        metadata_ttl_seconds: float = 24 * SECONDS_PER_HOUR,
        stop_signal: StopSignal | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        if concurrency_full <= 0 or concurrency_incremental <= 0:
            raise ValueError("import concurrency must be positive")
        self._store = store
        self._gateway = gateway
        self._auth_mode = auth_mode
        self._concurrency_full = concurrency_full
        self._concurrency_incremental = concurrency_incremental
        self._channel_filter = list(channel_filter)
        self._include_dms = include_dms
        self._join_public = join_public
        self._import_metadata = import_metadata
        self._metadata_ttl_seconds = metadata_ttl_seconds
        self._stop_signal = stop_signal
        self._clock = clock

    def _stopping(self) -> bool:
        return self._stop_signal is not None and self._stop_signal.is_set()

    def run_once(self, channels: Sequence[str] | None = None) -> ImportResult:
        """Run one import pass.

        Args:
            channels: Channel ids or names to import; None uses the configured filter

        Returns:
            ImportResult with per-channel outcomes

        Raises:
            AuthInvalidError: The credential was rejected
            StorageUnavailableError: The store cannot be written
        """
        with run_scope() as run_id:
            logger.info(
                "history_import_started",
                run_id=run_id,
                auth_mode=self._auth_mode.value,
                include_dms=self._include_dms,
            )
            result = ImportResult()

            self._sync_users(result)
            all_channels = self._sync_channels(result)

            wanted = self._channel_filter if channels is None else list(channels)
            targets = select_channels(all_channels, wanted)
            if wanted:
                logger.info(
                    "history_import_channels_filtered",
                    requested=len(wanted),
                    matched=len(targets),
                )

            incremental: list[tuple[Channel, str]] = []
            fresh: list[Channel] = []
            for channel in targets:
                cursor = self._store.get_import_cursor(channel.id)
                if cursor is None:
                    fresh.append(channel)
                else:
                    incremental.append((channel, cursor))

            logger.info(
                "history_import_plan",
                fresh_channels=len(fresh),
                incremental_channels=len(incremental),
            )

            self._run_phase(
                result,
                [(channel, None) for channel in fresh],
                ImportMode.FRESH,
                self._concurrency_full,
            )
            self._run_phase(
                result,
                incremental,
                ImportMode.INCREMENTAL,
                self._concurrency_incremental,
            )

            if self._import_metadata and not self._stopping():
                completed_ids = {
                    outcome.channel_id
                    for outcome in result.outcomes
                    if outcome.status == ChannelImportStatus.COMPLETED
                }
                self._sync_metadata(
                    result, [channel for channel in targets if channel.id in completed_ids]
                )

            logger.info(
                "history_import_completed",
                users_synced=result.users_synced,
                channels_synced=result.channels_synced,
                channels_processed=len(result.channels_processed),
                messages_upserted=result.messages_upserted,
                channels_skipped=len(result.skipped_channels),
            )
            return result

    # ------------------------------------------------------------------
    # Users and channels
    # ------------------------------------------------------------------

    def _sync_users(self, result: ImportResult) -> None:
        try:
            users = [user_from_slack(raw) for raw in self._gateway.list_users()]
        except FATAL_ERRORS:
            raise
        except SlackMirrorError as exc:
            logger.warning("user_sync_failed", error=str(exc))
            result.errors.append(f"users: {exc}")
            return
        result.users_synced = self._store.upsert_users(users)
        logger.info("users_synced", count=result.users_synced)

    def _sync_channels(self, result: ImportResult) -> list[Channel]:
        types = CHANNEL_TYPES
        if self._include_dms:
            types = f"{CHANNEL_TYPES},{DM_CHANNEL_TYPES}"
        try:
            raw_channels = self._gateway.list_conversations(types, exclude_archived=False)
        except FATAL_ERRORS:
            raise
        except SlackMirrorError as exc:
            logger.warning("channel_sync_failed", error=str(exc))
            result.errors.append(f"channels: {exc}")
            return []

        channels = [channel_from_slack(raw) for raw in raw_channels]
        result.channels_synced = self._store.upsert_channels(channels)
        logger.info("channels_synced", count=result.channels_synced, types=types)
        return channels

    # ------------------------------------------------------------------
    # Channel backfill
    # ------------------------------------------------------------------

    def _run_phase(
        self,
        result: ImportResult,
        work: list[tuple[Channel, str | None]],
        mode: ImportMode,
        concurrency: int,
    ) -> None:
        if not work or self._stopping():
            return

        def _handler(item: tuple[Channel, str | None]) -> ChannelImportOutcome:
            channel, oldest = item
            return self.import_channel(channel, mode=mode, oldest=oldest)

        outcomes = run_bounded(
            work,
            _handler,
            concurrency=concurrency,
            fatal_errors=FATAL_ERRORS,
            stop_signal=self._stop_signal,
            name=f"import-{mode.value}",
        )

        for outcome in outcomes:
            if not outcome.started:
                continue
            channel = outcome.item[0]
            result.channels_processed.append(channel.id)
            if outcome.error is None and outcome.result is not None:
                channel_outcome = outcome.result
            else:
                channel_outcome = ChannelImportOutcome(
                    channel_id=channel.id,
                    channel_name=channel.name,
                    mode=mode,
                    status=ChannelImportStatus.FAILED,
                    error=str(outcome.error),
                )
            result.outcomes.append(channel_outcome)
            result.messages_upserted += channel_outcome.messages_upserted
            if channel_outcome.error:
                result.errors.append(f"{channel.label}: {channel_outcome.error}")

    def _should_join(self, channel: Channel) -> bool:
        if channel.is_member or channel.is_archived or not channel.is_public_channel:
            return False
        return self._auth_mode == AuthMode.BOT or self._join_public

    def _join(self, channel: Channel) -> None:
        try:
            self._gateway.join_channel(channel.id)
            logger.info("channel_joined", channel_id=channel.id, channel=channel.label)
        except AuthInvalidError:
            raise
        except SlackMirrorError as exc:
            logger.info(
                "channel_join_failed",
                channel_id=channel.id,
                channel=channel.label,
                error=str(exc),
            )

    def import_channel(
        self,
        channel: Channel,
        *,
        mode: ImportMode,
        oldest: str | None = None,
    ) -> ChannelImportOutcome:
        """Backfill one channel and advance its import cursor.

        The cursor is advanced to the newest message seen even when the
        channel is abandoned part-way through.
        """
        log = logger.bind(channel_id=channel.id, channel=channel.label, mode=mode.value)
        started = self._clock()
        newest: str | None = None
        upserted = 0
        threads = 0
        status = ChannelImportStatus.FAILED
        error: str | None = None

        log.info("channel_import_started", oldest=oldest)
        try:
            if self._should_join(channel):
                self._join(channel)

            page_cursor: str | None = None
            stopped = False
            while True:
                if self._stopping():
                    stopped = True
                    break
                page = self._gateway.history_page(
                    channel.id, oldest=oldest, cursor=page_cursor
                )
                messages = [message_from_slack(raw, channel.id) for raw in page.items]
                upserted += self._store.upsert_messages(messages)
                MESSAGES_UPSERTED_TOTAL.labels(source="import").inc(len(messages))
                newest = max_ts(newest, *(message.ts for message in messages))

                for message in messages:
                    if message.has_replies and not message.is_thread_reply:
                        if self._import_thread(channel.id, message.thread_ts or message.ts):
                            threads += 1

                page_cursor = page.next_cursor
                if not page_cursor:
                    break

            if stopped:
                status = ChannelImportStatus.SKIPPED_TRANSIENT
                error = "stopped"
            else:
                status = ChannelImportStatus.COMPLETED
        except ChannelUnavailableError as exc:
            status = ChannelImportStatus.SKIPPED_UNAVAILABLE
            error = str(exc)
            log.info("channel_import_skipped", reason=exc.error_code, error=error)
        except (TransientSlackError, RateLimitError) as exc:
            status = ChannelImportStatus.SKIPPED_TRANSIENT
            error = str(exc)
            log.warning("channel_import_transient_failure", error=error)
        except FATAL_ERRORS:
            raise
        except SlackMirrorError as exc:
            status = ChannelImportStatus.FAILED
            error = str(exc)
            log.warning("channel_import_failed", error=error)
        finally:
            if newest is not None:
                self._store.set_import_cursor(channel.id, newest)
            CHANNEL_IMPORT_DURATION_SECONDS.labels(
                mode=mode.value, status=status.value
            ).observe(self._clock() - started)

        log.info(
            "channel_import_finished",
            status=status.value,
            messages_upserted=upserted,
            threads_imported=threads,
            newest_ts=newest,
        )
        return ChannelImportOutcome(
            channel_id=channel.id,
            channel_name=channel.name,
            mode=mode,
            status=status,
            messages_upserted=upserted,
            threads_imported=threads,
            newest_ts=newest,
            error=error,
        )

    def _import_thread(self, channel_id: str, thread_ts: str) -> bool:
        """Page every reply of one thread. Failures stay inside the thread."""
        page_cursor: str | None = None
        try:
            while True:
                page = self._gateway.replies_page(channel_id, thread_ts, cursor=page_cursor)
                messages = [message_from_slack(raw, channel_id) for raw in page.items]
                self._store.upsert_messages(messages)
                MESSAGES_UPSERTED_TOTAL.labels(source="import").inc(len(messages))
                page_cursor = page.next_cursor
                if not page_cursor:
                    return True
        except FATAL_ERRORS:
            raise
        except SlackMirrorError as exc:
            logger.warning(
                "thread_import_failed",
                channel_id=channel_id,
                thread_ts=thread_ts,
                error=str(exc),
            )
            return False

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def _sync_metadata(self, result: ImportResult, channels: list[Channel]) -> None:
        workspace_kinds: list[tuple[MetadataKind, Callable[[], int]]] = [
            (
                MetadataKind.EMOJI,
                lambda: self._store.upsert_custom_emoji(self._gateway.list_emoji()),
            ),
            (
                MetadataKind.USER_GROUPS,
                lambda: self._store.upsert_user_groups(self._gateway.list_user_groups()),
            ),
            (
                MetadataKind.FILES,
                lambda: self._store.upsert_files(self._gateway.list_files()),
            ),
        ]
        # Stars belong to a person; bot tokens cannot list them.
        if self._auth_mode != AuthMode.BOT:
            workspace_kinds.append(
                (
                    MetadataKind.STARS,
                    lambda: self._store.upsert_stars(self._gateway.list_stars()),
                )
            )

        for kind, sync in workspace_kinds:
            if self._stopping():
                return
            self._sync_metadata_kind(result, WORKSPACE_SCOPE, kind, sync)

        for channel in channels:
            if self._stopping():
                return
            channel_id = channel.id
            self._sync_metadata_kind(
                result,
                channel_id,
                MetadataKind.PINS,
                lambda: self._store.replace_pins(
                    channel_id, self._gateway.list_pins(channel_id)
                ),
            )
            self._sync_metadata_kind(
                result,
                channel_id,
                MetadataKind.BOOKMARKS,
                lambda: self._store.replace_bookmarks(
                    channel_id, self._gateway.list_bookmarks(channel_id)
                ),
            )

    def _sync_metadata_kind(
        self,
        result: ImportResult,
        scope: str,
        kind: MetadataKind,
        sync: Callable[[], int],
    ) -> None:
        if self._store.is_metadata_fresh(scope, kind, self._metadata_ttl_seconds):
            logger.debug("metadata_sync_fresh", scope=scope, kind=kind.value)
            return
        try:
            count = sync()
        except FATAL_ERRORS:
            raise
        except SlackMirrorError as exc:
            logger.warning(
                "metadata_sync_failed", scope=scope, kind=kind.value, error=str(exc)
            )
            result.errors.append(f"{kind.value}@{scope}: {exc}")
            return
        self._store.touch_metadata_cursor(scope, kind)
        logger.info("metadata_synced", scope=scope, kind=kind.value, count=count)


def create_history_importer(
    settings: Settings,
    store: SQLiteStore,
    gateway: SlackGatewayPort,
    *,
    auth_mode: AuthMode,
    stop_signal: StopSignal | None = None,
    **overrides: Any,
) -> HistoryImporter:
    """Build a HistoryImporter from settings; keyword overrides win."""
    options: dict[str, Any] = {
        "concurrency_full": settings.import_concurrency_full,
        "concurrency_incremental": settings.import_concurrency_incremental,
        "channel_filter": settings.import_channels,
        "include_dms": settings.import_include_dms,
        "join_public": settings.import_join_public,
        "import_metadata": settings.import_metadata,
        "metadata_ttl_seconds": settings.metadata_ttl_hours * SECONDS_PER_HOUR,
    }
    options.update({key: value for key, value in overrides.items() if value is not None})
    return HistoryImporter(
        store,
        gateway,
        auth_mode=auth_mode,
        stop_signal=stop_signal,
        **options,
    )


__all__ = [
    "FATAL_ERRORS",
    "HistoryImporter",
    "create_history_importer",
    "select_channels",
]
