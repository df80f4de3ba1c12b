"""SQLite store: the single writer of mirrored workspace state.

One connection is shared by every importer worker, the poller thread and the
Socket Mode handler threads. Every statement runs under one re-entrant lock
and every write runs inside a ``BEGIN IMMEDIATE`` transaction, so a batch of
messages and the index rows its triggers maintain are committed together or
not at all.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Final

import pytz

from slack_mirror.adapters.sqlite_schema import (
    FTS_SQL,
    SCHEMA_VERSION,
    TABLES_SQL,
    TRIGGERS_SQL,
)
from slack_mirror.config.logging_config import get_logger
from slack_mirror.domain.exceptions import StorageUnavailableError
from slack_mirror.domain.models import (
    Channel,
    ContextMessage,
    Message,
    MetadataKind,
    SearchHit,
    StoreStats,
    User,
)
from slack_mirror.domain.timestamps import is_newer, ts_key

logger = get_logger(__name__)

MEMORY_DB: Final[str] = ":memory:"
WORKSPACE_SCOPE: Final[str] = "*"
DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5000

_CURSOR_TABLES: Final[frozenset[str]] = frozenset({"import_cursors", "poll_cursors"})

# Errors SQLite raises for a malformed MATCH expression rather than a broken database.
_FTS_QUERY_ERROR_MARKERS: Final[tuple[str, ...]] = (
    "fts5",
    "syntax error",
    "no such column",
    "unterminated string",
    "unknown special query",
)

_USER_NAME_COLUMN: Final[str] = (
    "COALESCE(NULLIF(u.display_name, ''), NULLIF(u.real_name, ''), NULLIF(u.name, ''))"
)

_MESSAGE_COLUMNS: Final[tuple[str, ...]] = (
    "user_id",
    "text",
    "thread_ts",
    "reply_count",
    "subtype",
    "reactions",
    "attachments",
    "files",
    "blocks",
    "permalink",
    "edited_ts",
    "raw",
)

_UPSERT_MESSAGE_SQL: Final[str] = (
    "INSERT INTO messages (channel_id, ts, "
    + ", ".join(_MESSAGE_COLUMNS)
    + ", imported_at, updated_at) VALUES (:channel_id, :ts, "
    + ", ".join(f":{column}" for column in _MESSAGE_COLUMNS)
    + ", :now, :now) ON CONFLICT(channel_id, ts) DO UPDATE SET "
    + ", ".join(f"{column} = excluded.{column}" for column in _MESSAGE_COLUMNS)
    + ", updated_at = excluded.updated_at WHERE "
    + " OR ".join(f"messages.{column} IS NOT excluded.{column}" for column in _MESSAGE_COLUMNS)
)

_CHANNEL_COLUMNS: Final[tuple[str, ...]] = (
    "name",
    "is_private",
    "topic",
    "purpose",
    "is_im",
    "is_mpim",
    "is_archived",
    "user_id",
)

_UPSERT_CHANNEL_SQL: Final[str] = (
    "INSERT INTO channels (id, "
    + ", ".join(_CHANNEL_COLUMNS)
    + ", updated_at) VALUES (:id, "
    + ", ".join(f":{column}" for column in _CHANNEL_COLUMNS)
    + ", :now) ON CONFLICT(id) DO UPDATE SET "
    + ", ".join(f"{column} = excluded.{column}" for column in _CHANNEL_COLUMNS)
    + ", updated_at = excluded.updated_at WHERE "
    + " OR ".join(f"channels.{column} IS NOT excluded.{column}" for column in _CHANNEL_COLUMNS)
)

_USER_COLUMNS: Final[tuple[str, ...]] = (
    "name",
    "display_name",
    "real_name",
    "is_bot",
    "deleted",
    "title",
    "email",
    "timezone",
    "status_text",
    "status_emoji",
)

_UPSERT_USER_SQL: Final[str] = (
    "INSERT INTO users (id, "
    + ", ".join(_USER_COLUMNS)
    + ", updated_at) VALUES (:id, "
    + ", ".join(f":{column}" for column in _USER_COLUMNS)
    + ", :now) ON CONFLICT(id) DO UPDATE SET "
    + ", ".join(f"{column} = excluded.{column}" for column in _USER_COLUMNS)
    + ", updated_at = excluded.updated_at WHERE "
    + " OR ".join(f"users.{column} IS NOT excluded.{column}" for column in _USER_COLUMNS)
)


def _dump_json(value: Any) -> str | None:
    """Deterministic JSON so identical payloads compare equal in SQL."""
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _load_json(value: str | None, default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("sqlite_json_decode_failed", value_preview=value[:80])
        return default


def _utc_now_iso() -> str:
    return datetime.now(pytz.UTC).isoformat()


def _is_fts_query_error(exc: sqlite3.Error) -> bool:
    message = str(exc).lower()
    return isinstance(exc, sqlite3.OperationalError) and any(
        marker in message for marker in _FTS_QUERY_ERROR_MARKERS
    )


class SQLiteStore:
    """Thread-safe SQLite store with an FTS5 message index."""

    def __init__(
        self,
        db_path: str,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Open the database and ensure the schema exists.

        Args:
            db_path: Path to the SQLite file, or ``:memory:``
            busy_timeout_ms: How long a writer waits for a competing process
            clock: Wall clock used for metadata freshness

        Raises:
            StorageUnavailableError: If the database cannot be opened or lacks FTS5
        """
        self.db_path = db_path
        self._clock = clock
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._closed = False

        if db_path != MEMORY_DB:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(
                db_path,
                check_same_thread=False,
                isolation_level=None,
            )
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"Cannot open database {db_path}: {exc}") from exc

        self._conn.row_factory = sqlite3.Row
        self._create_schema(busy_timeout_ms)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _create_schema(self, busy_timeout_ms: int) -> None:
        logger.info("sqlite_schema_creation_started", db_path=str(self.db_path))
        try:
            with self._lock:
                if self.db_path != MEMORY_DB:
                    self._conn.execute("PRAGMA journal_mode=WAL")
                self._conn.execute("PRAGMA synchronous=NORMAL")
                self._conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
                self._conn.executescript(TABLES_SQL + FTS_SQL + TRIGGERS_SQL)
                self._conn.execute(f"PRAGMA user_version={SCHEMA_VERSION}")
        except sqlite3.Error as exc:
            self._conn.close()
            self._closed = True
            raise StorageUnavailableError(f"Schema creation failed: {exc}") from exc
        logger.info("sqlite_schema_created", db_path=str(self.db_path))

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True
        logger.debug("sqlite_store_closed", db_path=str(self.db_path))

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> SQLiteStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _ensure_open(self) -> None:
        if self._closed:
            raise StorageUnavailableError("Store is closed")

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a write under ``BEGIN IMMEDIATE``; nested calls join the outer one."""
        with self._lock:
            self._ensure_open()
            outermost = self._tx_depth == 0
            try:
                if outermost:
                    self._conn.execute("BEGIN IMMEDIATE")
                self._tx_depth += 1
                try:
                    yield self._conn
                finally:
                    self._tx_depth -= 1
                if outermost:
                    self._conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if outermost:
                    self._rollback()
                raise StorageUnavailableError(f"SQLite write failed: {exc}") from exc
            except BaseException:
                if outermost:
                    self._rollback()
                raise

    def _rollback(self) -> None:
        if not self._conn.in_transaction:
            return
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            logger.error("sqlite_rollback_failed", error=str(exc))

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._ensure_open()
            try:
                yield self._conn
            except sqlite3.Error as exc:
                raise StorageUnavailableError(f"SQLite read failed: {exc}") from exc

    def _fetch_all(self, sql: str, params: Mapping[str, Any] | tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._reading() as conn:
            return conn.execute(sql, params).fetchall()

    def _fetch_one(
        self, sql: str, params: Mapping[str, Any] | tuple[Any, ...] = ()
    ) -> sqlite3.Row | None:
        with self._reading() as conn:
            row: sqlite3.Row | None = conn.execute(sql, params).fetchone()
            return row

    # ------------------------------------------------------------------
    # Channels and users
    # ------------------------------------------------------------------

    @staticmethod
    def _channel_params(channel: Channel, now: str) -> dict[str, Any]:
        return {
            "id": channel.id,
            "name": channel.name,
            "is_private": int(channel.is_private),
            "topic": channel.topic,
            "purpose": channel.purpose,
            "is_im": int(channel.is_im),
            "is_mpim": int(channel.is_mpim),
            "is_archived": int(channel.is_archived),
            "user_id": channel.user_id,
            "now": now,
        }

    @staticmethod
    def _user_params(user: User, now: str) -> dict[str, Any]:
        return {
            "id": user.id,
            "name": user.name,
            "display_name": user.display_name,
            "real_name": user.real_name,
            "is_bot": int(user.is_bot),
            "deleted": int(user.deleted),
            "title": user.title,
            "email": user.email,
            "timezone": user.timezone,
            "status_text": user.status_text,
            "status_emoji": user.status_emoji,
            "now": now,
        }

    def upsert_channel(self, channel: Channel) -> None:
        self.upsert_channels([channel])

    def upsert_channels(self, channels: Iterable[Channel]) -> int:
        """Upsert channels in one transaction.

        Returns:
            Number of channels written
        """
        now = _utc_now_iso()
        params = [self._channel_params(channel, now) for channel in channels]
        if not params:
            return 0
        with self._transaction() as conn:
            conn.executemany(_UPSERT_CHANNEL_SQL, params)
        return len(params)

    def upsert_user(self, user: User) -> None:
        self.upsert_users([user])

    def upsert_users(self, users: Iterable[User]) -> int:
        """Upsert users in one transaction.

        Returns:
            Number of users written
        """
        now = _utc_now_iso()
        params = [self._user_params(user, now) for user in users]
        if not params:
            return 0
        with self._transaction() as conn:
            conn.executemany(_UPSERT_USER_SQL, params)
        return len(params)

    def get_channel(self, channel_id: str) -> Channel | None:
        row = self._fetch_one("SELECT * FROM channels WHERE id = ?", (channel_id,))
        return self._row_to_channel(row) if row else None

    def list_channels(self) -> list[Channel]:
        rows = self._fetch_all("SELECT * FROM channels ORDER BY name IS NULL, name, id")
        return [self._row_to_channel(row) for row in rows]

    def get_user(self, user_id: str) -> User | None:
        row = self._fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))
        return self._row_to_user(row) if row else None

    def has_user(self, user_id: str) -> bool:
        return self._fetch_one("SELECT 1 FROM users WHERE id = ?", (user_id,)) is not None

    def list_users(self, *, include_deleted: bool = False) -> list[User]:
        sql = "SELECT * FROM users"
        if not include_deleted:
            sql += " WHERE deleted = 0"
        rows = self._fetch_all(sql + " ORDER BY name, id")
        return [self._row_to_user(row) for row in rows]

    def resolve_channel_id(self, ref: str) -> str | None:
        """Resolve a channel id, ``name`` or ``#name`` to a stored channel id."""
        ref = ref.strip().lstrip("#")
        if not ref:
            return None
        row = self._fetch_one(
            "SELECT id FROM channels WHERE id = :ref OR lower(name) = lower(:ref) "
            "ORDER BY id = :ref DESC LIMIT 1",
            {"ref": ref},
        )
        return str(row["id"]) if row else None

    def resolve_user_id(self, ref: str) -> str | None:
        """Resolve a user id, handle, display name or real name to a stored user id."""
        ref = ref.strip().lstrip("@")
        if not ref:
            return None
        row = self._fetch_one(
            """
            SELECT id FROM users
            WHERE id = :ref
               OR lower(name) = lower(:ref)
               OR lower(display_name) = lower(:ref)
               OR lower(real_name) = lower(:ref)
            ORDER BY id = :ref DESC, deleted ASC
            LIMIT 1
            """,
            {"ref": ref},
        )
        return str(row["id"]) if row else None

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    @staticmethod
    def _message_params(message: Message, now: str) -> dict[str, Any]:
        return {
            "channel_id": message.channel_id,
            "ts": message.ts,
            "user_id": message.user_id,
            "text": message.text,
            "thread_ts": message.thread_ts,
            "reply_count": message.reply_count,
            "subtype": message.subtype,
            "reactions": _dump_json(message.reactions),
            "attachments": _dump_json(message.attachments),
            "files": _dump_json(message.files),
            "blocks": _dump_json(message.blocks),
            "permalink": message.permalink,
            "edited_ts": message.edited_ts,
            "raw": _dump_json(message.raw),
            "now": now,
        }

    def upsert_message(self, message: Message) -> bool:
        """Insert or replace one message keyed by (channel_id, ts).

        Returns:
            True if the stored row changed
        """
        with self._transaction() as conn:
            cursor = conn.execute(_UPSERT_MESSAGE_SQL, self._message_params(message, _utc_now_iso()))
            return cursor.rowcount > 0

    def upsert_messages(self, messages: Iterable[Message]) -> int:
        """Upsert a batch of messages in one transaction.

        Re-upserting an identical message leaves the row and its index entry
        untouched. A failure anywhere in the batch rolls the whole batch back.

        Returns:
            Number of messages written
        """
        now = _utc_now_iso()
        params = [self._message_params(message, now) for message in messages]
        if not params:
            return 0
        with self._transaction() as conn:
            conn.executemany(_UPSERT_MESSAGE_SQL, params)
        return len(params)

    def delete_message(self, channel_id: str, ts: str) -> bool:
        """Delete a message and its index entry.

        Returns:
            True if a row was removed
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM messages WHERE channel_id = ? AND ts = ?", (channel_id, ts)
            )
            return cursor.rowcount > 0

    def get_message(self, channel_id: str, ts: str) -> Message | None:
        row = self._fetch_one(
            "SELECT * FROM messages WHERE channel_id = ? AND ts = ?", (channel_id, ts)
        )
        return self._row_to_message(row) if row else None

    def count_messages(self, channel_id: str | None = None) -> int:
        if channel_id is None:
            row = self._fetch_one("SELECT COUNT(*) AS n FROM messages")
        else:
            row = self._fetch_one(
                "SELECT COUNT(*) AS n FROM messages WHERE channel_id = ?", (channel_id,)
            )
        return int(row["n"]) if row else 0

    def count_index_entries(self) -> int:
        row = self._fetch_one("SELECT COUNT(*) AS n FROM messages_fts")
        return int(row["n"]) if row else 0

    # ------------------------------------------------------------------
    # Cursors
    # ------------------------------------------------------------------

    def _read_cursor(self, table: str, channel_id: str) -> str | None:
        if table not in _CURSOR_TABLES:
            raise ValueError(f"Unknown cursor table: {table}")
        row = self._fetch_one(
            f"SELECT latest_ts FROM {table} WHERE channel_id = ?", (channel_id,)
        )
        return str(row["latest_ts"]) if row else None

    def _advance_cursor(self, table: str, channel_id: str, ts: str) -> str:
        """Store ``max(existing, ts)`` and return the resulting cursor."""
        if table not in _CURSOR_TABLES:
            raise ValueError(f"Unknown cursor table: {table}")
        ts_key(ts)

        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT latest_ts FROM {table} WHERE channel_id = ?", (channel_id,)
            ).fetchone()
            current = str(row["latest_ts"]) if row else None
            if current is not None and not is_newer(ts, current):
                return current
            conn.execute(
                f"""
                INSERT INTO {table} (channel_id, latest_ts, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(channel_id) DO UPDATE SET
                    latest_ts = excluded.latest_ts,
                    updated_at = excluded.updated_at
                """,
                (channel_id, ts, _utc_now_iso()),
            )
        logger.debug("cursor_advanced", table=table, channel_id=channel_id, ts=ts, previous=current)
        return ts

    def get_import_cursor(self, channel_id: str) -> str | None:
        return self._read_cursor("import_cursors", channel_id)

    def set_import_cursor(self, channel_id: str, ts: str) -> str:
        """Advance the import cursor; never moves it backwards."""
        return self._advance_cursor("import_cursors", channel_id, ts)

    def get_poll_cursor(self, channel_id: str) -> str | None:
        return self._read_cursor("poll_cursors", channel_id)

    def set_poll_cursor(self, channel_id: str, ts: str) -> str:
        """Advance the poll cursor; never moves it backwards."""
        return self._advance_cursor("poll_cursors", channel_id, ts)

    def is_metadata_fresh(
        self, channel_id: str, kind: MetadataKind | str, ttl_seconds: float
    ) -> bool:
        """True when ``kind`` was synced for ``channel_id`` within the TTL."""
        row = self._fetch_one(
            "SELECT synced_at FROM metadata_cursors WHERE channel_id = ? AND kind = ?",
            (channel_id, MetadataKind(kind).value),
        )
        if row is None:
            return False
        return self._clock() - float(row["synced_at"]) < ttl_seconds

    def touch_metadata_cursor(self, channel_id: str, kind: MetadataKind | str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO metadata_cursors (channel_id, kind, synced_at)
                VALUES (?, ?, ?)
                ON CONFLICT(channel_id, kind) DO UPDATE SET synced_at = excluded.synced_at
                """,
                (channel_id, MetadataKind(kind).value, self._clock()),
            )

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def replace_pins(self, channel_id: str, items: list[dict[str, Any]]) -> int:
        """Replace the stored pin set of one channel."""
        rows = []
        for index, item in enumerate(items):
            message = item.get("message") or {}
            file_info = item.get("file") or {}
            message_ts = message.get("ts")
            file_id = file_info.get("id")
            if message_ts:
                item_key = f"message:{message_ts}"
            elif file_id:
                item_key = f"file:{file_id}"
            else:
                item_key = f"{item.get('type', 'item')}:{index}"
            rows.append(
                (
                    channel_id,
                    item_key,
                    message_ts,
                    file_id,
                    item.get("created_by"),
                    item.get("created"),
                    _dump_json(item),
                )
            )

        with self._transaction() as conn:
            conn.execute("DELETE FROM pins WHERE channel_id = ?", (channel_id,))
            conn.executemany(
                """
                INSERT OR REPLACE INTO pins
                    (channel_id, item_key, message_ts, file_id, pinned_by, pinned_at, payload)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        return len(rows)

    def replace_bookmarks(self, channel_id: str, bookmarks: list[dict[str, Any]]) -> int:
        """Replace the stored bookmark set of one channel."""
        now = _utc_now_iso()
        rows = [
            (
                str(bookmark["id"]),
                channel_id,
                bookmark.get("title"),
                bookmark.get("link"),
                bookmark.get("emoji"),
                _dump_json(bookmark),
                now,
            )
            for bookmark in bookmarks
            if bookmark.get("id")
        ]
        with self._transaction() as conn:
            conn.execute("DELETE FROM bookmarks WHERE channel_id = ?", (channel_id,))
            conn.executemany(
                """
                INSERT OR REPLACE INTO bookmarks
                    (id, channel_id, title, link, emoji, payload, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        return len(rows)

    def upsert_custom_emoji(self, emoji: Mapping[str, str]) -> int:
        """Upsert the workspace emoji map (``name -> url`` or ``alias:<name>``)."""
        now = _utc_now_iso()
        rows = []
        for name, url in emoji.items():
            alias_for = url[len("alias:") :] if url.startswith("alias:") else None
            rows.append((name, None if alias_for else url, alias_for, now))
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO custom_emoji (name, url, alias_for, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    url = excluded.url,
                    alias_for = excluded.alias_for,
                    updated_at = excluded.updated_at
                """,
                rows,
            )
        return len(rows)

    def upsert_user_groups(self, groups: list[dict[str, Any]]) -> int:
        now = _utc_now_iso()
        rows = [
            (
                str(group["id"]),
                group.get("handle"),
                group.get("name"),
                group.get("description"),
                _dump_json(group.get("users") or []),
                _dump_json(group),
                now,
            )
            for group in groups
            if group.get("id")
        ]
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO user_groups
                    (id, handle, name, description, user_ids, payload, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    handle = excluded.handle,
                    name = excluded.name,
                    description = excluded.description,
                    user_ids = excluded.user_ids,
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                rows,
            )
        return len(rows)

    def upsert_files(self, files: list[dict[str, Any]]) -> int:
        now = _utc_now_iso()
        rows = [
            (
                str(file_info["id"]),
                file_info.get("name"),
                file_info.get("title"),
                file_info.get("filetype"),
                file_info.get("user"),
                file_info.get("created"),
                file_info.get("permalink"),
                _dump_json(file_info.get("channels") or []),
                _dump_json(file_info),
                now,
            )
            for file_info in files
            if file_info.get("id")
        ]
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO files
                    (id, name, title, filetype, user_id, created, permalink,
                     channel_ids, payload, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    title = excluded.title,
                    filetype = excluded.filetype,
                    user_id = excluded.user_id,
                    created = excluded.created,
                    permalink = excluded.permalink,
                    channel_ids = excluded.channel_ids,
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                rows,
            )
        return len(rows)

    def upsert_stars(self, items: list[dict[str, Any]]) -> int:
        now = _utc_now_iso()
        rows = []
        for item in items:
            item_type = str(item.get("type") or "unknown")
            channel_id = item.get("channel")
            message_ts = (item.get("message") or {}).get("ts")
            file_id = (item.get("file") or {}).get("id")
            if item_type == "message" and message_ts:
                item_key = f"message:{channel_id}:{message_ts}"
            elif file_id:
                item_key = f"file:{file_id}"
            elif channel_id:
                item_key = f"{item_type}:{channel_id}"
            else:
                continue
            rows.append(
                (item_key, item_type, channel_id, message_ts, file_id, _dump_json(item), now)
            )
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO stars
                    (item_key, item_type, channel_id, message_ts, file_id, payload, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(item_key) DO UPDATE SET
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                rows,
            )
        return len(rows)

    def count_rows(self, table: str) -> int:
        """Row count of a metadata table."""
        if table not in {"pins", "bookmarks", "custom_emoji", "user_groups", "files", "stars"}:
            raise ValueError(f"Unknown metadata table: {table}")
        row = self._fetch_one(f"SELECT COUNT(*) AS n FROM {table}")
        return int(row["n"]) if row else 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def search_messages(
        self,
        query: str,
        *,
        channel_id: str | None = None,
        user_id: str | None = None,
        before: str | None = None,
        after: str | None = None,
        limit: int = 25,
    ) -> list[SearchHit]:
        """Full-text search ranked by bm25 (best first).

        Raises:
            ValueError: If ``query`` is not a valid FTS5 expression
        """
        clauses = ["messages_fts MATCH :query"]
        params: dict[str, Any] = {"query": query, "limit": limit}
        if channel_id:
            clauses.append("m.channel_id = :channel_id")
            params["channel_id"] = channel_id
        if user_id:
            clauses.append("m.user_id = :user_id")
            params["user_id"] = user_id
        if before:
            clauses.append("CAST(m.ts AS REAL) < CAST(:before AS REAL)")
            params["before"] = before
        if after:
            clauses.append("CAST(m.ts AS REAL) > CAST(:after AS REAL)")
            params["after"] = after

        sql = f"""
            SELECT m.channel_id, m.ts, m.user_id, m.text, m.thread_ts,
                   m.reply_count, m.permalink,
                   {_USER_NAME_COLUMN} AS user_name,
                   c.name AS channel_name,
                   bm25(messages_fts) AS score
            FROM messages_fts
            JOIN messages m ON m.id = messages_fts.rowid
            LEFT JOIN users u ON u.id = m.user_id
            LEFT JOIN channels c ON c.id = m.channel_id
            WHERE {" AND ".join(clauses)}
            ORDER BY score
            LIMIT :limit
        """
        with self._lock:
            self._ensure_open()
            try:
                rows = self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                if _is_fts_query_error(exc):
                    raise ValueError(f"Invalid search query {query!r}: {exc}") from exc
                raise StorageUnavailableError(f"SQLite read failed: {exc}") from exc

        return [
            SearchHit(
                channel_id=row["channel_id"],
                ts=row["ts"],
                user_id=row["user_id"],
                text=row["text"] or "",
                thread_ts=row["thread_ts"],
                reply_count=row["reply_count"] or 0,
                permalink=row["permalink"],
                user_name=row["user_name"],
                channel_name=row["channel_name"],
                rank=float(row["score"]),
            )
            for row in rows
        ]

    _CONTEXT_SELECT: Final[str] = f"""
        SELECT m.channel_id, m.ts, m.user_id, m.text, m.thread_ts, m.reply_count,
               {_USER_NAME_COLUMN} AS user_name,
               c.name AS channel_name
        FROM messages m
        LEFT JOIN users u ON u.id = m.user_id
        LEFT JOIN channels c ON c.id = m.channel_id
    """

    def get_context(self, channel_id: str, ts: str, window: int = 6) -> list[ContextMessage]:
        """Top-level messages around ``ts``: ``window // 2`` on each side plus the anchor.

        Thread replies are excluded from the neighbours; the anchor itself is
        always included when stored.
        """
        half = max(window // 2, 0)
        top_level = "(m.thread_ts IS NULL OR m.thread_ts = m.ts)"
        before = self._fetch_all(
            self._CONTEXT_SELECT
            + f" WHERE m.channel_id = ? AND m.ts < ? AND {top_level} ORDER BY m.ts DESC LIMIT ?",
            (channel_id, ts, half),
        )
        anchor = self._fetch_all(
            self._CONTEXT_SELECT + " WHERE m.channel_id = ? AND m.ts = ?",
            (channel_id, ts),
        )
        after = self._fetch_all(
            self._CONTEXT_SELECT
            + f" WHERE m.channel_id = ? AND m.ts > ? AND {top_level} ORDER BY m.ts ASC LIMIT ?",
            (channel_id, ts, half),
        )
        rows = list(reversed(before)) + anchor + after
        return [self._row_to_context(row) for row in rows]

    def get_thread(self, channel_id: str, thread_ts: str) -> list[ContextMessage]:
        """Thread root and replies in chronological order."""
        rows = self._fetch_all(
            self._CONTEXT_SELECT
            + " WHERE m.channel_id = ? AND (m.thread_ts = ? OR m.ts = ?) ORDER BY m.ts ASC",
            (channel_id, thread_ts, thread_ts),
        )
        return [self._row_to_context(row) for row in rows]

    def get_recent(self, channel_id: str, limit: int = 50) -> list[ContextMessage]:
        """Newest messages of a channel, newest first."""
        rows = self._fetch_all(
            self._CONTEXT_SELECT + " WHERE m.channel_id = ? ORDER BY m.ts DESC LIMIT ?",
            (channel_id, limit),
        )
        return [self._row_to_context(row) for row in rows]

    def get_messages_by_user(
        self, user_id: str, *, channel_id: str | None = None, limit: int = 50
    ) -> list[ContextMessage]:
        """Messages authored by ``user_id``, newest first."""
        sql = self._CONTEXT_SELECT + " WHERE m.user_id = ?"
        params: list[Any] = [user_id]
        if channel_id:
            sql += " AND m.channel_id = ?"
            params.append(channel_id)
        sql += " ORDER BY m.ts DESC LIMIT ?"
        params.append(limit)
        rows = self._fetch_all(sql, tuple(params))
        return [self._row_to_context(row) for row in rows]

    def get_stats(self) -> StoreStats:
        row = self._fetch_one(
            """
            SELECT
                (SELECT COUNT(*) FROM messages) AS messages,
                (SELECT COUNT(*) FROM channels) AS channels,
                (SELECT COUNT(*) FROM users) AS users,
                (SELECT COUNT(*) FROM (
                    SELECT DISTINCT channel_id, thread_ts FROM messages
                    WHERE thread_ts IS NOT NULL
                )) AS threads
            """
        )
        if row is None:
            return StoreStats(messages=0, channels=0, users=0, threads=0)
        return StoreStats(
            messages=row["messages"],
            channels=row["channels"],
            users=row["users"],
            threads=row["threads"],
        )

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_channel(row: sqlite3.Row) -> Channel:
        return Channel(
            id=row["id"],
            name=row["name"],
            is_private=bool(row["is_private"]),
            topic=row["topic"] or "",
            purpose=row["purpose"] or "",
            is_im=bool(row["is_im"]),
            is_mpim=bool(row["is_mpim"]),
            is_archived=bool(row["is_archived"]),
            user_id=row["user_id"],
        )

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            name=row["name"] or "",
            display_name=row["display_name"] or "",
            real_name=row["real_name"] or "",
            is_bot=bool(row["is_bot"]),
            deleted=bool(row["deleted"]),
            title=row["title"] or "",
            email=row["email"],
            timezone=row["timezone"],
            status_text=row["status_text"] or "",
            status_emoji=row["status_emoji"] or "",
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        return Message(
            channel_id=row["channel_id"],
            ts=row["ts"],
            user_id=row["user_id"],
            text=row["text"] or "",
            thread_ts=row["thread_ts"],
            reply_count=row["reply_count"] or 0,
            subtype=row["subtype"],
            reactions=_load_json(row["reactions"], []),
            attachments=_load_json(row["attachments"], []),
            files=_load_json(row["files"], []),
            blocks=_load_json(row["blocks"], []),
            permalink=row["permalink"],
            edited_ts=row["edited_ts"],
            raw=_load_json(row["raw"], {}),
        )

    @staticmethod
    def _row_to_context(row: sqlite3.Row) -> ContextMessage:
        return ContextMessage(
            channel_id=row["channel_id"],
            ts=row["ts"],
            user_id=row["user_id"],
            text=row["text"] or "",
            thread_ts=row["thread_ts"],
            reply_count=row["reply_count"] or 0,
            user_name=row["user_name"],
            channel_name=row["channel_name"],
        )


__all__ = ["MEMORY_DB", "SQLiteStore", "WORKSPACE_SCOPE"]
