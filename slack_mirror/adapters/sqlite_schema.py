"""SQLite schema for the local Slack mirror.

The ``messages_fts`` index is maintained exclusively by the triggers below,
inside the same transaction as the row change that fired them:

- insert on ``messages`` adds exactly one index row (same rowid)
- update on ``messages`` rewrites that index row
- delete on ``messages`` removes it
- insert/rename of a user or channel refreshes the denormalized names

``messages.id`` is an explicit INTEGER PRIMARY KEY so the rowid shared with
the index survives VACUUM.
"""

from typing import Final

SCHEMA_VERSION: Final[int] = 1

USER_NAME_SQL: Final[str] = (
    "COALESCE((SELECT COALESCE(NULLIF(u.display_name, ''), NULLIF(u.real_name, ''), u.name)"
    " FROM users u WHERE u.id = {ref}), '')"
)
CHANNEL_NAME_SQL: Final[str] = (
    "COALESCE((SELECT c.name FROM channels c WHERE c.id = {ref}), '')"
)

TABLES_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS channels (
    id            TEXT PRIMARY KEY,
    name          TEXT,
    is_private    INTEGER NOT NULL DEFAULT 0,
    topic         TEXT NOT NULL DEFAULT '',
    purpose       TEXT NOT NULL DEFAULT '',
    is_im         INTEGER NOT NULL DEFAULT 0,
    is_mpim       INTEGER NOT NULL DEFAULT 0,
    is_archived   INTEGER NOT NULL DEFAULT 0,
    user_id       TEXT,
    updated_at    TEXT
);

CREATE TABLE IF NOT EXISTS users (
    id            TEXT PRIMARY KEY,
    name          TEXT NOT NULL DEFAULT '',
    display_name  TEXT NOT NULL DEFAULT '',
    real_name     TEXT NOT NULL DEFAULT '',
    is_bot        INTEGER NOT NULL DEFAULT 0,
    deleted       INTEGER NOT NULL DEFAULT 0,
    title         TEXT NOT NULL DEFAULT '',
    email         TEXT,
    timezone      TEXT,
    status_text   TEXT NOT NULL DEFAULT '',
    status_emoji  TEXT NOT NULL DEFAULT '',
    updated_at    TEXT
);

CREATE TABLE IF NOT EXISTS messages (
    id            INTEGER PRIMARY KEY,
    channel_id    TEXT NOT NULL,
    ts            TEXT NOT NULL,
    user_id       TEXT,
    text          TEXT NOT NULL DEFAULT '',
    thread_ts     TEXT,
    reply_count   INTEGER NOT NULL DEFAULT 0,
    subtype       TEXT,
    reactions     TEXT,
    attachments   TEXT,
    files         TEXT,
    blocks        TEXT,
    permalink     TEXT,
    edited_ts     TEXT,
    raw           TEXT,
    imported_at   TEXT,
    updated_at    TEXT,
    UNIQUE (channel_id, ts)
);

CREATE INDEX IF NOT EXISTS idx_messages_thread
    ON messages(channel_id, thread_ts) WHERE thread_ts IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_messages_user ON messages(user_id);
CREATE INDEX IF NOT EXISTS idx_messages_ts ON messages(ts);

CREATE TABLE IF NOT EXISTS import_cursors (
    channel_id    TEXT PRIMARY KEY,
    latest_ts     TEXT NOT NULL,
    updated_at    TEXT
);

CREATE TABLE IF NOT EXISTS poll_cursors (
    channel_id    TEXT PRIMARY KEY,
    latest_ts     TEXT NOT NULL,
    updated_at    TEXT
);

CREATE TABLE IF NOT EXISTS metadata_cursors (
    channel_id    TEXT NOT NULL,
    kind          TEXT NOT NULL,
    synced_at     REAL NOT NULL,
    PRIMARY KEY (channel_id, kind)
);

CREATE TABLE IF NOT EXISTS pins (
    channel_id    TEXT NOT NULL,
    item_key      TEXT NOT NULL,
    message_ts    TEXT,
    file_id       TEXT,
    pinned_by     TEXT,
    pinned_at     INTEGER,
    payload       TEXT,
    PRIMARY KEY (channel_id, item_key)
);

CREATE TABLE IF NOT EXISTS bookmarks (
    id            TEXT PRIMARY KEY,
    channel_id    TEXT NOT NULL,
    title         TEXT,
    link          TEXT,
    emoji         TEXT,
    payload       TEXT,
    updated_at    TEXT
);
CREATE INDEX IF NOT EXISTS idx_bookmarks_channel ON bookmarks(channel_id);

CREATE TABLE IF NOT EXISTS custom_emoji (
    name          TEXT PRIMARY KEY,
    url           TEXT,
    alias_for     TEXT,
    updated_at    TEXT
);

CREATE TABLE IF NOT EXISTS user_groups (
    id            TEXT PRIMARY KEY,
    handle        TEXT,
    name          TEXT,
    description   TEXT,
    user_ids      TEXT,
    payload       TEXT,
    updated_at    TEXT
);

CREATE TABLE IF NOT EXISTS files (
    id            TEXT PRIMARY KEY,
    name          TEXT,
    title         TEXT,
    filetype      TEXT,
    user_id       TEXT,
    created       INTEGER,
    permalink     TEXT,
    channel_ids   TEXT,
    payload       TEXT,
    updated_at    TEXT
);

CREATE TABLE IF NOT EXISTS stars (
    item_key      TEXT PRIMARY KEY,
    item_type     TEXT NOT NULL,
    channel_id    TEXT,
    message_ts    TEXT,
    file_id       TEXT,
    payload       TEXT,
    updated_at    TEXT
);
"""

FTS_SQL: Final[str] = """
CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
    text,
    user_name,
    channel_name,
    tokenize = 'porter unicode61'
);
"""

_MESSAGE_INDEX_VALUES: Final[str] = (
    "new.id, new.text, "
    + USER_NAME_SQL.format(ref="new.user_id")
    + ", "
    + CHANNEL_NAME_SQL.format(ref="new.channel_id")
)

TRIGGERS_SQL: Final[str] = f"""
CREATE TRIGGER IF NOT EXISTS messages_fts_insert AFTER INSERT ON messages BEGIN
    INSERT INTO messages_fts(rowid, text, user_name, channel_name)
    VALUES ({_MESSAGE_INDEX_VALUES});
END;

CREATE TRIGGER IF NOT EXISTS messages_fts_update AFTER UPDATE ON messages BEGIN
    DELETE FROM messages_fts WHERE rowid = old.id;
    INSERT INTO messages_fts(rowid, text, user_name, channel_name)
    VALUES ({_MESSAGE_INDEX_VALUES});
END;

CREATE TRIGGER IF NOT EXISTS messages_fts_delete AFTER DELETE ON messages BEGIN
    DELETE FROM messages_fts WHERE rowid = old.id;
END;

CREATE TRIGGER IF NOT EXISTS users_fts_insert AFTER INSERT ON users BEGIN
    UPDATE messages_fts SET user_name = {USER_NAME_SQL.format(ref="new.id")}
    WHERE rowid IN (SELECT id FROM messages WHERE user_id = new.id);
END;

CREATE TRIGGER IF NOT EXISTS users_fts_rename AFTER UPDATE OF name, display_name, real_name ON users
WHEN old.name IS NOT new.name
  OR old.display_name IS NOT new.display_name
  OR old.real_name IS NOT new.real_name
BEGIN
    UPDATE messages_fts SET user_name = {USER_NAME_SQL.format(ref="new.id")}
    WHERE rowid IN (SELECT id FROM messages WHERE user_id = new.id);
END;

CREATE TRIGGER IF NOT EXISTS channels_fts_insert AFTER INSERT ON channels BEGIN
    UPDATE messages_fts SET channel_name = COALESCE(new.name, '')
    WHERE rowid IN (SELECT id FROM messages WHERE channel_id = new.id);
END;

CREATE TRIGGER IF NOT EXISTS channels_fts_rename AFTER UPDATE OF name ON channels
WHEN old.name IS NOT new.name
BEGIN
    UPDATE messages_fts SET channel_name = COALESCE(new.name, '')
    WHERE rowid IN (SELECT id FROM messages WHERE channel_id = new.id);
END;
"""

__all__ = [
    "CHANNEL_NAME_SQL",
    "FTS_SQL",
    "SCHEMA_VERSION",
    "TABLES_SQL",
    "TRIGGERS_SQL",
    "USER_NAME_SQL",
]
