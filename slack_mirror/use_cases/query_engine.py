"""Read-only query layer over the mirrored workspace.

All lookups run against the local store; nothing here calls Slack.
"""

from __future__ import annotations

import re
from typing import Final

from slack_mirror.adapters.sqlite_store import SQLiteStore
from slack_mirror.config.logging_config import get_logger
from slack_mirror.domain.models import (
    AskResult,
    Channel,
    ContextBlock,
    ContextMessage,
    SearchHit,
    StoreStats,
    User,
)

logger = get_logger(__name__)

DEFAULT_SEARCH_LIMIT: Final[int] = 25
DEFAULT_TOP_K: Final[int] = 5
DEFAULT_CONTEXT_WINDOW: Final[int] = 6
DEFAULT_RECENT_LIMIT: Final[int] = 50

_TERM_PATTERN: Final[re.Pattern[str]] = re.compile(r"\w+", re.UNICODE)
_STOPWORDS: Final[frozenset[str]] = frozenset(
    {
        "a", "about", "an", "and", "are", "as", "at", "be", "did", "do", "does",
        "for", "from", "how", "i", "in", "is", "it", "of", "on", "or", "the",
        "to", "was", "we", "what", "when", "where", "which", "who", "why", "with",
    }
)


def to_fts_query(text: str) -> str:
    """Turn free text into an OR of quoted terms that FTS5 always accepts.

    Stopwords are dropped unless nothing else remains.

    Example:
        >>> to_fts_query("What broke the deploy pipeline?")
        '"broke" OR "deploy" OR "pipeline"'
    """
    terms: list[str] = []
    seen: set[str] = set()
    for term in _TERM_PATTERN.findall(text.lower()):
        if term not in seen:
            seen.add(term)
            terms.append(term)

    meaningful = [term for term in terms if term not in _STOPWORDS]
    selected = meaningful or terms
    return " OR ".join(f'"{term}"' for term in selected)


class QueryEngine:
    """Search, context and browsing over the store."""

    def __init__(self, store: SQLiteStore) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_channel(self, channel: str | None) -> str | None:
        """Channel id for an id, ``name`` or ``#name``; unknown refs pass through."""
        if not channel:
            return None
        resolved = self._store.resolve_channel_id(channel)
        return resolved or channel.strip().lstrip("#")

    def resolve_user(self, user: str | None) -> str | None:
        """User id for an id, handle, display or real name; unknown refs pass through."""
        if not user:
            return None
        resolved = self._store.resolve_user_id(user)
        return resolved or user.strip().lstrip("@")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def search(
        self,
        text: str,
        *,
        channel: str | None = None,
        user: str | None = None,
        before: str | None = None,
        after: str | None = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
        raw: bool = False,
    ) -> list[SearchHit]:
        """Ranked full-text search.

        Args:
            text: Natural-language text, or an FTS5 expression when ``raw``
            channel: Restrict to one channel (id or name)
            user: Restrict to one author (id or name)
            before: Only messages with ``ts`` below this value
            after: Only messages with ``ts`` above this value
            limit: Maximum number of hits
            raw: Pass ``text`` to FTS5 unchanged

        Raises:
            ValueError: If a raw query is not valid FTS5 syntax
        """
        query = text if raw else to_fts_query(text)
        if not query.strip():
            return []
        hits = self._store.search_messages(
            query,
            channel_id=self.resolve_channel(channel),
            user_id=self.resolve_user(user),
            before=before,
            after=after,
            limit=limit,
        )
        logger.debug("search_completed", query=query, hits=len(hits))
        return hits

    def ask(
        self,
        question: str,
        *,
        top_k: int = DEFAULT_TOP_K,
        context_window: int = DEFAULT_CONTEXT_WINDOW,
        channel: str | None = None,
        user: str | None = None,
    ) -> AskResult:
        """Top hits for a question plus the conversation around each.

        Each distinct ``(channel, thread_ts or ts)`` is expanded once: hits
        inside a thread get the whole thread, top-level hits get a window of
        neighbouring messages.
        """
        hits = self.search(question, channel=channel, user=user, limit=top_k)

        blocks: list[ContextBlock] = []
        expanded: set[tuple[str, str]] = set()
        for hit in hits:
            key = hit.context_key
            if key in expanded:
                continue
            expanded.add(key)

            if hit.thread_ts:
                blocks.append(
                    ContextBlock(
                        kind="thread",
                        channel_id=hit.channel_id,
                        thread_key=key[1],
                        channel_name=hit.channel_name,
                        messages=self._store.get_thread(hit.channel_id, hit.thread_ts),
                    )
                )
            else:
                blocks.append(
                    ContextBlock(
                        kind="context",
                        channel_id=hit.channel_id,
                        thread_key=key[1],
                        channel_name=hit.channel_name,
                        messages=self._store.get_context(
                            hit.channel_id, hit.ts, context_window
                        ),
                    )
                )

        logger.info("ask_completed", hits=len(hits), context_blocks=len(blocks))
        return AskResult(query=question, hits=hits, context=blocks, stats=self.stats())

    def context(
        self, channel: str, ts: str, window: int = DEFAULT_CONTEXT_WINDOW
    ) -> list[ContextMessage]:
        channel_id = self.resolve_channel(channel)
        if channel_id is None:
            return []
        return self._store.get_context(channel_id, ts, window)

    def thread(self, channel: str, thread_ts: str) -> list[ContextMessage]:
        channel_id = self.resolve_channel(channel)
        if channel_id is None:
            return []
        return self._store.get_thread(channel_id, thread_ts)

    def recent(self, channel: str, limit: int = DEFAULT_RECENT_LIMIT) -> list[ContextMessage]:
        channel_id = self.resolve_channel(channel)
        if channel_id is None:
            return []
        return self._store.get_recent(channel_id, limit)

    def user_messages(
        self,
        user: str,
        *,
        channel: str | None = None,
        limit: int = DEFAULT_RECENT_LIMIT,
    ) -> list[ContextMessage]:
        user_id = self.resolve_user(user)
        if user_id is None:
            return []
        return self._store.get_messages_by_user(
            user_id, channel_id=self.resolve_channel(channel), limit=limit
        )

    def stats(self) -> StoreStats:
        return self._store.get_stats()

    def channels(self) -> list[Channel]:
        return self._store.list_channels()

    def users(self) -> list[User]:
        return self._store.list_users()


__all__ = ["QueryEngine", "to_fts_query"]
