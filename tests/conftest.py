"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Generator
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
from slack_sdk.errors import SlackApiError
from slack_sdk.web.client import WebClient
from slack_sdk.web.slack_response import SlackResponse

from slack_mirror.adapters.sqlite_store import SQLiteStore
from slack_mirror.clients.slack_gateway import SlackGateway
from slack_mirror.domain.models import Channel, Message, User

SLACK_ENV_VARS = (
    "SLACK_BOT_TOKEN",
    "SLACK_APP_TOKEN",
    "SLACK_USER_TOKEN",
    "SLACK_COOKIE_TOKEN",
    "SLACK_COOKIE_D",
)


def slack_api_error(
    method: str,
    error: str,
    *,
    status_code: int = 200,
    headers: dict[str, str] | None = None,
) -> SlackApiError:
    """SlackApiError shaped like the one slack_sdk raises for ``method``."""
    response = SlackResponse(
        client=WebClient(token="xoxb-test"),
        http_verb="POST",
        api_url=f"https://slack.com/api/{method}",
        req_args={},
        data={"ok": False, "error": error},
        headers=headers or {},
        status_code=status_code,
    )
    return SlackApiError(message=error, response=response)


def raw_message(ts: str, text: str = "", **extra: Any) -> dict[str, Any]:
    message: dict[str, Any] = {"type": "message", "ts": ts, "user": "U1", "text": text or f"message {ts}"}
    message.update(extra)
    return message


class FakeClock:
    """Manually advanced clock; ``sleep`` advances it."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSlackClient:
    """In-memory stand-in for ``slack_sdk.WebClient``.

    History is paged newest first like the real API. Errors queued with
    ``fail`` are raised, in order, before a method answers normally.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.channels: list[dict[str, Any]] = []
        self.users: list[dict[str, Any]] = []
        self.history: dict[str, list[dict[str, Any]]] = {}
        self.replies: dict[tuple[str, str], list[dict[str, Any]]] = {}
        self.emoji: dict[str, str] = {}
        self.pins: dict[str, list[dict[str, Any]]] = {}
        self.bookmarks: dict[str, list[dict[str, Any]]] = {}
        self.usergroups: list[dict[str, Any]] = []
        self.files: list[dict[str, Any]] = []
        self.stars: list[dict[str, Any]] = []
        self._failures: dict[tuple[str, str | None], list[SlackApiError | Exception]] = {}

    # ------------------------------------------------------------------
    # Test setup helpers
    # ------------------------------------------------------------------

    def add_channel(self, channel_id: str, name: str, **extra: Any) -> None:
        channel = {"id": channel_id, "name": name, "is_member": True}
        channel.update(extra)
        self.channels.append(channel)

    def add_messages(self, channel_id: str, messages: list[dict[str, Any]]) -> None:
        self.history.setdefault(channel_id, []).extend(messages)

    def fail(
        self,
        method: str,
        error: str | Exception,
        *,
        channel: str | None = None,
        times: int = 1,
        status_code: int = 200,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Queue ``times`` failures for ``method`` (optionally for one channel)."""
        if isinstance(error, str):
            exc: SlackApiError | Exception = slack_api_error(
                method, error, status_code=status_code, headers=headers
            )
        else:
            exc = error
        self._failures.setdefault((method, channel), []).extend([exc] * times)

    def count(self, method: str, channel: str | None = None) -> int:
        return sum(
            1
            for name, params in self.calls
            if name == method and (channel is None or params.get("channel") == channel)
        )

    def _record(self, method: str, params: dict[str, Any]) -> None:
        self.calls.append((method, params))
        for key in ((method, params.get("channel")), (method, None)):
            queued = self._failures.get(key)
            if queued:
                raise queued.pop(0)

    # ------------------------------------------------------------------
    # Paging
    # ------------------------------------------------------------------

    @staticmethod
    def _in_range(
        ts: str, oldest: str | None, latest: str | None, inclusive: bool
    ) -> bool:
        value = Decimal(ts)
        if oldest is not None:
            bound = Decimal(oldest)
            if value < bound or (value == bound and not inclusive):
                return False
        if latest is not None:
            bound = Decimal(latest)
            if value > bound or (value == bound and not inclusive):
                return False
        return True

    @staticmethod
    def _page(
        items: list[dict[str, Any]], key: str, cursor: str | None, limit: int
    ) -> dict[str, Any]:
        start = int(cursor or 0)
        chunk = items[start : start + limit]
        next_cursor = str(start + limit) if start + limit < len(items) else ""
        return {
            "ok": True,
            key: chunk,
            "has_more": bool(next_cursor),
            "response_metadata": {"next_cursor": next_cursor},
        }

    # ------------------------------------------------------------------
    # Web API methods
    # ------------------------------------------------------------------

    def auth_test(self, **params: Any) -> dict[str, Any]:
        self._record("auth.test", params)
        return {"ok": True, "user_id": "UBOT", "team": "Test"}

    def conversations_list(self, **params: Any) -> dict[str, Any]:
        self._record("conversations.list", params)
        channels = self.channels
        if params.get("exclude_archived"):
            channels = [channel for channel in channels if not channel.get("is_archived")]
        return self._page(channels, "channels", params.get("cursor"), params.get("limit", 200))

    def users_list(self, **params: Any) -> dict[str, Any]:
        self._record("users.list", params)
        return self._page(self.users, "members", params.get("cursor"), params.get("limit", 200))

    def users_info(self, **params: Any) -> dict[str, Any]:
        self._record("users.info", params)
        for user in self.users:
            if user["id"] == params["user"]:
                return {"ok": True, "user": user}
        raise slack_api_error("users.info", "user_not_found")

    def conversations_info(self, **params: Any) -> dict[str, Any]:
        self._record("conversations.info", params)
        for channel in self.channels:
            if channel["id"] == params["channel"]:
                return {"ok": True, "channel": channel}
        raise slack_api_error("conversations.info", "channel_not_found")

    def conversations_join(self, **params: Any) -> dict[str, Any]:
        self._record("conversations.join", params)
        for channel in self.channels:
            if channel["id"] == params["channel"]:
                channel["is_member"] = True
        return {"ok": True}

    def conversations_history(self, **params: Any) -> dict[str, Any]:
        self._record("conversations.history", params)
        messages = [
            message
            for message in self.history.get(params["channel"], [])
            if self._in_range(
                message["ts"],
                params.get("oldest"),
                params.get("latest"),
                bool(params.get("inclusive")),
            )
        ]
        messages.sort(key=lambda message: Decimal(message["ts"]), reverse=True)
        return self._page(messages, "messages", params.get("cursor"), params.get("limit", 200))

    def conversations_replies(self, **params: Any) -> dict[str, Any]:
        self._record("conversations.replies", params)
        thread = self.replies.get((params["channel"], params["ts"]))
        if thread is None:
            raise slack_api_error("conversations.replies", "thread_not_found")
        messages = [
            message
            for message in thread
            if message["ts"] == params["ts"]
            or self._in_range(
                message["ts"],
                params.get("oldest"),
                params.get("latest"),
                bool(params.get("inclusive")),
            )
        ]
        messages.sort(key=lambda message: Decimal(message["ts"]))
        return self._page(messages, "messages", params.get("cursor"), params.get("limit", 200))

    def pins_list(self, **params: Any) -> dict[str, Any]:
        self._record("pins.list", params)
        return {"ok": True, "items": self.pins.get(params["channel"], [])}

    def bookmarks_list(self, **params: Any) -> dict[str, Any]:
        self._record("bookmarks.list", params)
        return {"ok": True, "bookmarks": self.bookmarks.get(params["channel_id"], [])}

    def emoji_list(self, **params: Any) -> dict[str, Any]:
        self._record("emoji.list", params)
        return {"ok": True, "emoji": self.emoji}

    def usergroups_list(self, **params: Any) -> dict[str, Any]:
        self._record("usergroups.list", params)
        return {"ok": True, "usergroups": self.usergroups}

    def files_list(self, **params: Any) -> dict[str, Any]:
        self._record("files.list", params)
        count = params.get("count", 100)
        page = params.get("page", 1)
        pages = max((len(self.files) + count - 1) // count, 1)
        start = (page - 1) * count
        return {
            "ok": True,
            "files": self.files[start : start + count],
            "paging": {"count": count, "page": page, "pages": pages, "total": len(self.files)},
        }

    def stars_list(self, **params: Any) -> dict[str, Any]:
        self._record("stars.list", params)
        return self._page(self.stars, "items", params.get("cursor"), params.get("limit", 200))


@pytest.fixture(autouse=True)
def _isolated_slack_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer credentials out of every test."""
    for name in SLACK_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def store(tmp_path: Path) -> Generator[SQLiteStore, None, None]:
    """Provide a store backed by a temporary database file."""
    sqlite_store = SQLiteStore(str(tmp_path / "mirror.db"))
    try:
        yield sqlite_store
    finally:
        sqlite_store.close()


@pytest.fixture
def fake_client() -> FakeSlackClient:
    return FakeSlackClient()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def gateway(fake_client: FakeSlackClient, sleeps: list[float]) -> SlackGateway:
    """Gateway over the fake client with no request spacing and recorded sleeps."""
    return SlackGateway(
        client=fake_client,
        rate_limiter=None,
        page_size=200,
        sleep=sleeps.append,
    )


@pytest.fixture
def sample_channel() -> Channel:
    return Channel(id="C100", name="general", topic="Company-wide", is_member=True)


@pytest.fixture
def sample_user() -> User:
    return User(id="U1", name="alice", display_name="Alice", real_name="Alice Liddell")


def make_message(channel_id: str, ts: str, text: str, **extra: Any) -> Message:
    """Helper to create a stored message."""
    fields: dict[str, Any] = {"channel_id": channel_id, "ts": ts, "user_id": "U1", "text": text}
    fields.update(extra)
    return Message(**fields)
