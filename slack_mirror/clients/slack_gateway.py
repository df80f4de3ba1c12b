"""Slack Web API gateway.

The only module that talks to Slack over HTTP. Every request:

- waits for a permit from the credential's shared RateLimiter
- is retried in place after every rate-limit response (Retry-After honoured)
  until it succeeds or the stop signal is set
- has its failure mapped onto the domain exception taxonomy
"""

from __future__ import annotations

import time
from collections.abc import Callable
from http.client import HTTPException
from typing import Any, Final, cast

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError, SlackClientError

from slack_mirror.clients.pages import SlackPage
from slack_mirror.config.logging_config import get_logger
from slack_mirror.config.settings import Settings
from slack_mirror.domain.exceptions import (
    AuthInvalidError,
    ChannelUnavailableError,
    RateLimitError,
    SlackAPIError,
    SlackMirrorError,
    TransientSlackError,
)
from slack_mirror.domain.models import AuthMode, SlackCredentials
from slack_mirror.observability.metrics import (
    RATE_LIMIT_WAITS_TOTAL,
    SLACK_API_CALLS_TOTAL,
)
from slack_mirror.services.concurrency import StopSignal
from slack_mirror.services.rate_limiter import RateLimiter

logger = get_logger(__name__)

SleepCallable = Callable[[float], None]

DEFAULT_PAGE_SIZE: Final[int] = 200
DEFAULT_TIMEOUT_SECONDS: Final[int] = 30
DEFAULT_RETRY_AFTER_SECONDS: Final[float] = 10.0
HTTP_STATUS_TOO_MANY_REQUESTS: Final[int] = 429
HTTP_STATUS_SERVER_ERROR: Final[int] = 500

CHANNEL_UNAVAILABLE_ERRORS: Final[frozenset[str]] = frozenset(
    {
        "not_in_channel",
        "channel_not_found",
        "thread_not_found",
        "is_archived",
        "missing_scope",
        "access_denied",
        "method_not_supported_for_channel_type",
        "restricted_action",
    }
)
AUTH_INVALID_ERRORS: Final[frozenset[str]] = frozenset(
    {
        "invalid_auth",
        "not_authed",
        "token_revoked",
        "token_expired",
        "account_inactive",
        "no_permission",
        "org_login_required",
    }
)
TRANSIENT_ERRORS: Final[frozenset[str]] = frozenset(
    {
        "internal_error",
        "fatal_error",
        "service_unavailable",
        "request_timeout",
    }
)


def _response_data(response: Any) -> dict[str, Any]:
    if hasattr(response, "data"):
        return cast(dict[str, Any], response.data)
    return cast(dict[str, Any], response)


def _next_cursor(data: dict[str, Any]) -> str | None:
    metadata = data.get("response_metadata")
    if not isinstance(metadata, dict):
        return None
    cursor = metadata.get("next_cursor")
    return str(cursor) if cursor else None


def retry_after_seconds(error: SlackApiError) -> float | None:
    """Retry-After header of a rate-limit response, in seconds."""
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None) or {}
    raw_value = headers.get("Retry-After") or headers.get("retry-after")
    if raw_value is None:
        return None
    if isinstance(raw_value, list):
        raw_value = raw_value[0] if raw_value else None
    try:
        return max(float(raw_value), 0.0)
    except (TypeError, ValueError):
        return None


def classify_slack_error(error: SlackApiError, method: str) -> SlackMirrorError:
    """Map a Slack API error response onto the domain taxonomy."""
    response = getattr(error, "response", None)
    status_code = getattr(response, "status_code", None)
    error_code: str | None = None
    if response is not None:
        try:
            error_code = response.get("error")
        except (AttributeError, TypeError):
            error_code = None

    message = f"{method} failed: {error_code or error}"

    if error_code == "ratelimited" or status_code == HTTP_STATUS_TOO_MANY_REQUESTS:
        return RateLimitError(retry_after=retry_after_seconds(error))
    if error_code in AUTH_INVALID_ERRORS:
        return AuthInvalidError(message, error_code=error_code)
    if error_code in CHANNEL_UNAVAILABLE_ERRORS:
        return ChannelUnavailableError(message, error_code=error_code)
    if error_code in TRANSIENT_ERRORS or (
        isinstance(status_code, int) and status_code >= HTTP_STATUS_SERVER_ERROR
    ):
        return TransientSlackError(message)
    return SlackAPIError(message, error_code=error_code)


def _outcome_label(error: SlackMirrorError) -> str:
    if isinstance(error, RateLimitError):
        return "rate_limited"
    if isinstance(error, AuthInvalidError):
        return "auth_invalid"
    if isinstance(error, ChannelUnavailableError):
        return "unavailable"
    if isinstance(error, TransientSlackError):
        return "transient"
    return "error"


def build_web_client(credentials: SlackCredentials, *, timeout_seconds: int) -> WebClient:
    """WebClient for the resolved credential.

    Session tokens (``xoxc-``) are only accepted together with the browser's
    ``d`` cookie, sent on every request.
    """
    headers: dict[str, str] = {}
    if credentials.mode == AuthMode.SESSION and credentials.cookie_d is not None:
        headers["Cookie"] = f"d={credentials.cookie_d.get_secret_value()}"
    return WebClient(
        token=credentials.token.get_secret_value(),
        timeout=timeout_seconds,
        headers=headers,
    )


def create_gateway(
    settings: Settings,
    credentials: SlackCredentials,
    *,
    stop_signal: StopSignal | None = None,
) -> SlackGateway:
    """Gateway with a fresh per-credential RateLimiter configured from settings."""
    return SlackGateway(
        credentials,
        rate_limiter=RateLimiter(settings.slack_rate_limit_interval_seconds),
        page_size=settings.slack_page_size,
        timeout_seconds=settings.slack_request_timeout_seconds,
        retry_after_fallback_seconds=settings.slack_retry_after_fallback_seconds,
        stop_signal=stop_signal,
    )


class SlackGateway:
    """Rate-limited, error-classifying wrapper around ``slack_sdk.WebClient``."""

    def __init__(
        self,
        credentials: SlackCredentials | None = None,
        *,
        client: Any | None = None,
        rate_limiter: RateLimiter | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        retry_after_fallback_seconds: float = DEFAULT_RETRY_AFTER_SECONDS,
        stop_signal: StopSignal | None = None,
        sleep: SleepCallable | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            credentials: Resolved credential; required unless ``client`` is given
            client: Pre-built WebClient (or test double exposing the same methods)
            rate_limiter: Limiter shared by every caller of this credential
            page_size: Items requested per page
            timeout_seconds: Per-request HTTP timeout
            retry_after_fallback_seconds: Wait used when Retry-After is missing
            stop_signal: When set, a pending rate-limit retry is abandoned and
                RateLimitError propagates; otherwise rate limits retry forever
            sleep: Sleep function (injectable for tests)
        """
        if client is None:
            if credentials is None:
                raise ValueError("SlackGateway needs credentials or a client")
            client = build_web_client(credentials, timeout_seconds=timeout_seconds)
        if page_size <= 0:
            raise ValueError("page_size must be positive")

        self.client = client
        self.credentials = credentials
        self._rate_limiter = rate_limiter
        self._page_size = page_size
        self._retry_after_fallback = retry_after_fallback_seconds
        self._stop_signal = stop_signal
        self._sleep = sleep or time.sleep

    @property
    def page_size(self) -> int:
        return self._page_size

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    def _call(self, method: str, **params: Any) -> dict[str, Any]:
        """Call ``method`` (e.g. ``conversations.history``), retrying on rate limits."""
        attempts = 0
        while True:
            if self._rate_limiter is not None:
                self._rate_limiter.acquire()
            try:
                return self._call_once(method, params)
            except RateLimitError as exc:
                if self._stop_signal is not None and self._stop_signal.is_set():
                    logger.info(
                        "slack_rate_limit_wait_cancelled",
                        method=method,
                        attempts=attempts,
                    )
                    raise
                attempts += 1
                wait_seconds = (
                    exc.retry_after
                    if exc.retry_after is not None
                    else self._retry_after_fallback
                )
                logger.warning(
                    "slack_rate_limit_backoff",
                    method=method,
                    attempt=attempts,
                    retry_after_seconds=wait_seconds,
                    channel_id=params.get("channel"),
                )
                RATE_LIMIT_WAITS_TOTAL.labels(component="gateway").inc()
                self._sleep(wait_seconds)

    def _call_once(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        func = getattr(self.client, method.replace(".", "_"))
        try:
            response = func(**params)
        except SlackApiError as exc:
            error = classify_slack_error(exc, method)
            SLACK_API_CALLS_TOTAL.labels(method=method, outcome=_outcome_label(error)).inc()
            raise error from exc
        except (SlackClientError, HTTPException, OSError) as exc:
            SLACK_API_CALLS_TOTAL.labels(method=method, outcome="transient").inc()
            raise TransientSlackError(f"{method} failed: {exc}") from exc

        data = _response_data(response)
        if not data.get("ok", True):
            # Test doubles and raw api_call responses may report errors without raising.
            error = classify_slack_error(SlackApiError(str(data.get("error")), response), method)
            SLACK_API_CALLS_TOTAL.labels(method=method, outcome=_outcome_label(error)).inc()
            raise error

        SLACK_API_CALLS_TOTAL.labels(method=method, outcome="ok").inc()
        return data

    def _paginate(self, method: str, key: str, **params: Any) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            page_params = dict(params)
            if cursor:
                page_params["cursor"] = cursor
            data = self._call(method, **page_params)
            items.extend(cast(list[dict[str, Any]], data.get(key) or []))
            cursor = _next_cursor(data)
            if not cursor:
                return items

    # ------------------------------------------------------------------
    # Workspace objects
    # ------------------------------------------------------------------

    def auth_test(self) -> dict[str, Any]:
        return self._call("auth.test")

    def list_conversations(
        self, types: str, *, exclude_archived: bool = False
    ) -> list[dict[str, Any]]:
        return self._paginate(
            "conversations.list",
            "channels",
            types=types,
            limit=self._page_size,
            exclude_archived=exclude_archived,
        )

    def list_users(self) -> list[dict[str, Any]]:
        return self._paginate("users.list", "members", limit=self._page_size)

    def get_user(self, user_id: str) -> dict[str, Any]:
        data = self._call("users.info", user=user_id)
        return cast(dict[str, Any], data.get("user") or {})

    def get_conversation(self, channel_id: str) -> dict[str, Any]:
        data = self._call("conversations.info", channel=channel_id)
        return cast(dict[str, Any], data.get("channel") or {})

    def join_channel(self, channel_id: str) -> None:
        self._call("conversations.join", channel=channel_id)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

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
        params: dict[str, Any] = {"channel": channel_id, "limit": limit or self._page_size}
        if oldest:
            params["oldest"] = oldest
        if latest:
            params["latest"] = latest
        if inclusive:
            params["inclusive"] = True
        if cursor:
            params["cursor"] = cursor

        data = self._call("conversations.history", **params)
        return SlackPage(
            items=cast(list[dict[str, Any]], data.get("messages") or []),
            next_cursor=_next_cursor(data),
            has_more=bool(data.get("has_more")),
        )

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
        params: dict[str, Any] = {
            "channel": channel_id,
            "ts": thread_ts,
            "limit": limit or self._page_size,
        }
        if oldest:
            params["oldest"] = oldest
        if latest:
            params["latest"] = latest
        if inclusive:
            params["inclusive"] = True
        if cursor:
            params["cursor"] = cursor

        data = self._call("conversations.replies", **params)
        return SlackPage(
            items=cast(list[dict[str, Any]], data.get("messages") or []),
            next_cursor=_next_cursor(data),
            has_more=bool(data.get("has_more")),
        )

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def list_pins(self, channel_id: str) -> list[dict[str, Any]]:
        data = self._call("pins.list", channel=channel_id)
        return cast(list[dict[str, Any]], data.get("items") or [])

    def list_bookmarks(self, channel_id: str) -> list[dict[str, Any]]:
        data = self._call("bookmarks.list", channel_id=channel_id)
        return cast(list[dict[str, Any]], data.get("bookmarks") or [])

    def list_emoji(self) -> dict[str, str]:
        data = self._call("emoji.list")
        return cast(dict[str, str], data.get("emoji") or {})

    def list_user_groups(self) -> list[dict[str, Any]]:
        data = self._call("usergroups.list", include_users=True)
        return cast(list[dict[str, Any]], data.get("usergroups") or [])

    def list_files(self) -> list[dict[str, Any]]:
        """Walk ``files.list``, which pages by number rather than cursor."""
        files: list[dict[str, Any]] = []
        page = 1
        while True:
            data = self._call("files.list", count=self._page_size, page=page)
            files.extend(cast(list[dict[str, Any]], data.get("files") or []))
            paging = data.get("paging") or {}
            total_pages = int(paging.get("pages") or 1)
            if page >= total_pages:
                return files
            page += 1

    def list_stars(self) -> list[dict[str, Any]]:
        return self._paginate("stars.list", "items", limit=self._page_size)


__all__ = [
    "AUTH_INVALID_ERRORS",
    "CHANNEL_UNAVAILABLE_ERRORS",
    "SlackGateway",
    "build_web_client",
    "classify_slack_error",
    "create_gateway",
    "retry_after_seconds",
]
