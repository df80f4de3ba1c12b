from __future__ import annotations

import pytest
from pydantic import SecretStr

from slack_mirror.clients.slack_gateway import (
    SlackGateway,
    build_web_client,
    classify_slack_error,
    retry_after_seconds,
)
from slack_mirror.domain.exceptions import (
    AuthInvalidError,
    ChannelUnavailableError,
    RateLimitError,
    SlackAPIError,
    TransientSlackError,
)
from slack_mirror.domain.models import AuthMode, SlackCredentials
from slack_mirror.services.rate_limiter import RateLimiter
from slack_mirror.services.shutdown import ShutdownController
from tests.conftest import FakeClock, FakeSlackClient, raw_message, slack_api_error


class TestClassification:
    @pytest.mark.parametrize(
        ("error_code", "status_code", "expected"),
        [
            ("ratelimited", 429, RateLimitError),
            ("ratelimited", 200, RateLimitError),
            ("invalid_auth", 200, AuthInvalidError),
            ("token_revoked", 200, AuthInvalidError),
            ("not_in_channel", 200, ChannelUnavailableError),
            ("channel_not_found", 200, ChannelUnavailableError),
            ("missing_scope", 200, ChannelUnavailableError),
            ("internal_error", 200, TransientSlackError),
            ("whatever", 503, TransientSlackError),
            ("invalid_arguments", 200, SlackAPIError),
        ],
    )
    def test_error_codes_map_to_taxonomy(
        self, error_code: str, status_code: int, expected: type[Exception]
    ) -> None:
        error = slack_api_error(
            "conversations.history", error_code, status_code=status_code
        )

        classified = classify_slack_error(error, "conversations.history")

        assert type(classified) is expected

    def test_generic_api_error_keeps_code(self) -> None:
        classified = classify_slack_error(
            slack_api_error("chat.postMessage", "invalid_arguments"), "chat.postMessage"
        )

        assert isinstance(classified, SlackAPIError)
        assert classified.error_code == "invalid_arguments"

    def test_retry_after_header_is_parsed(self) -> None:
        error = slack_api_error(
            "conversations.history", "ratelimited", status_code=429, headers={"Retry-After": "7"}
        )

        assert retry_after_seconds(error) == pytest.approx(7.0)
        classified = classify_slack_error(error, "conversations.history")
        assert isinstance(classified, RateLimitError)
        assert classified.retry_after == pytest.approx(7.0)

    def test_missing_retry_after_is_none(self) -> None:
        error = slack_api_error("conversations.history", "ratelimited", status_code=429)

        assert retry_after_seconds(error) is None


class TestRateLimitRetry:
    def test_retries_in_place_honouring_retry_after(
        self, gateway: SlackGateway, fake_client: FakeSlackClient, sleeps: list[float]
    ) -> None:
        fake_client.add_messages("C1", [raw_message("100.000001")])
        fake_client.fail(
            "conversations.history",
            "ratelimited",
            status_code=429,
            headers={"Retry-After": "3"},
            times=2,
        )

        page = gateway.history_page("C1")

        assert [item["ts"] for item in page.items] == ["100.000001"]
        assert fake_client.count("conversations.history") == 3
        assert sleeps == [3.0, 3.0]

    def test_fallback_wait_without_retry_after(
        self, fake_client: FakeSlackClient, sleeps: list[float]
    ) -> None:
        gateway = SlackGateway(
            client=fake_client, retry_after_fallback_seconds=10.0, sleep=sleeps.append
        )
        fake_client.fail("users.list", "ratelimited", status_code=429)

        gateway.list_users()

        assert sleeps == [10.0]

    def test_keeps_retrying_through_long_rate_limit_streaks(
        self, gateway: SlackGateway, fake_client: FakeSlackClient, sleeps: list[float]
    ) -> None:
        fake_client.add_messages("C1", [raw_message("100.000001")])
        fake_client.fail(
            "conversations.history",
            "ratelimited",
            status_code=429,
            headers={"Retry-After": "1"},
            times=8,
        )

        page = gateway.history_page("C1")

        assert [item["ts"] for item in page.items] == ["100.000001"]
        assert fake_client.count("conversations.history") == 9
        assert sleeps == [1.0] * 8

    def test_stop_signal_abandons_rate_limit_wait(
        self, fake_client: FakeSlackClient, sleeps: list[float]
    ) -> None:
        stop = ShutdownController()
        gateway = SlackGateway(client=fake_client, stop_signal=stop, sleep=sleeps.append)
        fake_client.fail(
            "conversations.history",
            "ratelimited",
            status_code=429,
            headers={"Retry-After": "1"},
            times=3,
        )
        stop.set()

        with pytest.raises(RateLimitError):
            gateway.history_page("C1")

        assert fake_client.count("conversations.history") == 1
        assert sleeps == []

    def test_each_attempt_takes_a_permit(self, fake_client: FakeSlackClient) -> None:
        clock = FakeClock()
        limiter = RateLimiter(1.2, clock=clock, sleep=clock.sleep)
        gateway = SlackGateway(
            client=fake_client, rate_limiter=limiter, sleep=lambda _seconds: None
        )
        fake_client.fail("emoji.list", "ratelimited", status_code=429, headers={"Retry-After": "0"})

        gateway.list_emoji()
        gateway.list_emoji()

        assert fake_client.count("emoji.list") == 3
        assert sum(clock.sleeps) == pytest.approx(2.4)


class TestErrors:
    def test_auth_error_propagates(
        self, gateway: SlackGateway, fake_client: FakeSlackClient
    ) -> None:
        fake_client.fail("users.list", "invalid_auth")

        with pytest.raises(AuthInvalidError) as exc_info:
            gateway.list_users()

        assert exc_info.value.error_code == "invalid_auth"

    def test_network_failure_is_transient(
        self, gateway: SlackGateway, fake_client: FakeSlackClient
    ) -> None:
        fake_client.fail("conversations.history", ConnectionResetError("reset by peer"))

        with pytest.raises(TransientSlackError):
            gateway.history_page("C1")

    def test_unraised_error_payload_is_classified(self, sleeps: list[float]) -> None:
        class ErrorPayloadClient:
            def conversations_history(self, **params: object) -> dict[str, object]:
                return {"ok": False, "error": "not_in_channel"}

        gateway = SlackGateway(client=ErrorPayloadClient(), sleep=sleeps.append)

        with pytest.raises(ChannelUnavailableError):
            gateway.history_page("C1")


class TestPaging:
    def test_history_pages_follow_cursor(self, fake_client: FakeSlackClient) -> None:
        gateway = SlackGateway(client=fake_client, page_size=2)
        fake_client.add_messages("C1", [raw_message(f"{100 + i}.000000") for i in range(5)])

        first = gateway.history_page("C1")
        second = gateway.history_page("C1", cursor=first.next_cursor)
        third = gateway.history_page("C1", cursor=second.next_cursor)

        assert [item["ts"] for item in first.items] == ["104.000000", "103.000000"]
        assert first.has_more is True
        assert [item["ts"] for item in third.items] == ["100.000000"]
        assert third.is_last

    def test_history_window_parameters(
        self, gateway: SlackGateway, fake_client: FakeSlackClient
    ) -> None:
        fake_client.add_messages("C1", [raw_message("100.000000"), raw_message("200.000000")])

        page = gateway.history_page("C1", latest="100.000000", inclusive=True, limit=1)

        assert [item["ts"] for item in page.items] == ["100.000000"]
        _, params = fake_client.calls[-1]
        assert params == {
            "channel": "C1",
            "limit": 1,
            "latest": "100.000000",
            "inclusive": True,
        }

    def test_list_users_collects_every_page(self, fake_client: FakeSlackClient) -> None:
        gateway = SlackGateway(client=fake_client, page_size=2)
        fake_client.users = [{"id": f"U{i}", "name": f"user{i}"} for i in range(5)]

        users = gateway.list_users()

        assert [user["id"] for user in users] == ["U0", "U1", "U2", "U3", "U4"]
        assert fake_client.count("users.list") == 3

    def test_list_files_pages_by_number(self, fake_client: FakeSlackClient) -> None:
        gateway = SlackGateway(client=fake_client, page_size=2)
        fake_client.files = [{"id": f"F{i}"} for i in range(3)]

        files = gateway.list_files()

        assert [item["id"] for item in files] == ["F0", "F1", "F2"]
        assert fake_client.count("files.list") == 2


class TestWebClient:
    def test_session_mode_sends_cookie(self) -> None:
        credentials = SlackCredentials(
            mode=AuthMode.SESSION,
            token=SecretStr("xoxc-session"),
            cookie_d=SecretStr("xoxd-cookie"),
        )

        client = build_web_client(credentials, timeout_seconds=5)

        assert client.token == "xoxc-session"
        assert client.headers["Cookie"] == "d=xoxd-cookie"
        assert client.timeout == 5

    def test_user_mode_sends_no_cookie(self) -> None:
        credentials = SlackCredentials(mode=AuthMode.USER, token=SecretStr("xoxp-user"))

        client = build_web_client(credentials, timeout_seconds=30)

        assert "Cookie" not in client.headers

    def test_gateway_requires_credentials_or_client(self) -> None:
        with pytest.raises(ValueError):
            SlackGateway()
