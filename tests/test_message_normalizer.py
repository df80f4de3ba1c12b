from slack_mirror.services.message_normalizer import (
    channel_from_slack,
    extract_attachments_text,
    extract_blocks_text,
    message_from_slack,
    searchable_text,
    user_from_slack,
)


def test_blocks_text_is_collected_recursively() -> None:
    blocks = [
        {"type": "section", "text": {"type": "mrkdwn", "text": "Release *v2*"}},
        {
            "type": "rich_text",
            "elements": [{"type": "rich_text_section", "elements": [{"type": "text", "text": "today"}]}],
        },
    ]

    assert extract_blocks_text(blocks) == "Release *v2* today"
    assert extract_blocks_text(None) == ""


def test_attachment_fallback_used_only_without_fields() -> None:
    attachments = [
        {"pretext": "Alert", "text": "CPU high", "fallback": "ignored"},
        {"fallback": "Build #12 failed"},
    ]

    assert extract_attachments_text(attachments) == "Alert CPU high Build #12 failed"


def test_searchable_text_prefers_plain_text() -> None:
    assert searchable_text({"text": "plain", "blocks": [{"text": "block"}]}) == "plain"
    assert searchable_text({"text": "", "blocks": [{"text": "block"}]}) == "block"
    assert searchable_text({"attachments": [{"text": "attached"}]}) == "attached"


def test_message_from_slack_maps_fields() -> None:
    raw = {
        "type": "message",
        "ts": "1712345678.000100",
        "user": "U1",
        "text": "hello",
        "thread_ts": "1712345600.000100",
        "reply_count": 0,
        "reactions": [{"name": "wave", "count": 1}],
        "edited": {"user": "U1", "ts": "1712345690.000000"},
    }

    message = message_from_slack(raw, "C1")

    assert message.channel_id == "C1"
    assert message.user_id == "U1"
    assert message.is_thread_reply is True
    assert message.edited_ts == "1712345690.000000"
    assert message.reactions == [{"name": "wave", "count": 1}]
    assert message.raw == raw


def test_thread_root_is_not_a_reply() -> None:
    message = message_from_slack(
        {"ts": "1.000001", "thread_ts": "1.000001", "reply_count": 4, "text": "root"}, "C1"
    )

    assert message.is_thread_reply is False
    assert message.has_replies is True


def test_channel_and_user_mapping() -> None:
    channel = channel_from_slack(
        {
            "id": "G1",
            "name": "secret",
            "is_group": True,
            "is_member": True,
            "topic": {"value": "Only us"},
        }
    )
    dm = channel_from_slack({"id": "D1", "is_im": True, "user": "U7"})
    user = user_from_slack(
        {
            "id": "U1",
            "name": "alice",
            "tz": "Europe/Berlin",
            "profile": {"display_name": "Al", "real_name": "Alice", "email": "a@example.test"},
        }
    )

    assert channel.is_private is True
    assert channel.topic == "Only us"
    assert channel.is_public_channel is False
    assert dm.is_member is True
    assert dm.user_id == "U7"
    assert dm.label == "D1"
    assert (user.display_name, user.real_name, user.timezone) == ("Al", "Alice", "Europe/Berlin")
