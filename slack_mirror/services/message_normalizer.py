"""Conversion of raw Slack API payloads into domain models.

Handles:
- conversations.list / conversations.info channel objects
- users.list / users.info member objects
- message objects from history, replies and Socket Mode events
- Block Kit and attachment text fallback for messages without ``text``
"""

from typing import Any

from slack_mirror.domain.models import Channel, Message, User


def extract_blocks_text(blocks: list[dict[str, Any]] | None) -> str:
    """Extract text content from Slack Block Kit blocks.

    Example:
        >>> blocks = [{"type": "section", "text": {"type": "mrkdwn", "text": "Hello"}}]
        >>> extract_blocks_text(blocks)
        'Hello'
    """
    if not blocks:
        return ""

    texts: list[str] = []

    def extract_text_recursive(obj: Any) -> None:
        if isinstance(obj, dict):
            if "text" in obj and isinstance(obj["text"], str):
                texts.append(obj["text"])
            for value in obj.values():
                extract_text_recursive(value)
        elif isinstance(obj, list):
            for item in obj:
                extract_text_recursive(item)

    extract_text_recursive(blocks)
    return " ".join(texts)


def extract_attachments_text(attachments: list[dict[str, Any]] | None) -> str:
    """Collect fallback/pretext/text fields from legacy attachments."""
    if not attachments:
        return ""

    parts: list[str] = []
    for attachment in attachments:
        fields: list[str] = []
        for key in ("pretext", "title", "text"):
            value = attachment.get(key)
            if isinstance(value, str) and value:
                fields.append(value)
        if not fields and isinstance(attachment.get("fallback"), str):
            fields.append(attachment["fallback"])
        parts.extend(fields)
    return " ".join(parts)


def searchable_text(raw_msg: dict[str, Any]) -> str:
    """Text stored for a message: ``text``, else blocks, else attachments."""
    text = raw_msg.get("text") or ""
    if text:
        return str(text)
    blocks_text = extract_blocks_text(raw_msg.get("blocks"))
    if blocks_text:
        return blocks_text
    return extract_attachments_text(raw_msg.get("attachments"))


def channel_from_slack(raw: dict[str, Any]) -> Channel:
    """Build a Channel from a conversation object."""
    topic = raw.get("topic")
    purpose = raw.get("purpose")
    return Channel(
        id=str(raw["id"]),
        name=raw.get("name") or raw.get("name_normalized"),
        is_private=bool(raw.get("is_private") or raw.get("is_group")),
        topic=(topic.get("value") or "") if isinstance(topic, dict) else "",
        purpose=(purpose.get("value") or "") if isinstance(purpose, dict) else "",
        is_im=bool(raw.get("is_im")),
        is_mpim=bool(raw.get("is_mpim")),
        is_archived=bool(raw.get("is_archived")),
        is_member=bool(raw.get("is_member") or raw.get("is_im")),
        user_id=raw.get("user"),
    )


def user_from_slack(raw: dict[str, Any]) -> User:
    """Build a User from a member object."""
    profile = raw.get("profile") or {}
    return User(
        id=str(raw["id"]),
        name=raw.get("name") or "",
        display_name=profile.get("display_name") or "",
        real_name=raw.get("real_name") or profile.get("real_name") or "",
        is_bot=bool(raw.get("is_bot")),
        deleted=bool(raw.get("deleted")),
        title=profile.get("title") or "",
        email=profile.get("email"),
        timezone=raw.get("tz"),
        status_text=profile.get("status_text") or "",
        status_emoji=profile.get("status_emoji") or "",
    )


def message_from_slack(raw_msg: dict[str, Any], channel_id: str) -> Message:
    """Build a Message from a message object.

    Args:
        raw_msg: Raw Slack message dictionary
        channel_id: Channel the message belongs to (history payloads omit it)

    Returns:
        Message ready for upsert
    """
    edited = raw_msg.get("edited") or {}
    return Message(
        channel_id=channel_id,
        ts=str(raw_msg["ts"]),
        user_id=raw_msg.get("user") or raw_msg.get("bot_id"),
        text=searchable_text(raw_msg),
        thread_ts=raw_msg.get("thread_ts"),
        reply_count=int(raw_msg.get("reply_count") or 0),
        subtype=raw_msg.get("subtype"),
        reactions=list(raw_msg.get("reactions") or []),
        attachments=list(raw_msg.get("attachments") or []),
        files=list(raw_msg.get("files") or []),
        blocks=list(raw_msg.get("blocks") or []),
        permalink=raw_msg.get("permalink"),
        edited_ts=edited.get("ts") if isinstance(edited, dict) else None,
        raw=raw_msg,
    )


__all__ = [
    "channel_from_slack",
    "extract_attachments_text",
    "extract_blocks_text",
    "message_from_slack",
    "searchable_text",
    "user_from_slack",
]
