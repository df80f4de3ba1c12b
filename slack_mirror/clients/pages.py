"""Page value returned by cursor-paginated Slack methods."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class SlackPage:
    """One page of messages plus the cursor for the next page, if any."""

    items: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False

    @property
    def is_last(self) -> bool:
        return not self.next_cursor


__all__ = ["SlackPage"]
