"""Run identifiers for log correlation.

An import run or a live capture session binds one ``run_id``; worker threads
started inside the scope inherit it through a copied context.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from uuid import uuid4

from slack_mirror.config.logging_config import log_context

RUN_ID_KEY = "run_id"
RUN_ID_LENGTH = 12


def new_run_id() -> str:
    return uuid4().hex[:RUN_ID_LENGTH]


@contextmanager
def run_scope(existing_id: str | None = None, **labels: str) -> Iterator[str]:
    """Bind a run id (and optional labels such as ``capture="poller"``)."""
    run_id = existing_id or new_run_id()
    with log_context(**{RUN_ID_KEY: run_id}, **labels):
        yield run_id


__all__ = ["RUN_ID_KEY", "new_run_id", "run_scope"]
