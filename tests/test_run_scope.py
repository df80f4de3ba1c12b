from __future__ import annotations

import pytest
import structlog

from slack_mirror.config.logging_config import log_context
from slack_mirror.observability.tracing import RUN_ID_KEY, new_run_id, run_scope


def test_run_scope_binds_and_unbinds_run_id() -> None:
    with run_scope() as run_id:
        assert structlog.contextvars.get_contextvars()[RUN_ID_KEY] == run_id
        assert len(run_id) == 12

    assert RUN_ID_KEY not in structlog.contextvars.get_contextvars()


def test_run_scope_reuses_existing_id_and_binds_labels() -> None:
    with run_scope("abc123", capture="poller") as run_id:
        bound = structlog.contextvars.get_contextvars()
        assert run_id == "abc123"
        assert bound["capture"] == "poller"

    assert "capture" not in structlog.contextvars.get_contextvars()


def test_run_ids_are_unique() -> None:
    assert new_run_id() != new_run_id()


def test_log_context_unbinds_on_error() -> None:
    with pytest.raises(RuntimeError), log_context(channel_id="C1"):
        assert structlog.contextvars.get_contextvars()["channel_id"] == "C1"
        raise RuntimeError("boom")

    assert "channel_id" not in structlog.contextvars.get_contextvars()
