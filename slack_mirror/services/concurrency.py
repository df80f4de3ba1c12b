"""Bounded-concurrency execution of independent work items on threads."""

from __future__ import annotations

import contextvars
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, Protocol, TypeVar

from slack_mirror.config.logging_config import get_logger

logger = get_logger(__name__)

ItemT = TypeVar("ItemT")
ResultT = TypeVar("ResultT")


class StopSignal(Protocol):
    def is_set(self) -> bool: ...


@dataclass
class WorkOutcome(Generic[ItemT, ResultT]):
    """Result of one work item: either a value or the error it raised."""

    index: int
    item: ItemT
    result: ResultT | None = field(default=None)
    error: BaseException | None = field(default=None)
    started: bool = field(default=False)
    duration_seconds: float = field(default=0.0)

    @property
    def succeeded(self) -> bool:
        return self.started and self.error is None


class _SharedCursor:
    """Hands out list indices to workers, one at a time."""

    def __init__(self, size: int) -> None:
        self._size = size
        self._next = 0
        self._closed = False
        self._lock = threading.Lock()

    def claim(self) -> int | None:
        with self._lock:
            if self._closed or self._next >= self._size:
                return None
            index = self._next
            self._next += 1
            return index

    def close(self) -> None:
        with self._lock:
            self._closed = True


def run_bounded(
    items: Sequence[ItemT],
    handler: Callable[[ItemT], ResultT],
    *,
    concurrency: int,
    fatal_errors: tuple[type[BaseException], ...] = (),
    stop_signal: StopSignal | None = None,
    name: str = "worker",
) -> list[WorkOutcome[ItemT, ResultT]]:
    """Run ``handler`` over ``items`` with at most ``concurrency`` in flight.

    Each of the K worker threads repeatedly claims the next unclaimed index
    until the list is exhausted. An exception from one item is recorded on
    that item's outcome and the worker moves on. Exceptions listed in
    ``fatal_errors`` stop further claims; items already running finish and
    the first fatal error is re-raised once every worker has exited.

    The stop signal is only checked before claiming an item, never while a
    handler runs.

    Returns:
        One outcome per item, in item order. Items never claimed keep
        ``started=False``.
    """
    if concurrency <= 0:
        raise ValueError("concurrency must be positive")

    outcomes: list[WorkOutcome[ItemT, ResultT]] = [
        WorkOutcome(index=index, item=item) for index, item in enumerate(items)
    ]
    if not outcomes:
        return outcomes

    cursor = _SharedCursor(len(outcomes))
    fatal: list[BaseException] = []
    fatal_lock = threading.Lock()

    def _worker() -> None:
        while True:
            if stop_signal is not None and stop_signal.is_set():
                cursor.close()
                return
            index = cursor.claim()
            if index is None:
                return

            outcome = outcomes[index]
            outcome.started = True
            start_time = time.perf_counter()
            try:
                outcome.result = handler(outcome.item)
            except fatal_errors as exc:
                outcome.error = exc
                with fatal_lock:
                    fatal.append(exc)
                cursor.close()
                logger.error(
                    "scheduler_fatal_error",
                    scheduler=name,
                    index=index,
                    error=str(exc),
                )
                return
            except Exception as exc:  # noqa: BLE001
                outcome.error = exc
                logger.exception("scheduler_item_failed", scheduler=name, index=index)
            finally:
                outcome.duration_seconds = time.perf_counter() - start_time

    worker_count = min(concurrency, len(outcomes))
    threads = [
        threading.Thread(
            target=contextvars.copy_context().run,
            args=(_worker,),
            name=f"{name}-{slot}",
            daemon=True,
        )
        for slot in range(worker_count)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    if fatal:
        raise fatal[0]
    return outcomes


__all__ = ["StopSignal", "WorkOutcome", "run_bounded"]
