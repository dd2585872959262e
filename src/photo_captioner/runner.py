"""
Bounded concurrency runner for per-image coroutines.

Every item of a batch is offered for admission at once. At most ``concurrency`` operations
are in flight; the rest wait in a FIFO queue and start as slots free up. Each item ends with
exactly one Outcome, in input order, and a failing item never aborts the batch.

The admission counter and the queue are only touched synchronously on the event loop
(right before an operation starts and right after it finishes), so no lock is needed.
"""

import asyncio
import os
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

from loguru import logger


T = TypeVar("T")
R = TypeVar("R")

DEFAULT_CONCURRENCY = int(os.getenv("CONCURRENCY", "4"))


@dataclass(frozen=True)
class Outcome(Generic[T, R]):
    """Success value or failure for a single work item."""

    item: T
    value: R | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _PendingTask(Generic[T, R]):
    index: int
    item: T
    operation: Callable[[T], Awaitable[R]]
    future: "asyncio.Future[Outcome[T, R]]"
    task: "asyncio.Task[None] | None" = None


class BoundedRunner(Generic[T, R]):
    """
    Run an async operation over a list of items with a cap on concurrent operations.

    Args:
        concurrency: Maximum number of operations in flight (must be >= 1)
        timeout: Optional per-item deadline in seconds; expired items fail with TimeoutError

    Examples:
        >>> runner = BoundedRunner(concurrency=2)
        >>> outcomes = asyncio.run(runner.process([1, 2, 3], double))  # doctest: +SKIP
        >>> [o.value for o in outcomes]  # doctest: +SKIP
        [2, 4, 6]

    """

    def __init__(
        self,
        concurrency: int = DEFAULT_CONCURRENCY,
        *,
        timeout: float | None = None,
    ) -> None:
        if concurrency < 1:
            msg = f"concurrency must be a positive integer, got {concurrency}"
            raise ValueError(msg)
        if timeout is not None and timeout <= 0:
            msg = f"timeout must be positive when set, got {timeout}"
            raise ValueError(msg)
        self.concurrency = concurrency
        self.timeout = timeout
        self._active = 0
        self._queue: deque[_PendingTask[T, R]] = deque()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    async def process(
        self,
        items: Sequence[T],
        operation: Callable[[T], Awaitable[R]],
    ) -> list[Outcome[T, R]]:
        """
        Run ``operation`` on every item and return one Outcome per item, in input order.

        Exceptions raised by ``operation`` are captured in the matching Outcome. The call
        returns once every item (started immediately or queued) has finished.
        """
        if not items:
            return []

        loop = asyncio.get_running_loop()
        batch: list[_PendingTask[T, R]] = [
            _PendingTask(index, item, operation, loop.create_future())
            for index, item in enumerate(items)
        ]
        logger.debug(
            "runner_batch_submitted",
            items=len(batch),
            concurrency=self.concurrency,
            active=self._active,
        )

        for pending in batch:
            self._admit(pending)

        futures = [pending.future for pending in batch]
        try:
            outcomes = await asyncio.gather(*futures)
        except asyncio.CancelledError:
            self._abandon(batch)
            raise

        failed = sum(1 for outcome in outcomes if not outcome.ok)
        logger.debug("runner_batch_completed", items=len(outcomes), failed=failed)
        return list(outcomes)

    def _admit(self, pending: _PendingTask[T, R]) -> None:
        if self._active < self.concurrency:
            self._start(pending)
        else:
            self._queue.append(pending)
            logger.trace("runner_item_queued", index=pending.index, queued=len(self._queue))

    def _start(self, pending: _PendingTask[T, R]) -> None:
        self._active += 1
        task = asyncio.create_task(self._run(pending))
        pending.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, pending: _PendingTask[T, R]) -> None:
        outcome: Outcome[T, R] | None = None
        try:
            coro = pending.operation(pending.item)
            if self.timeout is not None:
                value = await asyncio.wait_for(coro, self.timeout)
            else:
                value = await coro
            outcome = Outcome(pending.item, value=value)
        except asyncio.CancelledError as exc:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            # Raised by the operation itself, not by cancelling this batch
            logger.debug("runner_item_cancelled_itself", index=pending.index)
            outcome = Outcome(pending.item, error=exc)
        except Exception as exc:  # noqa: BLE001
            logger.debug(
                "runner_item_failed",
                index=pending.index,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            outcome = Outcome(pending.item, error=exc)
        finally:
            self._active -= 1
            if self._queue:
                self._start(self._queue.popleft())
            if not pending.future.done():
                if outcome is None:
                    pending.future.cancel()
                else:
                    pending.future.set_result(outcome)

    def _abandon(self, batch: list[_PendingTask[T, R]]) -> None:
        """Drop queued entries of a cancelled batch and cancel its running operations."""
        abandoned = {id(pending) for pending in batch}
        self._queue = deque(p for p in self._queue if id(p) not in abandoned)
        for pending in batch:
            if pending.task is not None and not pending.task.done():
                pending.task.cancel()
        logger.warning("runner_batch_cancelled", items=len(batch))
