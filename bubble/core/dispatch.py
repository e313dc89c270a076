"""
Sequential background dispatch.

Used for "solve N uploaded problems" and "generate the next drill batch":
the first unit is awaited by the caller, the rest run in a background task
one at a time, in index order, writing each result into a shared slot.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from .orchestrator import RequestOrchestrator

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_TOPIC = "General Math"


class BatchTask:
    """Handle on a background batch.

    ``results`` is shared with the caller and filled by index as items
    finish. Failed items leave their slot untouched and are recorded in
    ``errors``.
    """

    def __init__(self, results: List[Any], start_index: int, total: int):
        self.results = results
        self.start_index = start_index
        self.total = total
        self.errors: Dict[int, BaseException] = {}
        self.completed: List[int] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._task is not None and self._task.cancelled()

    def cancel(self) -> bool:
        """Stop the batch. The item in flight is cancelled, later items never start."""
        if self._task is None:
            return False
        return self._task.cancel()

    async def wait(self) -> List[Any]:
        """Wait for the batch to finish (or be cancelled) and return the results."""
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                if not self._task.cancelled():
                    raise
        return self.results


async def _run_sequentially(
    task: BatchTask,
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    orchestrator: Optional[RequestOrchestrator],
) -> None:
    for i in range(task.start_index, len(items)):
        item = items[i]
        try:
            if orchestrator is not None:
                result = await orchestrator.invoke(lambda: worker(item))
            else:
                result = await worker(item)
        except Exception as exc:
            logger.error("Error processing item %d: %s", i, exc)
            task.errors[i] = exc
            continue
        task.results[i] = result
        task.completed.append(i)


def process_remaining(
    start_index: int,
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    results: Optional[List[Optional[R]]] = None,
    orchestrator: Optional[RequestOrchestrator] = None,
) -> BatchTask:
    """Process ``items[start_index:]`` in a background task.

    Must be called from a running event loop. Returns immediately.

    Args:
        start_index: First index to process
        items: All items of the batch
        worker: Async callable producing the result for one item
        results: Shared result slots; created (all None) when omitted
        orchestrator: When given, each item runs through ``invoke``

    Returns:
        BatchTask observing the background work
    """
    if start_index < 0:
        raise ValueError("start_index must be >= 0")
    if results is None:
        results = [None] * len(items)
    if len(results) < len(items):
        raise ValueError("results must have a slot for every item")

    task = BatchTask(results, start_index, len(items))
    if start_index < len(items):
        task._task = asyncio.create_task(_run_sequentially(task, items, worker, orchestrator))
    return task


async def solve_all(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    orchestrator: Optional[RequestOrchestrator] = None,
) -> Tuple[List[Optional[R]], BatchTask]:
    """Solve the first item now and the rest in the background.

    Errors on the first item propagate to the caller. The returned task
    covers items 1..N-1 and is already done when there is at most one item.
    """
    results: List[Optional[R]] = [None] * len(items)
    if not items:
        return results, BatchTask(results, 0, 0)

    first = items[0]
    if orchestrator is not None:
        results[0] = await orchestrator.invoke(lambda: worker(first))
    else:
        results[0] = await worker(first)

    return results, process_remaining(1, items, worker, results, orchestrator)


def ramp_difficulty(start: float, count: int, step: float = 0.5, ceiling: float = 10.0) -> List[float]:
    """Difficulty for each question of a drill batch, rising by ``step`` up to ``ceiling``."""
    levels = []
    current = min(ceiling, start)
    for _ in range(count):
        levels.append(current)
        current = min(ceiling, current + step)
    return levels


def rotate_topics(topics: Sequence[str], start: int, count: int) -> List[str]:
    """Round-robin topics so a batch mixes every selected topic."""
    pool = list(topics) or [DEFAULT_TOPIC]
    return [pool[(start + i) % len(pool)] for i in range(count)]
