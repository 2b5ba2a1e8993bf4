"""
Bounded fan-out for per-record writes.

Each item runs in isolation: a failing write is recorded and its siblings
carry on. A cancel event is checked before every item starts; items that
had not started when it was set are reported as cancelled, and writes that
already happened stay applied.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar

from .errors import describe_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CANCELLED = object()


@dataclass
class ItemFailure:
    """One record whose write failed."""
    record_id: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.record_id, "error": self.error}


@dataclass
class BatchOutcome(Generic[T]):
    completed: List[Tuple[T, Any]] = field(default_factory=list)
    failures: List[ItemFailure] = field(default_factory=list)
    cancelled: int = 0


async def run_batch(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[Any]],
    key: Callable[[T], str],
    max_concurrency: int = 5,
    cancel_event: Optional[asyncio.Event] = None
) -> BatchOutcome[T]:
    """
    Run ``worker`` over ``items`` with at most ``max_concurrency`` in flight.

    Args:
        items: Records to process
        worker: Coroutine function performing one record's write
        key: Identifier used when reporting a failure
        max_concurrency: Semaphore size
        cancel_event: When set, items not yet started are skipped

    Returns:
        BatchOutcome with completed (item, result) pairs, failures and
        the number of cancelled items
    """
    outcome: BatchOutcome[T] = BatchOutcome()
    if not items:
        return outcome

    semaphore = asyncio.Semaphore(max(1, max_concurrency))

    async def run_one(item: T):
        async with semaphore:
            if cancel_event is not None and cancel_event.is_set():
                return _CANCELLED
            return await worker(item)

    results = await asyncio.gather(*(run_one(item) for item in items), return_exceptions=True)

    for item, result in zip(items, results):
        if result is _CANCELLED:
            outcome.cancelled += 1
        elif isinstance(result, Exception):
            record_id = key(item)
            logger.warning(f"Write failed for {record_id}: {type(result).__name__}: {result}")
            outcome.failures.append(ItemFailure(record_id=record_id, error=describe_error(result)))
        elif isinstance(result, BaseException):
            raise result
        else:
            outcome.completed.append((item, result))

    if outcome.cancelled:
        logger.info(f"Batch cancelled with {outcome.cancelled} of {len(items)} records not processed")

    return outcome
