"""
parallel.py
~~~~~~~~~~~

Thread-pool primitives for data-parallel matrix operations.

Work is split into contiguous chunks and submitted to a shared
``ThreadPoolExecutor``. Every call blocks until all chunks are done, so a
parallel primitive behaves like a synchronous barrier for its caller.
Tasks submitted here must not submit further work to the same pool.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

from digitnet.config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar('T')
R = TypeVar('R')

_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def worker_count() -> int:
    return max(1, get_settings().workers)


def get_executor() -> ThreadPoolExecutor:
    """
    Get or create the shared thread pool.

    Returns:
        ThreadPoolExecutor: Pool sized from ``DIGITNET_WORKERS``
    """
    global _executor
    with _executor_lock:
        if _executor is None:
            workers = worker_count()
            _executor = ThreadPoolExecutor(
                max_workers=workers,
                thread_name_prefix='digitnet'
            )
            logger.debug(f"Started thread pool with {workers} worker(s)")
        return _executor


def shutdown() -> None:
    """Shut down the shared pool; the next parallel call starts a new one."""
    global _executor
    with _executor_lock:
        if _executor is not None:
            _executor.shutdown(wait=True)
            _executor = None


def chunk_ranges(total: int, parts: int) -> List[Tuple[int, int]]:
    """
    Split ``range(total)`` into at most ``parts`` contiguous ranges.

    The first ``total % parts`` ranges are one element longer than the
    rest. Empty ranges are never returned.
    """
    if total <= 0:
        return []
    parts = max(1, min(parts, total))
    size, extra = divmod(total, parts)
    ranges = []
    start = 0
    for i in range(parts):
        stop = start + size + (1 if i < extra else 0)
        ranges.append((start, stop))
        start = stop
    return ranges


def parallel_map(fn: Callable[[T], R], items: Sequence[T]) -> List[R]:
    """
    Apply ``fn`` to every item on the pool and return results in order.

    Exceptions raised by ``fn`` propagate to the caller.
    """
    if len(items) == 0:
        return []
    if len(items) == 1:
        return [fn(items[0])]
    executor = get_executor()
    return list(executor.map(fn, items))


def parallel_ranges(
    fn: Callable[[int, int], R],
    total: int,
    parts: Optional[int] = None
) -> List[R]:
    """Run ``fn(start, stop)`` for each chunk of ``range(total)``."""
    ranges = chunk_ranges(total, parts or worker_count())
    return parallel_map(lambda bounds: fn(*bounds), ranges)


def fold_reduce(
    fold: Callable[[int, int], R],
    reduce: Callable[[R, R], R],
    identity: R,
    total: int,
    parts: Optional[int] = None
) -> R:
    """
    Parallel fold over ``range(total)`` followed by an ordered reduction.

    Args:
        fold: Computes the partial result of one chunk ``[start, stop)``
        reduce: Combines two partial results
        identity: Result for an empty range and the start of the reduction
        total: Number of elements to fold over
        parts: Number of chunks (defaults to the worker count)

    Returns:
        The reduction of every chunk's partial, left to right
    """
    result = identity
    for partial in parallel_ranges(fold, total, parts):
        result = reduce(result, partial)
    return result
