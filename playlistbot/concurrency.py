import contextvars
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, TypeVar

T = TypeVar("T")
R = TypeVar("R")

Mapper = Callable[[Callable[[T], R], Iterable[T]], List[R]]


def ordered_map(fn: Callable[[T], R], items: Iterable[T], max_workers: int = 5) -> List[R]:
    """Run ``fn`` over ``items`` on a bounded pool, returning results in input order.

    Each call runs in a copy of the caller's context so the run id set by
    ``run_context`` reaches log lines emitted from worker threads.
    """
    items = list(items)
    if not items:
        return []
    workers = max(1, min(max_workers, len(items)))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [
            executor.submit(contextvars.copy_context().run, fn, item) for item in items
        ]
        return [future.result() for future in futures]


def sequential_map(fn: Callable[[T], R], items: Iterable[T]) -> List[R]:
    return [fn(item) for item in items]


def bounded_mapper(max_workers: int) -> Mapper:
    def _mapper(fn, items):
        return ordered_map(fn, items, max_workers=max_workers)

    return _mapper
