"""Per-sample fan-out over a thread pool."""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, TypeVar

from tqdm import tqdm

T = TypeVar('T')
R = TypeVar('R')


def map_samples(fn: Callable[[T], R], items: Sequence[T], max_workers: int = 1,
                desc: Optional[str] = None) -> List[R]:
    """Apply fn to every item, one independent task per item.

    Results come back in input order. Tasks must not share mutable state;
    with max_workers == 1 (or a single item) everything runs in the caller's
    thread.
    """
    items = list(items)
    if max_workers > 1 and len(items) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            return list(tqdm(
                executor.map(fn, items),
                total=len(items),
                desc=desc,
                disable=desc is None
            ))
    return [fn(item) for item in items]
