import inspect
import os

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable

from tqdm import tqdm

_PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))


def parallel_map(fn: Callable,
                 items: Iterable,
                 workers: int | None = None,
                 desc: str | None = None,
                 verbose: bool = False) -> list:
    """
    Apply fn to every item, optionally on a thread pool.

    Results are returned in the order of ``items`` regardless of the
    completion order, so that callers can accumulate deterministically.

    Args:
        fn (Callable): Function of one argument.
        items (Iterable): Work units.
        workers (int | None): Number of threads; None or 1 runs serially.
        desc (str | None): Progress bar label.
        verbose (bool): Show a progress bar if True.

    Returns:
        list: fn(item) for every item, in order.
    """
    items = list(items)
    if workers is None or workers <= 1 or len(items) <= 1:
        return [fn(item) for item in tqdm(items, desc=desc,
                                          disable=not verbose)]
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(tqdm(pool.map(fn, items), total=len(items), desc=desc,
                         disable=not verbose))


def external_stacklevel() -> int:
    """
    ``stacklevel`` for a ``warnings.warn`` call made by the caller of this
    function that attributes the warning to the first frame outside the
    package.
    """
    frame = inspect.currentframe().f_back
    level = 1
    try:
        while frame is not None and os.path.abspath(
                frame.f_code.co_filename).startswith(_PACKAGE_DIR + os.sep):
            frame = frame.f_back
            level += 1
    finally:
        del frame
    return level
