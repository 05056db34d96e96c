# services/batch_reader.py
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Sequence, TypeVar, Union

K = TypeVar("K")
V = TypeVar("V")


def read_in_batches(
    keys: Sequence[K],
    read: Callable[[K], V],
    batch_size: int = 5,
    batch_delay: float = 0.2,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[K, Union[V, Exception]]:
    """
    Run ``read`` for every key, ``batch_size`` at a time on a small thread pool.

    Network calls overlap within a batch only; results are handed back to the
    caller, which stays the single writer of any shared state. A failed read
    maps to its exception instead of aborting the batch.
    """
    results: Dict[K, Union[V, Exception]] = {}
    if not keys:
        return results

    batch_size = max(1, batch_size)
    with ThreadPoolExecutor(max_workers=batch_size) as pool:
        for start in range(0, len(keys), batch_size):
            batch = keys[start : start + batch_size]
            futures = [(key, pool.submit(read, key)) for key in batch]
            for key, future in futures:
                try:
                    results[key] = future.result()
                except Exception as exc:
                    results[key] = exc

            if start + batch_size < len(keys) and batch_delay:
                sleep(batch_delay)

    return results

