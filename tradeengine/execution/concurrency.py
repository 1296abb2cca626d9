"""
Bounded fan-out and retry helpers.

Symbols are independent, so each cycle processes them concurrently on
a long-lived thread pool with a fixed worker count.  A failure or a
stalled call for one symbol is logged and reported for that symbol
only; it never stops the others.

A call that outlives the cycle timeout cannot be interrupted, so
`BoundedFanOut` remembers it.  Until it finishes, later cycles report
that symbol as stalled instead of submitting it again, which keeps a
hung symbol from tying up more than one worker.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, Hashable, Iterable, List, TypeVar


logger = logging.getLogger(__name__)

K = TypeVar('K', bound=Hashable)
R = TypeVar('R')


def retry_call(
    fn: Callable[[], R],
    retries: int = 2,
    base_delay: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
    description: str = 'call',
) -> R:
    """Call ``fn`` with up to ``retries`` extra attempts.

    The wait before retry ``k`` (0-based) is ``base_delay * 2**k``.  The
    last exception is re-raised when every attempt fails.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as exc:
            if attempt >= retries:
                raise
            delay = base_delay * (2 ** attempt)
            logger.warning("%s failed (%s); retry %d/%d in %.2fs", description, exc, attempt + 1, retries, delay)
            sleep(delay)
            attempt += 1


@dataclass
class FanOutResult(Generic[K, R]):
    """Outcome of one `BoundedFanOut.run` cycle, split by item."""
    results: Dict[K, R] = field(default_factory=dict)
    errors: Dict[K, Exception] = field(default_factory=dict)
    stalled: List[K] = field(default_factory=list)


class BoundedFanOut(Generic[K, R]):
    """Run one call per item on a shared pool, bounded by a cycle timeout.

    Parameters
    ----------
    max_workers : int
        Pool size.
    timeout : float
        Seconds a cycle waits for its calls.  Calls still running after
        that are reported as stalled and left to finish in the
        background; their results are discarded.
    name : str
        Thread name prefix and log label.
    """

    def __init__(self, max_workers: int, timeout: float, name: str = 'fanout') -> None:
        self.timeout = timeout
        self.name = name
        self._pool = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix=name)
        self._inflight: Dict[K, Future] = {}
        self._lock = threading.Lock()

    def in_flight(self) -> List[K]:
        """Items whose call from an earlier cycle is still running."""
        with self._lock:
            return [item for item, fut in self._inflight.items() if not fut.done()]

    def run(self, items: Iterable[K], fn: Callable[[K], R]) -> FanOutResult[K, R]:
        outcome: FanOutResult[K, R] = FanOutResult()
        futures: Dict[Future, K] = {}
        with self._lock:
            for item in items:
                previous = self._inflight.get(item)
                if previous is not None and not previous.done():
                    logger.warning("%s: call for %s still running from an earlier cycle; skipping", self.name, item)
                    outcome.stalled.append(item)
                    continue
                self._inflight.pop(item, None)
                futures[self._pool.submit(fn, item)] = item
        if not futures:
            return outcome

        done, pending = wait(futures, timeout=self.timeout)
        with self._lock:
            for future in pending:
                item = futures[future]
                self._inflight[item] = future
                outcome.stalled.append(item)
                logger.warning("%s: call for %s timed out after %.1fs; skipping this cycle", self.name, item, self.timeout)
        for future in done:
            item = futures[future]
            try:
                outcome.results[item] = future.result()
            except Exception as exc:
                logger.warning("%s: call for %s failed: %s", self.name, item, exc)
                outcome.errors[item] = exc
        return outcome

    def shutdown(self) -> None:
        """Stop accepting work without waiting for stalled calls."""
        self._pool.shutdown(wait=False, cancel_futures=True)
