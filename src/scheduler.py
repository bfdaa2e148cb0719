"""
Scheduling primitives for the secret reconciler.

Retries and refreshes are modeled as entries in a priority queue keyed by
the time a spec next becomes eligible, polled by a single loop. Backoff is
exponential with additive jitter, capped at a configurable maximum.
"""

import heapq
import itertools
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


def compute_backoff(
    failures: int,
    base_delay: float,
    max_delay: float,
    jitter_factor: float = 0.0,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Calculate the retry delay after ``failures`` consecutive failures.

    ``min(max_delay, base_delay * 2**(failures - 1) * (1 + U * jitter))``
    with ``U`` uniform in [0, 1). Jitter only ever lengthens the delay and
    ``jitter_factor`` must lie in [0, 1], so consecutive delays are
    non-decreasing and never exceed ``max_delay``.

    Args:
        failures: Consecutive failure count (1 for the first failure)
        base_delay: Delay after the first failure, in seconds
        max_delay: Upper bound for any delay, in seconds
        jitter_factor: Maximum relative jitter, 0 disables jitter
        rng: Random source (defaults to the module-level generator)

    Returns:
        Delay in seconds
    """
    if failures < 1:
        return 0.0
    if not 0.0 <= jitter_factor <= 1.0:
        raise ValueError(f"jitter_factor must be within [0, 1], got {jitter_factor}")

    # Cap the exponent so large failure counts cannot overflow
    exponent = min(failures - 1, 32)
    delay = base_delay * (2**exponent)
    if jitter_factor:
        draw = (rng or random).random()
        delay *= 1 + draw * jitter_factor
    return min(delay, max_delay)


@dataclass(order=True)
class QueueEntry:
    """One scheduled tick: a spec becomes eligible at ``due``."""

    due: float
    seq: int
    spec_id: str = field(compare=False)


class WorkQueue:
    """
    Priority queue of specs ordered by next-eligible time.

    Holds at most one live entry per spec. Each entry carries a unique
    sequence number; rescheduling or removing a spec replaces the live
    sequence number and stale heap entries are discarded lazily when they
    reach the front.
    """

    def __init__(self):
        self._heap: List[QueueEntry] = []
        self._live: Dict[str, QueueEntry] = {}
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._live)

    def __contains__(self, spec_id: object) -> bool:
        return spec_id in self._live

    def schedule(self, spec_id: str, due: float) -> None:
        """Schedule (or reschedule) a spec to become eligible at ``due``."""
        entry = QueueEntry(due, next(self._counter), spec_id)
        self._live[spec_id] = entry
        heapq.heappush(self._heap, entry)

    def remove(self, spec_id: str) -> None:
        """Drop any pending entry for a spec. Idempotent."""
        self._live.pop(spec_id, None)

    def _prune(self) -> None:
        while self._heap:
            head = self._heap[0]
            if self._live.get(head.spec_id) is head:
                return
            heapq.heappop(self._heap)

    def peek_due(self) -> Optional[float]:
        """Earliest due time among live entries, or None when empty."""
        self._prune()
        return self._heap[0].due if self._heap else None

    def due_at(self, spec_id: str) -> Optional[float]:
        """Due time of a spec's live entry, or None if it is not queued."""
        entry = self._live.get(spec_id)
        return entry.due if entry is not None else None

    def pop_due(self, now: float) -> List[Tuple[str, float]]:
        """
        Remove and return every spec due at or before ``now``.

        Returns:
            List of ``(spec_id, due)`` in due order
        """
        ready = []
        while True:
            self._prune()
            if not self._heap or self._heap[0].due > now:
                break
            entry = heapq.heappop(self._heap)
            del self._live[entry.spec_id]
            ready.append((entry.spec_id, entry.due))
        return ready
