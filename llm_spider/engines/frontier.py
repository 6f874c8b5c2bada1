from __future__ import annotations

import heapq
import itertools
from typing import AbstractSet, Dict, List, Optional, Tuple

from .base import CandidateUrl


class Frontier:
    """
    Priority queue of not-yet-visited candidates.

    Ordering: higher trust first, then lower origin rank, then shallower depth;
    insertion order breaks any remaining tie. A push is ignored when the URL is
    already visited or already queued.
    """

    def __init__(self, visited: AbstractSet[str]) -> None:
        self._visited = visited
        self._heap: List[Tuple[int, int, int, int, str]] = []
        self._queued: Dict[str, CandidateUrl] = {}
        self._seq = itertools.count()

    def __len__(self) -> int:
        return len(self._queued)

    def __contains__(self, url: object) -> bool:
        return url in self._queued

    def push(self, candidate: CandidateUrl) -> bool:
        if candidate.url in self._visited or candidate.url in self._queued:
            return False
        self._queued[candidate.url] = candidate
        key = (-int(candidate.trust_tier), candidate.rank, candidate.depth, next(self._seq), candidate.url)
        heapq.heappush(self._heap, key)
        return True

    def pop(self) -> Optional[CandidateUrl]:
        while self._heap:
            *_, url = heapq.heappop(self._heap)
            candidate = self._queued.pop(url, None)
            if candidate is not None:
                return candidate
        return None

    def discard(self, url: str) -> None:
        # Heap entry is dropped lazily on pop.
        self._queued.pop(url, None)
