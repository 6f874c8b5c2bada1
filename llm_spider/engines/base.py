from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from abc import ABC, abstractmethod

from ..utils.parsing import LinkCandidate
from ..utils.trust import TrustTier


@dataclass(frozen=True)
class CandidateUrl:
    url: str  # normalized
    depth: int
    rank: int
    trust_tier: TrustTier
    parent: Optional[str] = None


@dataclass(frozen=True)
class Page:
    """A successfully fetched and extracted URL. Immutable once created."""

    url: str
    trust_tier: TrustTier
    text: str
    links: Tuple[LinkCandidate, ...]
    depth: int
    rank: int
    title: Optional[str] = None
    final_url: Optional[str] = None


class StopReason(str, enum.Enum):
    PAGE_BUDGET = "page budget reached"
    TIME_BUDGET = "time budget reached"
    FRONTIER_EXHAUSTED = "no more candidates"

    @property
    def budget_exhausted(self) -> bool:
        return self is not StopReason.FRONTIER_EXHAUSTED


@dataclass
class CrawlReport:
    query: str
    pages: List[Page] = field(default_factory=list)
    pages_fetched: int = 0
    stop_reason: StopReason = StopReason.FRONTIER_EXHAUSTED
    elapsed: float = 0.0
    # outcome kind -> count, for skipped URLs (robots, unsafe, failures)
    skipped: Dict[str, int] = field(default_factory=dict)
    # host -> robots.txt caveat for hosts that were treated as allow-all
    robots_caveats: Dict[str, str] = field(default_factory=dict)


class CrawlEngine(ABC):
    """
    Abstract engine interface. Implementations own the crawl lifecycle.
    """
    @abstractmethod
    async def crawl(self, query: str) -> CrawlReport:  # pragma: no cover - interface
        ...
