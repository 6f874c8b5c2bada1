from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from ..utils.parsing import LinkCandidate
from ..utils.trust import TrustTier


@dataclass(frozen=True)
class SearchHit:
    url: str
    rank: int
    title: Optional[str] = None


@dataclass(frozen=True)
class ScoredLink:
    """A link candidate as offered to the selection model."""

    url: str
    anchor_text: str
    trust_tier: TrustTier

    @classmethod
    def from_candidate(cls, candidate: LinkCandidate, tier: TrustTier) -> "ScoredLink":
        return cls(url=candidate.url, anchor_text=candidate.anchor_text, trust_tier=tier)


class SearchSeeder(Protocol):
    """
    Turns a natural-language query into ordered seed URLs.
    Raises ProviderUnavailable when no answer can be obtained.
    """

    async def search(self, query: str, limit: int) -> List[SearchHit]:
        ...


class LinkSelectionModel(Protocol):
    """
    Picks at most `limit` URLs out of `candidates` for the given page excerpt.
    Raises ModelUnavailable on any failure; callers fall back locally.
    """

    async def select(
        self,
        excerpt: str,
        candidates: Sequence[ScoredLink],
        limit: int,
        *,
        query: str = "",
    ) -> List[str]:
        ...
