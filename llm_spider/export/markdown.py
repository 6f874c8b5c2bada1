from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from ..config import Budget
from ..engines.base import CrawlReport, Page
from ..utils.parsing import split_claims
from ..utils.trust import TrustTier

CAUSE_BUDGET = "budget exhausted"
CAUSE_SCOPE = "scope/robots constraint"


def md_url(url: str) -> str:
    return url.replace(" ", "%20").replace("(", "%28").replace(")", "%29")


def escape_md_inline(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace("[", "\\[")
        .replace("]", "\\]")
        .replace("`", "\\`")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
    )


@dataclass
class Source:
    """A page promoted into the report, with the fragments it is cited for."""

    url: str
    trust_tier: TrustTier
    title: Optional[str] = None
    claims: List[str] = field(default_factory=list)


class MarkdownComposer:
    """
    Renders crawl results as Markdown within budget.max_chars.

    When the document is too long, claims and then whole sources are dropped
    starting from the lowest trust tier present, so a higher-tier source is never
    removed while a lower-tier one remains. A shortfall against min_sources is
    always stated with its cause.
    """

    def __init__(self, budget: Budget, max_claims_per_source: int = 3) -> None:
        self.budget = budget
        self.max_claims_per_source = max_claims_per_source

    def compose(self, report: CrawlReport) -> str:
        sources = self.build_sources(report.pages)
        available = len(sources)
        include_query = True

        while True:
            cause = self._cause(report, trimmed=len(sources) < available)
            text = self.render(report.query, sources, cause, include_query=include_query)
            if len(text) <= self.budget.max_chars:
                return text
            if include_query and sources and self._single_tier(sources):
                # Lower tiers are gone; the query echo goes before any top-tier content.
                include_query = False
                continue
            if not self._trim(sources):
                break

        # Nothing left to trim by tier: shed optional sections, keep the shortfall note.
        cause = self._cause(report, trimmed=available > 0)
        note = self._shortfall_line(0, cause)
        for candidate in (
            self.render(report.query, [], cause, include_query=False),
            f"# Spider Result\n\n## Notes\n\n{note}" if note else "# Spider Result\n",
            note,
        ):
            if candidate and len(candidate) <= self.budget.max_chars:
                return candidate
        return (note or "# Spider Result\n")[: self.budget.max_chars]

    def build_sources(self, pages: Iterable[Page]) -> List[Source]:
        # Completion order is arbitrary; order by tier, then crawl position.
        ordered = sorted(pages, key=lambda p: (-int(p.trust_tier), p.depth, p.rank, p.url))
        return [
            Source(
                url=p.url,
                trust_tier=p.trust_tier,
                title=p.title,
                claims=list(split_claims(p.text, self.max_claims_per_source)),
            )
            for p in ordered
        ]

    def render(
        self,
        query: str,
        sources: List[Source],
        cause: Optional[str],
        *,
        include_query: bool = True,
    ) -> str:
        out: List[str] = ["# Spider Result\n"]
        if include_query:
            out.append(f"\n## Query\n\n- {escape_md_inline(query)}\n")

        out.append("\n## Findings\n\n")
        if not sources:
            out.append("- No sources collected.\n")
        for index, src in enumerate(sources, start=1):
            link = f"[{escape_md_inline(src.title)}]({md_url(src.url)})" if src.title else f"<{md_url(src.url)}>"
            out.append(f"- [{src.trust_tier.label}] {link} \\[{index}\\]\n")
            for claim in src.claims:
                out.append(f"  - {escape_md_inline(claim)} \\[{index}\\]\n")

        if sources:
            out.append("\n## Sources\n\n")
            for index, src in enumerate(sources, start=1):
                out.append(f"{index}. [{src.trust_tier.label}] {src.url}\n")

        note = self._shortfall_line(len(sources), cause)
        if note:
            out.append(f"\n## Notes\n\n{note}")
        return "".join(out)

    # ---- helpers ----

    def _cause(self, report: CrawlReport, *, trimmed: bool) -> str:
        if trimmed or report.stop_reason.budget_exhausted:
            return CAUSE_BUDGET
        return CAUSE_SCOPE

    def _shortfall_line(self, count: int, cause: Optional[str]) -> str:
        if count >= self.budget.min_sources or cause is None:
            return ""
        return f"- Shortfall: {count} of {self.budget.min_sources} required sources ({cause}).\n"

    @staticmethod
    def _single_tier(sources: List[Source]) -> bool:
        return len({src.trust_tier for src in sources}) == 1

    @staticmethod
    def _trim(sources: List[Source]) -> bool:
        """Drop one claim, or one source once its claims are gone, from the lowest tier."""
        if not sources:
            return False
        lowest = min(src.trust_tier for src in sources)
        idx = max(i for i, src in enumerate(sources) if src.trust_tier == lowest)
        if sources[idx].claims:
            sources[idx].claims.pop()
        else:
            del sources[idx]
        return True

