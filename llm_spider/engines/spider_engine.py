from __future__ import annotations

import asyncio
import functools
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import AbstractSet, Callable, List, Optional, Set

from aiohttp import ClientSession

from .base import CandidateUrl, CrawlEngine, CrawlReport, Page, StopReason
from .frontier import Frontier
from .selector import ChildLinkSelector
from ..config import SpiderConfig
from ..providers.base import LinkSelectionModel, ScoredLink, SearchSeeder
from ..utils.http import Fetched, FetchOutcome, Fetcher, HostRateLimiter, PermanentFailure, create_session
from ..utils.parsing import Extraction, extract, normalize_url
from ..utils.robots import RobotsGuard
from ..utils.trust import TrustClassifier

logger = logging.getLogger(__name__)


@dataclass
class CrawlState:
    """Mutable crawl bookkeeping. Only the engine loop writes to it, apart from `_claim`."""

    started_at: float
    deadline: float
    visited: Set[str] = field(default_factory=set)
    recorded: Set[str] = field(default_factory=set)
    pages_fetched: int = 0
    in_flight: int = 0


@dataclass
class _WorkResult:
    candidate: CandidateUrl
    outcome: FetchOutcome
    extraction: Optional[Extraction] = None
    children: List[ScoredLink] = field(default_factory=list)


def _outcome_kind(outcome: FetchOutcome) -> str:
    return type(outcome).__name__


class SpiderCrawlEngine(CrawlEngine):
    """
    Budgeted crawl: Seeding -> Running -> Draining -> Done.

    - The engine loop is the only writer of the frontier and the visited set,
      except that a worker following a redirect claims the target through
      `_claim` before requesting it, so no URL is fetched twice.
    - Workers fetch, extract and select children, then hand a result back over
      a queue; several hosts are fetched concurrently up to max_concurrency.
    - pages_fetched counts successful retrievals only, and never exceeds max_pages
      because no more fetches are dispatched than there is page budget left.
    """

    def __init__(
        self,
        config: SpiderConfig,
        *,
        seeder: SearchSeeder,
        model: LinkSelectionModel,
        classifier: Optional[TrustClassifier] = None,
        session: Optional[ClientSession] = None,
    ) -> None:
        self.config = config
        self.budget = config.budget
        self.seeder = seeder
        self.model = model
        self.classifier = classifier or TrustClassifier(
            high=config.trust_high, medium=config.trust_medium, low=config.trust_low
        )
        self._session = session

    async def crawl(self, query: str) -> CrawlReport:
        loop = asyncio.get_running_loop()
        started = loop.time()
        state = CrawlState(started_at=started, deadline=started + self.budget.max_elapsed)
        frontier = Frontier(state.visited)
        report = CrawlReport(query=query)

        # Seeding. ProviderUnavailable propagates: without seeds there is nothing to crawl.
        hits = await self.seeder.search(query, self.budget.search_limit)
        for hit in hits[: self.budget.search_limit]:
            try:
                url = normalize_url(hit.url)
            except ValueError:
                logger.debug("dropping malformed seed %r", hit.url)
                continue
            frontier.push(CandidateUrl(url=url, depth=0, rank=hit.rank, trust_tier=self.classifier.classify(url)))
        logger.info("seeded %s candidate(s) for query %r", len(frontier), query)

        session = self._session or create_session(self.config.user_agent)
        try:
            limiter = HostRateLimiter(self.config.min_host_interval, self.config.max_host_interval)
            robots = RobotsGuard(session, self.config.user_agent, timeout=self.config.robots_timeout, limiter=limiter)
            fetcher = Fetcher(
                session,
                robots,
                limiter,
                user_agent=self.config.user_agent,
                timeout=self.config.request_timeout,
                retries=self.config.retries,
                max_body_bytes=self.config.max_body_bytes,
                max_redirects=self.config.max_redirects,
                allow_local=self.config.allow_local,
            )
            selector = ChildLinkSelector(
                self.model,
                max_candidates=self.budget.max_child_candidates,
                max_children=self.budget.max_children_per_page,
                query=query,
                timeout=self.config.model_timeout,
            )
            await self._run(state, frontier, report, fetcher, selector)
            report.robots_caveats = robots.caveats
        finally:
            if self._session is None:
                await session.close()

        report.pages_fetched = state.pages_fetched
        report.elapsed = loop.time() - started
        logger.info(
            "crawl done: %s page(s) in %.2fs (%s); skipped %s",
            report.pages_fetched,
            report.elapsed,
            report.stop_reason.value,
            dict(report.skipped) or "none",
        )
        return report

    # ---- Running / Draining ----

    async def _run(
        self,
        state: CrawlState,
        frontier: Frontier,
        report: CrawlReport,
        fetcher: Fetcher,
        selector: ChildLinkSelector,
    ) -> None:
        loop = asyncio.get_running_loop()
        results: asyncio.Queue[_WorkResult] = asyncio.Queue()
        tasks: Set[asyncio.Task] = set()
        skipped: Counter = Counter()
        claim = functools.partial(self._claim, state, frontier)

        try:
            while True:
                stop = self._stop_reason(state, frontier, loop.time())
                if stop is not None:
                    report.stop_reason = stop
                    break

                # Dispatch in strict priority order while page budget and workers allow.
                while (
                    state.in_flight < self.config.max_concurrency
                    and state.pages_fetched + state.in_flight < self.budget.max_pages
                    and loop.time() < state.deadline
                ):
                    candidate = frontier.pop()
                    if candidate is None:
                        break
                    state.visited.add(candidate.url)
                    state.in_flight += 1
                    task = asyncio.create_task(
                        self._work(
                            candidate,
                            fetcher,
                            selector,
                            results,
                            frozenset(state.visited),
                            state.deadline,
                            claim=claim,
                        )
                    )
                    tasks.add(task)
                    task.add_done_callback(tasks.discard)
                    logger.debug("dispatched %s (tier=%s depth=%s)", candidate.url, candidate.trust_tier.label, candidate.depth)

                if state.in_flight == 0:
                    continue
                try:
                    result = await asyncio.wait_for(results.get(), timeout=max(0.0, state.deadline - loop.time()))
                except asyncio.TimeoutError:
                    continue
                self._record(result, state, frontier, report, skipped, follow=True)

            # Draining: no new work; in-flight fetches get a grace window, late results are dropped.
            grace_end = loop.time() + self.config.drain_grace
            while state.in_flight > 0:
                remaining = grace_end - loop.time()
                if remaining <= 0:
                    logger.info("discarding %s in-flight fetch(es) after grace window", state.in_flight)
                    break
                try:
                    result = await asyncio.wait_for(results.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    continue
                self._record(result, state, frontier, report, skipped, follow=False)
        finally:
            for task in list(tasks):
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            report.skipped = dict(skipped)

    @staticmethod
    def _claim(state: CrawlState, frontier: Frontier, url: str) -> bool:
        """Mark a redirect target visited; False if it was already fetched or in flight."""
        # No await between check and add, so concurrent workers cannot both win.
        if url in state.visited:
            return False
        state.visited.add(url)
        frontier.discard(url)
        return True

    def _stop_reason(self, state: CrawlState, frontier: Frontier, now: float) -> Optional[StopReason]:
        if state.pages_fetched >= self.budget.max_pages:
            return StopReason.PAGE_BUDGET
        if now >= state.deadline:
            return StopReason.TIME_BUDGET
        if len(frontier) == 0 and state.in_flight == 0:
            return StopReason.FRONTIER_EXHAUSTED
        return None

    def _record(
        self,
        result: _WorkResult,
        state: CrawlState,
        frontier: Frontier,
        report: CrawlReport,
        skipped: Counter,
        *,
        follow: bool,
    ) -> None:
        state.in_flight -= 1
        candidate, outcome = result.candidate, result.outcome
        if not isinstance(outcome, Fetched) or result.extraction is None:
            kind = _outcome_kind(outcome)
            skipped[kind] += 1
            logger.info("skipped %s: %s %s", candidate.url, kind, getattr(outcome, "reason", ""))
            return

        final_url = outcome.final_url
        if final_url != candidate.url:
            state.visited.add(final_url)
            frontier.discard(final_url)
        if final_url in state.recorded:
            skipped["Duplicate"] += 1
            logger.info("skipped %s: redirected to already recorded %s", candidate.url, final_url)
            return
        state.recorded.add(final_url)

        extraction = result.extraction
        report.pages.append(
            Page(
                url=final_url,
                trust_tier=self.classifier.classify(final_url),
                text=extraction.text,
                links=tuple(extraction.links),
                depth=candidate.depth,
                rank=candidate.rank,
                title=extraction.title,
                final_url=final_url if final_url != candidate.url else None,
            )
        )
        state.pages_fetched += 1
        logger.info("fetched %s (%s/%s)", final_url, state.pages_fetched, self.budget.max_pages)

        if not follow or candidate.depth >= self.budget.max_depth:
            return
        for order, link in enumerate(result.children):
            frontier.push(
                CandidateUrl(
                    url=link.url,
                    depth=candidate.depth + 1,
                    rank=order,
                    trust_tier=link.trust_tier,
                    parent=candidate.url,
                )
            )

    # ---- Worker ----

    async def _work(
        self,
        candidate: CandidateUrl,
        fetcher: Fetcher,
        selector: ChildLinkSelector,
        results: "asyncio.Queue[_WorkResult]",
        visited: AbstractSet[str],
        deadline: float,
        *,
        claim: Optional[Callable[[str], bool]] = None,
    ) -> None:
        loop = asyncio.get_running_loop()
        result = _WorkResult(candidate=candidate, outcome=PermanentFailure(url=candidate.url, reason="not attempted"))
        try:
            try:
                outcome = await fetcher.fetch(candidate.url, deadline, claim=claim)
                result.outcome = outcome
                if isinstance(outcome, Fetched):
                    result.extraction = extract(
                        outcome.body,
                        outcome.final_url,
                        max_chars=self.config.max_excerpt_chars,
                        max_links=self.config.max_links_per_page,
                        encoding=outcome.encoding,
                    )
            except Exception as exc:  # broad catch keeps one bad page from ending the crawl
                logger.warning("worker failed on %s: %r", candidate.url, exc)
                result.outcome = PermanentFailure(url=candidate.url, reason=f"worker error: {exc!r}")
                result.extraction = None
                return

            extraction = result.extraction
            # No new selection once the time budget is spent.
            if extraction is None or candidate.depth >= self.budget.max_depth or loop.time() >= deadline:
                return
            offered = [
                ScoredLink.from_candidate(link, self.classifier.classify(link.url))
                for link in extraction.links
                if link.url not in visited
            ]
            try:
                result.children = await selector.select(extraction.text, offered)
            except Exception as exc:  # the page itself is kept; it just has no children
                logger.warning("child selection failed on %s: %r", candidate.url, exc)
                result.children = []
        finally:
            results.put_nowait(result)
