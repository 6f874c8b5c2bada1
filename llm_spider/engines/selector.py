from __future__ import annotations

import asyncio
import logging
from typing import List, Sequence

from ..errors import ModelUnavailable
from ..providers.base import LinkSelectionModel, ScoredLink
from ..utils.parsing import normalize_url

logger = logging.getLogger(__name__)


class ChildLinkSelector:
    """
    Narrows a page's outbound links to a bounded follow-set.

    Candidates are cut to `max_candidates` (extractor order) before the model sees
    them. The model is consulted only when more than `max_children` remain, and
    its answer is filtered against the offered set, so page content cannot add,
    rewrite or reorder URLs beyond picking among candidates. Any model failure
    falls back to the first `max_children` candidates.
    """

    def __init__(
        self,
        model: LinkSelectionModel,
        *,
        max_candidates: int,
        max_children: int,
        query: str = "",
        timeout: float = 20.0,
    ) -> None:
        self.model = model
        self.max_candidates = max_candidates
        self.max_children = max_children
        self.query = query
        self.timeout = timeout

    async def select(self, excerpt: str, candidates: Sequence[ScoredLink]) -> List[ScoredLink]:
        offered = list(candidates[: self.max_candidates])
        if len(offered) <= self.max_children:
            return offered

        try:
            chosen = await asyncio.wait_for(
                self.model.select(excerpt, offered, self.max_children, query=self.query),
                timeout=self.timeout,
            )
        except ModelUnavailable as exc:
            logger.warning("link selection unavailable, using first %s candidates: %s", self.max_children, exc)
            return offered[: self.max_children]
        except asyncio.TimeoutError:
            logger.warning("link selection timed out, using first %s candidates", self.max_children)
            return offered[: self.max_children]
        except Exception as exc:  # a provider bug must not cost the page its children
            logger.warning(
                "link selection failed unexpectedly, using first %s candidates: %r", self.max_children, exc
            )
            return offered[: self.max_children]

        by_url = {c.url: c for c in offered}
        picked: List[ScoredLink] = []
        for url in chosen:
            try:
                link = by_url.pop(normalize_url(url), None)
            except ValueError:
                link = None
            if link is None:
                logger.debug("ignoring selected url outside candidate set: %r", url)
                continue
            picked.append(link)
            if len(picked) >= self.max_children:
                break

        if chosen and not picked:
            logger.warning("link selection returned no offered url, using first %s candidates", self.max_children)
            return offered[: self.max_children]
        return picked
