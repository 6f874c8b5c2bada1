from __future__ import annotations

from typing import Any, Callable, Dict, Optional
import logging

try:
    from fastapi import Depends, FastAPI, HTTPException
    from pydantic import BaseModel, Field
except ImportError as exc:  # pragma: no cover - optional dependency
    raise RuntimeError(
        "FastAPI not installed. Install with `pip install 'llm-spider[api]'` "
        "or avoid using the API server."
    ) from exc

from ..config import SpiderConfig, parse_duration
from ..engines.base import CrawlReport
from ..export.base import Composer
from ..errors import ConfigError, ProviderUnavailable
from ..ui.cli import crawl_with_openai
from ..utils.loader import load_symbol
from ..version import __version__

logger = logging.getLogger(__name__)

app = FastAPI(title="llm-spider API", version=__version__)


class SpiderRequest(BaseModel):
    query: str = Field(min_length=1)
    max_chars: Optional[int] = None
    min_sources: Optional[int] = None
    search_limit: Optional[int] = None
    max_pages: Optional[int] = None
    max_depth: Optional[int] = None
    max_elapsed: Optional[str] = None  # e.g. "30s"
    max_child_candidates: Optional[int] = None
    max_children_per_page: Optional[int] = None


class SpiderResponse(BaseModel):
    markdown: str
    pages_fetched: int
    stop_reason: str


# Takes (config, engine class, query) and returns the crawl report.
Runner = Callable[[SpiderConfig, Any, str], Any]


def get_runner() -> Runner:
    return crawl_with_openai


@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/spider", response_model=SpiderResponse)
async def spider(req: SpiderRequest, runner: Runner = Depends(get_runner)) -> SpiderResponse:
    try:
        cfg = SpiderConfig.from_env().with_budget(
            max_chars=req.max_chars,
            min_sources=req.min_sources,
            search_limit=req.search_limit,
            max_pages=req.max_pages,
            max_depth=req.max_depth,
            max_elapsed=parse_duration(req.max_elapsed) if req.max_elapsed else None,
            max_child_candidates=req.max_child_candidates,
            max_children_per_page=req.max_children_per_page,
        )
        cfg.validate()
        engine_cls = load_symbol(cfg.engine)
        composer_cls = load_symbol(cfg.composer)
    except (ConfigError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        report: CrawlReport = await runner(cfg, engine_cls, req.query)
    except ProviderUnavailable as exc:
        logger.warning("seed search failed for %r: %s", req.query, exc)
        raise HTTPException(status_code=502, detail=f"seed search unavailable: {exc}") from exc

    composer: Composer = composer_cls(cfg.budget)
    return SpiderResponse(
        markdown=composer.compose(report),
        pages_fetched=report.pages_fetched,
        stop_reason=report.stop_reason.value,
    )
