from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any, List

from ..config import REASONING_EFFORTS, SpiderConfig, parse_duration
from ..engines.base import CrawlReport
from ..export.base import Composer
from ..errors import ConfigError, ProviderUnavailable
from ..providers.openai import OpenAIClient
from ..utils.loader import load_symbol
from ..utils.logging import setup_logging
from ..version import __version__

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PROVIDER = 1
EXIT_CONFIG = 2


def _duration(text: str) -> float:
    try:
        return parse_duration(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_arg_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=str, default=None, help="Path to config JSON (default: environment)")
    common.add_argument("--log-level", type=str, default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")

    p = argparse.ArgumentParser(prog="llm-spider", description="Budgeted, trust-aware research crawler")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = p.add_subparsers(dest="command", required=True)

    s = sub.add_parser("spider", parents=[common], help="Answer a query with a cited Markdown report")
    s.add_argument("--query", type=str, required=True, help="Natural-language query")
    s.add_argument("--max-chars", type=int, default=None, help="Maximum report length (default: 4000)")
    s.add_argument("--min-sources", type=int, default=None, help="Sources expected in the report (default: 3)")
    s.add_argument("--search-limit", type=int, default=None, help="Seed URLs requested from search (default: 10)")
    s.add_argument("--max-pages", type=int, default=None, help="Successful page fetches allowed (default: 20)")
    s.add_argument("--max-depth", type=int, default=None, help="Link depth below seeds (default: 1)")
    s.add_argument("--max-elapsed", type=_duration, default=None, help="Wall-clock budget, e.g. 30s, 500ms (default: 30s)")
    s.add_argument("--max-child-candidates", type=int, default=None,
                   help="Links per page offered to the selector (default: 20)")
    s.add_argument("--max-children-per-page", type=int, default=None,
                   help="Links per page followed (default: 3)")
    s.add_argument("--max-concurrency", type=int, default=None, help="Concurrent fetches (default: 4)")
    s.add_argument("--reasoning-effort", choices=REASONING_EFFORTS, default=None,
                   help="Reasoning effort (default: medium; env: LLM_SPIDER_OPENAI_REASONING_EFFORT)")
    s.add_argument("--allow-local", action="store_true", default=None,
                   help="Permit loopback/private targets (testing only)")

    srv = sub.add_parser("serve", parents=[common], help="Run the REST API server")
    srv.add_argument("--host", type=str, default="127.0.0.1", help="API host")
    srv.add_argument("--port", type=int, default=8000, help="API port")
    return p


def _load_config(args: argparse.Namespace) -> SpiderConfig:
    if args.config:
        cfg = SpiderConfig.from_file(args.config)
    else:
        cfg = SpiderConfig.from_env()

    cfg = cfg.with_budget(
        max_chars=args.max_chars,
        min_sources=args.min_sources,
        search_limit=args.search_limit,
        max_pages=args.max_pages,
        max_depth=args.max_depth,
        max_elapsed=args.max_elapsed,
        max_child_candidates=args.max_child_candidates,
        max_children_per_page=args.max_children_per_page,
    )
    if args.max_concurrency is not None:
        cfg.max_concurrency = args.max_concurrency
    if args.reasoning_effort:
        cfg.reasoning_effort = args.reasoning_effort
    if args.allow_local:
        cfg.allow_local = True

    cfg.validate()
    return cfg


def run_server(host: str, port: int) -> None:
    try:
        import uvicorn  # type: ignore
    except ImportError as exc:  # pragma: no cover - optional dep
        raise SystemExit("To run the API, install dependencies: pip install 'llm-spider[api]'") from exc
    uvicorn.run("llm_spider.apis.app:app", host=host, port=port)


async def crawl_with_openai(cfg: SpiderConfig, engine_cls: Any, query: str) -> CrawlReport:
    async with OpenAIClient.from_config(cfg) as client:
        engine = engine_cls(cfg, seeder=client, model=client)
        return await engine.crawl(query)


def run_cli(argv: List[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    setup_logging(args.log_level)

    if args.command == "serve":
        run_server(args.host, args.port)
        return EXIT_OK

    try:
        cfg = _load_config(args)
        # Dynamic engine + composer loading so upgrades don't require code edits.
        engine_cls = load_symbol(cfg.engine)
        composer_cls = load_symbol(cfg.composer)
    except ConfigError as exc:
        print(f"llm-spider: configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    logger.info(
        "spider start: query=%r max_pages=%s max_depth=%s max_elapsed=%.1fs",
        args.query, cfg.budget.max_pages, cfg.budget.max_depth, cfg.budget.max_elapsed,
    )
    try:
        report: CrawlReport = asyncio.run(crawl_with_openai(cfg, engine_cls, args.query))
    except ProviderUnavailable as exc:
        print(f"llm-spider: no seed URLs could be obtained: {exc}", file=sys.stderr)
        return EXIT_PROVIDER

    composer: Composer = composer_cls(cfg.budget)
    markdown = composer.compose(report)
    sys.stdout.write(markdown)
    logger.info("Pages: %s | Stop: %s | Chars: %s", report.pages_fetched, report.stop_reason.value, len(markdown))
    return EXIT_OK
