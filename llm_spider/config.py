from __future__ import annotations

from dataclasses import dataclass, field, asdict, fields, replace
from typing import List, Optional, Dict, Any
import os
import json

from .errors import ConfigError
from .version import __version__, CONFIG_SCHEMA_VERSION

REASONING_EFFORTS = ("none", "minimal", "low", "medium", "high", "xhigh")
DEFAULT_BASE_URL = "https://api.openai.com/v1/"
DEFAULT_MODEL = "gpt-4o-mini"


@dataclass(frozen=True)
class Budget:
    """
    Immutable limits for one crawl run.
    max_elapsed is in seconds.
    """
    max_chars: int = 4000
    min_sources: int = 3
    search_limit: int = 10
    max_pages: int = 20
    max_depth: int = 1
    max_elapsed: float = 30.0
    max_child_candidates: int = 20
    max_children_per_page: int = 3

    def validate(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "max_depth":
                if value < 0:
                    raise ConfigError("max_depth must be >= 0")
            elif value <= 0:
                raise ConfigError(f"{f.name} must be > 0")


@dataclass
class SpiderConfig:
    """
    Canonical configuration object passed throughout the system.
    Provider credentials are carried as opaque values; nothing here talks to the network.
    """
    schema_version: int = CONFIG_SCHEMA_VERSION
    budget: Budget = field(default_factory=Budget)
    # Fetching
    max_concurrency: int = 4
    request_timeout: float = 10.0
    retries: int = 2
    max_body_bytes: int = 1024 * 1024
    max_redirects: int = 5
    min_host_interval: float = 0.15
    max_host_interval: float = 5.0
    robots_timeout: float = 5.0
    drain_grace: float = 2.0
    user_agent: str = f"llm-spider/{__version__} (respectful)"
    allow_local: bool = False
    # Extraction
    max_excerpt_chars: int = 600
    max_links_per_page: int = 200
    # Providers
    api_key: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    search_model: str = DEFAULT_MODEL
    select_model: str = DEFAULT_MODEL
    reasoning_effort: str = "medium"
    model_timeout: float = 20.0
    # Trust rules; None keeps the built-in defaults for that tier.
    trust_high: Optional[List[str]] = None
    trust_medium: Optional[List[str]] = None
    trust_low: Optional[List[str]] = None
    # Dotted paths for engine/composer to allow runtime swapping without code changes.
    engine: str = "llm_spider.engines.spider_engine:SpiderCrawlEngine"
    composer: str = "llm_spider.export.markdown:MarkdownComposer"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("api_key", None)
        return data

    def with_budget(self, **changes: Any) -> "SpiderConfig":
        """Return a copy with the given budget fields replaced (None values are ignored)."""
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes:
            return self
        return replace(self, budget=replace(self.budget, **changes))

    # ---------- Loaders ----------

    @classmethod
    def from_env(cls) -> "SpiderConfig":
        """
        Build config from environment variables (all optional).
        """
        def _get(name: str, default: str) -> str:
            return os.getenv(name, default)

        def _list(name: str) -> Optional[List[str]]:
            raw = os.getenv(name)
            if raw is None:
                return None
            return [p.strip() for p in raw.split(",") if p.strip()]

        d = Budget()
        try:
            budget = Budget(
                max_chars=int(_get("LLM_SPIDER_MAX_CHARS", str(d.max_chars))),
                min_sources=int(_get("LLM_SPIDER_MIN_SOURCES", str(d.min_sources))),
                search_limit=int(_get("LLM_SPIDER_SEARCH_LIMIT", str(d.search_limit))),
                max_pages=int(_get("LLM_SPIDER_MAX_PAGES", str(d.max_pages))),
                max_depth=int(_get("LLM_SPIDER_MAX_DEPTH", str(d.max_depth))),
                max_elapsed=parse_duration(_get("LLM_SPIDER_MAX_ELAPSED", "30s")),
                max_child_candidates=int(_get("LLM_SPIDER_MAX_CHILD_CANDIDATES", str(d.max_child_candidates))),
                max_children_per_page=int(_get("LLM_SPIDER_MAX_CHILDREN_PER_PAGE", str(d.max_children_per_page))),
            )
            return cls(
                budget=budget,
                max_concurrency=int(_get("LLM_SPIDER_MAX_CONCURRENCY", "4")),
                request_timeout=float(_get("LLM_SPIDER_REQUEST_TIMEOUT", "10.0")),
                retries=int(_get("LLM_SPIDER_RETRIES", "2")),
                user_agent=_get("LLM_SPIDER_USER_AGENT", f"llm-spider/{__version__} (respectful)"),
                allow_local=_get("LLM_SPIDER_ALLOW_LOCAL", "0").strip().lower() in {"1", "true", "yes", "on"},
                api_key=os.getenv("OPENAI_API_KEY") or None,
                base_url=_get("OPENAI_BASE_URL", DEFAULT_BASE_URL),
                search_model=_get("LLM_SPIDER_OPENAI_SEARCH_MODEL", DEFAULT_MODEL),
                select_model=_get("LLM_SPIDER_OPENAI_SELECT_MODEL", DEFAULT_MODEL),
                reasoning_effort=_get("LLM_SPIDER_OPENAI_REASONING_EFFORT", "medium").strip().lower(),
                trust_high=_list("LLM_SPIDER_TRUST_HIGH"),
                trust_medium=_list("LLM_SPIDER_TRUST_MEDIUM"),
                trust_low=_list("LLM_SPIDER_TRUST_LOW"),
                engine=_get("LLM_SPIDER_ENGINE", "llm_spider.engines.spider_engine:SpiderCrawlEngine"),
                composer=_get("LLM_SPIDER_COMPOSER", "llm_spider.export.markdown:MarkdownComposer"),
            )
        except ValueError as exc:
            raise ConfigError(f"invalid environment configuration: {exc}") from exc

    @classmethod
    def from_file(cls, path: str | os.PathLike[str]) -> "SpiderConfig":
        """
        Load configuration from a JSON file. The API key is still taken from the environment.
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"cannot read config {path}: {exc}") from exc

        schema = data.get("schema_version", CONFIG_SCHEMA_VERSION)
        if schema > CONFIG_SCHEMA_VERSION:
            raise ConfigError(f"config schema {schema} is newer than supported ({CONFIG_SCHEMA_VERSION})")
        data["schema_version"] = CONFIG_SCHEMA_VERSION

        budget_raw = dict(data.pop("budget", {}) or {})
        if isinstance(budget_raw.get("max_elapsed"), str):
            budget_raw["max_elapsed"] = parse_duration(budget_raw["max_elapsed"])
        data.pop("api_key", None)
        try:
            cfg = cls(budget=Budget(**budget_raw), **data)
        except TypeError as exc:
            raise ConfigError(f"unknown config key in {path}: {exc}") from exc
        cfg.api_key = os.getenv("OPENAI_API_KEY") or None
        return cfg

    # ---------- Validation ----------

    def validate(self, require_api_key: bool = True) -> None:
        self.budget.validate()
        if require_api_key and not self.api_key:
            raise ConfigError("OPENAI_API_KEY is not set")
        if self.max_concurrency <= 0:
            raise ConfigError("max_concurrency must be > 0")
        if self.request_timeout <= 0 or self.model_timeout <= 0 or self.robots_timeout <= 0:
            raise ConfigError("timeouts must be > 0")
        if self.retries < 0:
            raise ConfigError("retries must be >= 0")
        if self.min_host_interval < 0 or self.max_host_interval < self.min_host_interval:
            raise ConfigError("host interval bounds are inconsistent")
        if self.max_body_bytes <= 0 or self.max_excerpt_chars <= 0 or self.max_links_per_page <= 0:
            raise ConfigError("size caps must be > 0")
        if self.reasoning_effort not in REASONING_EFFORTS:
            raise ConfigError(
                f"reasoning_effort must be one of {', '.join(REASONING_EFFORTS)}, got {self.reasoning_effort!r}"
            )
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigError(f"base_url must be http(s): {self.base_url!r}")


_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "sec": 1.0, "m": 60.0, "min": 60.0, "h": 3600.0}


def parse_duration(text: str) -> float:
    """
    Parse "30s", "500ms", "2m", "1m30s" or a bare number of seconds.
    """
    raw = text.strip().lower()
    if not raw:
        raise ValueError("empty duration")
    try:
        return float(raw)
    except ValueError:
        pass

    total = 0.0
    number = ""
    unit = ""
    parts: List[tuple[str, str]] = []
    for ch in raw.replace(" ", ""):
        if ch.isdigit() or ch == ".":
            if unit:
                parts.append((number, unit))
                number, unit = "", ""
            number += ch
        else:
            unit += ch
    parts.append((number, unit))

    for number, unit in parts:
        if not number or unit not in _DURATION_UNITS:
            raise ValueError(f"invalid duration: {text!r}")
        total += float(number) * _DURATION_UNITS[unit]
    return total
