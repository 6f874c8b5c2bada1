from __future__ import annotations

import fnmatch
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse


class TrustTier(IntEnum):
    """Discrete trust classification. Higher value means more trusted."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def parse(cls, value: str) -> "TrustTier":
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise ValueError(f"invalid trust tier: {value!r}") from None

    def __str__(self) -> str:
        return self.label


# Evaluated top to bottom, first match wins. Explicit low-trust hosts come first
# so that e.g. a forum hosted under a university domain can still be demoted.
DEFAULT_LOW_PATTERNS: Tuple[str, ...] = (
    "reddit.com",
    "x.com",
    "twitter.com",
    "quora.com",
    "pinterest.com",
)
DEFAULT_HIGH_PATTERNS: Tuple[str, ...] = (
    "*.gov",
    "*.gov.*",
    "*.mil",
    "*.edu",
    "*.edu.*",
    "*.ac.*",
    "*.go.jp",
    "*.int",
)
DEFAULT_MEDIUM_PATTERNS: Tuple[str, ...] = (
    "wikipedia.org",
    "arxiv.org",
    "developer.mozilla.org",
    "docs.python.org",
    "github.com",
)


@dataclass(frozen=True)
class TrustRule:
    pattern: str
    tier: TrustTier

    def matches(self, host: str) -> bool:
        pat = self.pattern.lower().strip(".")
        if any(ch in pat for ch in "*?["):
            return fnmatch.fnmatchcase(host, pat)
        # Plain domains cover their subdomains too.
        return host == pat or host.endswith("." + pat)


class TrustClassifier:
    """
    Maps a URL to a TrustTier with an ordered host rule table.
    Pure and deterministic: no I/O, never raises.
    """

    def __init__(
        self,
        high: Optional[Iterable[str]] = None,
        medium: Optional[Iterable[str]] = None,
        low: Optional[Iterable[str]] = None,
    ) -> None:
        rules: List[TrustRule] = []
        rules.extend(TrustRule(p, TrustTier.LOW) for p in (DEFAULT_LOW_PATTERNS if low is None else low))
        rules.extend(TrustRule(p, TrustTier.HIGH) for p in (DEFAULT_HIGH_PATTERNS if high is None else high))
        rules.extend(TrustRule(p, TrustTier.MEDIUM) for p in (DEFAULT_MEDIUM_PATTERNS if medium is None else medium))
        self._rules: Sequence[TrustRule] = tuple(rules)

    @property
    def rules(self) -> Sequence[TrustRule]:
        return self._rules

    def classify(self, url: str) -> TrustTier:
        try:
            host = (urlparse(url).hostname or "").lower().strip(".")
        except ValueError:
            return TrustTier.LOW
        if not host:
            return TrustTier.LOW
        for rule in self._rules:
            if rule.matches(host):
                return rule.tier
        return TrustTier.LOW
