from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup
from bs4.element import Tag

# Elements whose content is never treated as page text.
NOISE_TAGS = (
    "script", "style", "noscript", "template", "iframe", "object", "embed",
    "svg", "canvas", "nav", "header", "footer", "aside", "form", "button", "select",
)
CONTENT_ROOTS = ("main", "article", "[role=main]", "body")
MAX_ANCHOR_CHARS = 120
_WS = re.compile(r"\s+")


@dataclass(frozen=True)
class LinkCandidate:
    url: str
    anchor_text: str = ""


@dataclass(frozen=True)
class Extraction:
    text: str
    links: List[LinkCandidate]
    title: Optional[str] = None


def normalize_url(url: str) -> str:
    """
    Normalize URL for deduplication: strip fragment, lower-case scheme and host,
    drop default ports, use "/" for an empty path.
    """
    parts = urlparse(url.strip())
    scheme = parts.scheme.lower()
    netloc = parts.netloc.lower()
    if (scheme == "http" and netloc.endswith(":80")) or (scheme == "https" and netloc.endswith(":443")):
        netloc = netloc.rsplit(":", 1)[0]
    path = parts.path or "/"
    return urlunparse((scheme, netloc, path, parts.params, parts.query, ""))


def host_of(url: str) -> str:
    """Host key used for rate limiting and robots caching (includes a non-default port)."""
    return urlparse(url).netloc.lower()


def normalize_text(text: str) -> str:
    return _WS.sub(" ", text).strip()


def truncate_chars(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip()


def _content_root(soup: BeautifulSoup) -> Tag | BeautifulSoup:
    for selector in CONTENT_ROOTS:
        node = soup.select_one(selector)
        if node is not None:
            return node
    return soup


def extract(
    html: bytes | str,
    base_url: str,
    *,
    max_chars: int = 600,
    max_links: int = 200,
    encoding: Optional[str] = None,
) -> Extraction:
    """
    Turn untrusted HTML into a bounded text excerpt and a list of outbound links.

    Nothing is executed or fetched: script-like and structural noise elements are
    removed from the tree before text is collected. Links are resolved against
    base_url, restricted to http(s), stripped of fragments, deduplicated in
    document order and capped at max_links.
    """
    if isinstance(html, bytes):
        soup = BeautifulSoup(html, "html.parser", from_encoding=encoding)
    else:
        soup = BeautifulSoup(html, "html.parser")

    title_tag = soup.find("title")
    title = normalize_text(title_tag.get_text(" ")) if title_tag else None

    for tag in soup.find_all(list(NOISE_TAGS)):
        if not tag.decomposed:  # nested noise goes away with its parent
            tag.decompose()

    root = _content_root(soup)
    # Collect pieces until well past the excerpt limit, then cut once.
    pieces: List[str] = []
    size = 0
    for piece in root.stripped_strings:
        pieces.append(piece)
        size += len(piece) + 1
        if size >= max_chars * 4:
            break
    text = truncate_chars(normalize_text(" ".join(pieces)), max_chars)

    links: List[LinkCandidate] = []
    seen: Dict[str, int] = {}
    page_key = normalize_url(base_url)
    for a in root.select("a[href]"):
        href = (a.get("href") or "").strip()
        if not href:
            continue
        try:
            absolute = normalize_url(urljoin(base_url, href))
        except ValueError:
            continue
        if urlparse(absolute).scheme not in ("http", "https") or absolute == page_key:
            continue
        anchor = truncate_chars(normalize_text(a.get_text(" ")), MAX_ANCHOR_CHARS)
        if absolute in seen:
            # Keep the first position but prefer a non-empty anchor text.
            idx = seen[absolute]
            if not links[idx].anchor_text and anchor:
                links[idx] = LinkCandidate(url=absolute, anchor_text=anchor)
            continue
        seen[absolute] = len(links)
        links.append(LinkCandidate(url=absolute, anchor_text=anchor))
        if len(links) >= max_links:
            break

    return Extraction(text=text, links=links, title=title or None)


def split_claims(text: str, max_claims: int = 3) -> Tuple[str, ...]:
    """
    Split an excerpt into whole sentences. A trailing fragment without
    terminal punctuation is dropped unless it is the only content.
    """
    text = normalize_text(text)
    if not text:
        return ()
    sentences = [s.strip() for s in re.split(r"(?<=[.!?。])\s+", text) if s.strip()]
    complete = [s for s in sentences if s[-1] in ".!?。"]
    if not complete:
        complete = sentences[:1]
    return tuple(complete[:max_claims])
