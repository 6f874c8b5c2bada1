from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Optional
from urllib import robotparser
from urllib.parse import urljoin, urlparse

import aiohttp
from aiohttp import ClientSession, ClientTimeout

if TYPE_CHECKING:
    from .http import HostRateLimiter

logger = logging.getLogger(__name__)

MAX_ROBOTS_BYTES = 512 * 1024
REDIRECT_STATUSES = (301, 302, 303, 307, 308)


@dataclass
class RobotsRecord:
    fetched_at: float
    parser: Optional[robotparser.RobotFileParser]
    crawl_delay: Optional[float] = None
    # Set when fetch or parse failed and the host is treated as allow-all.
    caveat: Optional[str] = None

    def allows(self, user_agent: str, url: str) -> bool:
        if self.parser is None:
            return True
        return self.parser.can_fetch(user_agent, url)


class RobotsGuard:
    """
    Per-host robots.txt permissions, fetched once per crawl and cached.

    Fetch or parse failures fail open (allow) and are logged as a caveat so a
    single misbehaving host cannot stall the crawl. Each host is fetched under
    its own lock; concurrent callers for the same host wait for the first one.

    With a `limiter`, the robots.txt request takes the same per-host slot as
    page fetches. One redirect to the same hostname is followed (http to https
    moves); any other redirect is read as "no robots.txt".
    """

    def __init__(
        self,
        session: ClientSession,
        user_agent: str,
        timeout: float = 5.0,
        limiter: Optional["HostRateLimiter"] = None,
    ) -> None:
        self.session = session
        self.user_agent = user_agent
        self.timeout = timeout
        self.limiter = limiter
        self._cache: Dict[str, RobotsRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def caveats(self) -> Dict[str, str]:
        return {host: rec.caveat for host, rec in self._cache.items() if rec.caveat}

    async def is_allowed(self, url: str) -> bool:
        rec = await self.record_for(url)
        return rec.allows(self.user_agent, url)

    async def crawl_delay(self, url: str) -> Optional[float]:
        rec = await self.record_for(url)
        return rec.crawl_delay

    async def record_for(self, url: str) -> RobotsRecord:
        parsed = urlparse(url)
        host = parsed.netloc.lower()
        rec = self._cache.get(host)
        if rec is not None:
            return rec
        lock = self._locks.setdefault(host, asyncio.Lock())
        async with lock:
            rec = self._cache.get(host)
            if rec is None:
                pacing = self.limiter.slot(host) if self.limiter is not None else contextlib.nullcontext()
                async with pacing:
                    rec = await self._fetch(f"{parsed.scheme}://{host}/robots.txt")
                self._cache[host] = rec
        return rec

    async def _fetch(self, robots_url: str) -> RobotsRecord:
        headers = {"User-Agent": self.user_agent, "Accept": "text/plain,*/*;q=0.1"}
        url = robots_url
        try:
            for hop in range(2):
                async with self.session.get(
                    url,
                    headers=headers,
                    timeout=ClientTimeout(total=self.timeout),
                    allow_redirects=False,
                ) as resp:
                    if resp.status in REDIRECT_STATUSES:
                        target = urljoin(url, resp.headers.get("Location", ""))
                        if hop == 0 and _same_hostname(robots_url, target):
                            logger.debug("robots.txt at %s moved to %s", url, target)
                            url = target
                            continue
                        # Redirected off-host or more than once: treated as absent.
                        logger.debug("robots.txt at %s redirects to %s; assuming no rules", url, target)
                        return RobotsRecord(fetched_at=time.time(), parser=None)
                    if resp.status >= 400:
                        # No robots.txt (or unreadable) means no restrictions.
                        if resp.status >= 500:
                            return self._fail_open(robots_url, f"http status {resp.status}")
                        return RobotsRecord(fetched_at=time.time(), parser=None)
                    if resp.status != 200:
                        return self._fail_open(robots_url, f"unexpected status {resp.status}")
                    raw = await self._read_capped(resp)
                    break
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            return self._fail_open(robots_url, f"fetch failed: {exc!r}")

        try:
            text = raw.decode("utf-8", errors="replace")
            parser = robotparser.RobotFileParser(robots_url)
            parser.parse(text.splitlines())
            delay = parser.crawl_delay(self.user_agent)
        except (ValueError, UnicodeError) as exc:
            return self._fail_open(robots_url, f"parse failed: {exc!r}")
        return RobotsRecord(
            fetched_at=time.time(),
            parser=parser,
            crawl_delay=float(delay) if delay is not None else None,
        )

    @staticmethod
    async def _read_capped(resp: aiohttp.ClientResponse) -> bytes:
        chunks = []
        size = 0
        async for chunk in resp.content.iter_chunked(64 * 1024):
            chunks.append(chunk)
            size += len(chunk)
            if size >= MAX_ROBOTS_BYTES:
                break
        return b"".join(chunks)[:MAX_ROBOTS_BYTES]

    def _fail_open(self, robots_url: str, reason: str) -> RobotsRecord:
        logger.warning("robots.txt unavailable at %s (%s); allowing all paths", robots_url, reason)
        return RobotsRecord(fetched_at=time.time(), parser=None, caveat=reason)


def _same_hostname(a: str, b: str) -> bool:
    # Scheme and port may change (http -> https); the hostname may not.
    return (urlparse(a).hostname or "") == (urlparse(b).hostname or "")
