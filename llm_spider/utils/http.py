from __future__ import annotations

import asyncio
import enum
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, Optional, Union
from urllib.parse import urljoin

import aiohttp
from aiohttp import ClientSession, ClientTimeout

from .parsing import host_of, normalize_url
from .robots import RobotsGuard
from .safety import check_target

logger = logging.getLogger(__name__)

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml", "text/plain")
REDIRECT_STATUSES = (301, 302, 303, 307, 308)


# ---- Outcomes ---------------------------------------------------------------

@dataclass(frozen=True)
class Fetched:
    body: bytes
    status: int
    url: str
    final_url: str
    encoding: Optional[str] = None
    truncated: bool = False


@dataclass(frozen=True)
class RobotsBlocked:
    url: str


@dataclass(frozen=True)
class Unsafe:
    url: str
    reason: str


@dataclass(frozen=True)
class TransientFailure:
    url: str
    reason: str
    attempts: int = 1


@dataclass(frozen=True)
class PermanentFailure:
    url: str
    reason: str
    status: Optional[int] = None


@dataclass(frozen=True)
class Duplicate:
    """A redirect led to a URL this crawl has already fetched or is fetching."""

    url: str
    target: str


FetchOutcome = Union[Fetched, RobotsBlocked, Unsafe, TransientFailure, PermanentFailure, Duplicate]


class _Retryable(Exception):
    """Internal signal: the attempt failed in a way worth retrying."""


class RetryState(enum.Enum):
    ATTEMPTING = "attempting"
    BACKOFF_WAIT = "backoff_wait"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# ---- Rate limiting ----------------------------------------------------------

class DeadlineExceeded(Exception):
    """The crawl deadline passed while waiting for a host slot."""


@dataclass
class _HostSlot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_request: Optional[float] = None
    interval: float = 0.0


class HostRateLimiter:
    """
    Minimum interval between requests to the same host, shared by all fetch workers.

    A slot is held for the duration of one request and always released on exit,
    so requests to one host are serialized while different hosts proceed in parallel.
    """

    def __init__(
        self,
        min_interval: float = 0.15,
        max_interval: float = 5.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.min_interval = min_interval
        self.max_interval = max_interval
        self._clock = clock
        self._hosts: Dict[str, _HostSlot] = {}

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    def set_interval(self, host: str, interval: Optional[float]) -> None:
        slot = self._hosts.setdefault(host, _HostSlot(interval=self.min_interval))
        wanted = max(self.min_interval, interval or 0.0)
        slot.interval = min(max(slot.interval, wanted), self.max_interval)

    def interval_for(self, host: str) -> float:
        slot = self._hosts.get(host)
        return slot.interval if slot else self.min_interval

    @asynccontextmanager
    async def slot(self, host: str, deadline: Optional[float] = None) -> AsyncIterator[None]:
        slot = self._hosts.setdefault(host, _HostSlot(interval=self.min_interval))
        remaining = None if deadline is None else deadline - self._now()
        if remaining is not None and remaining <= 0:
            raise DeadlineExceeded(host)
        try:
            await asyncio.wait_for(slot.lock.acquire(), timeout=remaining)
        except asyncio.TimeoutError:
            raise DeadlineExceeded(host) from None
        try:
            if slot.last_request is not None:
                wait = slot.last_request + slot.interval - self._now()
                if wait > 0:
                    if deadline is not None and self._now() + wait > deadline:
                        raise DeadlineExceeded(host)
                    await asyncio.sleep(wait)
            try:
                yield
            finally:
                slot.last_request = self._now()
        finally:
            slot.lock.release()


# ---- Fetching ---------------------------------------------------------------

def create_session(user_agent: Optional[str] = None, limit: int = 0) -> ClientSession:
    """
    Create a shared aiohttp ClientSession.
    """
    # Note: caller is responsible for closing the session (await session.close()).
    connector = aiohttp.TCPConnector(limit=limit)  # 0 = unlimited; concurrency managed by the engine
    headers = {"User-Agent": user_agent} if user_agent else None
    return aiohttp.ClientSession(connector=connector, headers=headers)


def _charset(content_type: str) -> Optional[str]:
    for part in content_type.split(";")[1:]:
        key, _, value = part.strip().partition("=")
        if key.lower() == "charset" and value:
            return value.strip('"').strip()
    return None


class Fetcher:
    """
    Single safety-checked, rate-limited, retried page retrieval.

    Order of checks: scheme and SSRF guard, robots.txt, host rate limit, then
    network I/O. Timeouts and 5xx responses are retried with exponential backoff
    up to `retries` extra attempts; 4xx responses fail immediately.
    """

    def __init__(
        self,
        session: ClientSession,
        robots: RobotsGuard,
        limiter: HostRateLimiter,
        *,
        user_agent: str,
        timeout: float = 10.0,
        retries: int = 2,
        max_body_bytes: int = 1024 * 1024,
        max_redirects: int = 5,
        allow_local: bool = False,
        backoff_base: float = 0.25,
        backoff_cap: float = 4.0,
    ) -> None:
        self.session = session
        self.robots = robots
        self.limiter = limiter
        self.user_agent = user_agent
        self.timeout = timeout
        self.retries = retries
        self.max_body_bytes = max_body_bytes
        self.max_redirects = max_redirects
        self.allow_local = allow_local
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap

    async def fetch(
        self,
        url: str,
        deadline: Optional[float] = None,
        claim: Optional[Callable[[str], bool]] = None,
    ) -> FetchOutcome:
        """
        Fetch `url`, following redirects by hand so every hop is checked again.

        `claim` is asked before each redirect hop is requested; when it returns
        False the target is already fetched or in flight elsewhere and the
        outcome is `Duplicate` without touching the network.
        """
        current = url
        for _ in range(self.max_redirects + 1):
            if current != url and claim is not None and not claim(current):
                logger.debug("redirect target %s already claimed, not fetching", current)
                return Duplicate(url=url, target=current)
            outcome = await self._fetch_one(current, deadline)
            if not isinstance(outcome, _Redirect):
                if isinstance(outcome, Fetched) and current != url:
                    return Fetched(
                        body=outcome.body,
                        status=outcome.status,
                        url=url,
                        final_url=current,
                        encoding=outcome.encoding,
                        truncated=outcome.truncated,
                    )
                return outcome
            logger.debug("redirect %s -> %s", current, outcome.location)
            current = outcome.location
        return PermanentFailure(url=url, reason=f"more than {self.max_redirects} redirects")

    async def _fetch_one(self, url: str, deadline: Optional[float]) -> Union[FetchOutcome, "_Redirect"]:
        try:
            reason = await check_target(url, allow_local=self.allow_local)
        except (OSError, UnicodeError) as exc:
            return PermanentFailure(url=url, reason=f"cannot resolve host: {exc}")
        if reason:
            return Unsafe(url=url, reason=reason)

        if not await self.robots.is_allowed(url):
            return RobotsBlocked(url=url)

        host = host_of(url)
        self.limiter.set_interval(host, await self.robots.crawl_delay(url))

        state = RetryState.ATTEMPTING
        attempt = 0
        last_error = ""
        while True:
            if state in (RetryState.ATTEMPTING, RetryState.RETRYING):
                attempt += 1
                try:
                    async with self.limiter.slot(host, deadline):
                        result = await self._request(url)
                    state = RetryState.SUCCEEDED
                except _Retryable as exc:
                    last_error = str(exc)
                    logger.debug("fetch attempt %s failed for %s: %s", attempt, url, exc)
                    state = RetryState.BACKOFF_WAIT if attempt <= self.retries else RetryState.FAILED
                except DeadlineExceeded:
                    last_error = "crawl deadline reached while waiting for host slot"
                    state = RetryState.FAILED
            elif state is RetryState.BACKOFF_WAIT:
                delay = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_cap)
                if deadline is not None and self._now() + delay >= deadline:
                    last_error = f"{last_error}; no time left to retry"
                    state = RetryState.FAILED
                else:
                    await asyncio.sleep(delay)
                    state = RetryState.RETRYING
            elif state is RetryState.SUCCEEDED:
                return result
            else:
                logger.info("giving up on %s after %s attempt(s): %s", url, attempt, last_error)
                return TransientFailure(url=url, reason=last_error, attempts=attempt)

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    async def _request(self, url: str) -> Union[FetchOutcome, "_Redirect"]:
        headers = {"User-Agent": self.user_agent, "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.1"}
        try:
            async with self.session.get(
                url,
                headers=headers,
                timeout=ClientTimeout(total=self.timeout),
                allow_redirects=False,
            ) as resp:
                status = resp.status
                if status in REDIRECT_STATUSES and resp.headers.get("Location"):
                    return _Redirect(location=normalize_url(urljoin(url, resp.headers["Location"])))
                if status >= 500:
                    raise _Retryable(f"http status {status}")
                if status >= 400:
                    return PermanentFailure(url=url, reason=f"http status {status}", status=status)
                if status < 200 or status >= 300:
                    return PermanentFailure(url=url, reason=f"unexpected status {status}", status=status)

                content_type = resp.headers.get("Content-Type", "text/html")
                mime = content_type.split(";", 1)[0].strip().lower()
                if mime and mime not in HTML_CONTENT_TYPES:
                    return PermanentFailure(url=url, reason=f"unsupported content type {mime}", status=status)

                body, truncated = await self._read_capped(resp)
                if truncated:
                    logger.debug("truncated body of %s at %s bytes", url, self.max_body_bytes)
                return Fetched(
                    body=body,
                    status=status,
                    url=url,
                    final_url=url,
                    encoding=_charset(content_type),
                    truncated=truncated,
                )
        except asyncio.TimeoutError as exc:
            raise _Retryable("timeout") from exc
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError) as exc:
            raise _Retryable(f"connection error: {exc!r}") from exc
        except aiohttp.ClientError as exc:
            return PermanentFailure(url=url, reason=f"client error: {exc!r}")

    async def _read_capped(self, resp: aiohttp.ClientResponse) -> tuple[bytes, bool]:
        chunks = []
        size = 0
        async for chunk in resp.content.iter_chunked(64 * 1024):
            chunks.append(chunk)
            size += len(chunk)
            if size >= self.max_body_bytes:
                break
        body = b"".join(chunks)
        truncated = size > self.max_body_bytes or (size == self.max_body_bytes and not resp.content.at_eof())
        return body[: self.max_body_bytes], truncated


@dataclass(frozen=True)
class _Redirect:
    location: str
