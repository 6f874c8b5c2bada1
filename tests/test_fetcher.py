import asyncio
from contextlib import asynccontextmanager

import pytest

from llm_spider.utils.http import (
    Duplicate,
    Fetched,
    Fetcher,
    HostRateLimiter,
    PermanentFailure,
    RobotsBlocked,
    TransientFailure,
    Unsafe,
    create_session,
)
from llm_spider.utils.parsing import host_of
from llm_spider.utils.robots import RobotsGuard

from .conftest import page

UA = "llm-spider-tests"


@asynccontextmanager
async def fetcher_for(**kwargs):
    session = create_session(UA)
    try:
        robots = RobotsGuard(session, UA, timeout=1.0)
        options = dict(user_agent=UA, timeout=2.0, retries=0, allow_local=True, backoff_base=0.01)
        options.update(kwargs)
        yield Fetcher(session, robots, HostRateLimiter(0.0, 1.0), **options)
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_fetch_ok(make_site):
    site = await make_site()
    async with fetcher_for() as fetcher:
        outcome = await fetcher.fetch(site.url("/a"))
    assert isinstance(outcome, Fetched)
    assert outcome.status == 200
    assert outcome.final_url == site.url("/a")
    assert b"Alpha text." in outcome.body
    assert outcome.encoding == "utf-8"
    assert not outcome.truncated


@pytest.mark.asyncio
async def test_client_error_is_permanent_and_not_retried(make_site):
    site = await make_site()
    async with fetcher_for(retries=3) as fetcher:
        outcome = await fetcher.fetch(site.url("/missing"))
    assert isinstance(outcome, PermanentFailure)
    assert outcome.status == 404
    assert site.hits["/missing"] == 1


@pytest.mark.asyncio
async def test_server_errors_are_retried_then_reported_transient(make_site):
    site = await make_site({"/boom": (500, "oops")})
    async with fetcher_for(retries=2) as fetcher:
        outcome = await fetcher.fetch(site.url("/boom"))
    assert isinstance(outcome, TransientFailure)
    assert outcome.attempts == 3
    assert site.hits["/boom"] == 3


@pytest.mark.asyncio
async def test_retry_recovers_from_a_single_failure(make_site):
    flaky = lambda n: (503, "busy") if n == 1 else page("Ok", "<p>Recovered.</p>")
    site = await make_site({"/flaky": flaky})
    async with fetcher_for(retries=1) as fetcher:
        outcome = await fetcher.fetch(site.url("/flaky"))
    assert isinstance(outcome, Fetched)
    assert site.hits["/flaky"] == 2


@pytest.mark.asyncio
async def test_no_retry_once_the_deadline_is_too_close(make_site):
    site = await make_site({"/boom": (500, "oops")})
    async with fetcher_for(retries=5, backoff_base=1.0) as fetcher:
        deadline = asyncio.get_running_loop().time() + 0.5
        outcome = await fetcher.fetch(site.url("/boom"), deadline)
    assert isinstance(outcome, TransientFailure)
    assert site.hits["/boom"] == 1


@pytest.mark.asyncio
async def test_body_is_capped(make_site):
    site = await make_site({"/big": page("Big", "<p>" + "x" * 20000 + "</p>")})
    async with fetcher_for(max_body_bytes=1000) as fetcher:
        outcome = await fetcher.fetch(site.url("/big"))
    assert isinstance(outcome, Fetched)
    assert len(outcome.body) == 1000
    assert outcome.truncated


@pytest.mark.asyncio
async def test_non_html_content_is_rejected(make_site):
    site = await make_site({"/img": (200, "PNG", {"Content-Type": "image/png"})})
    async with fetcher_for() as fetcher:
        outcome = await fetcher.fetch(site.url("/img"))
    assert isinstance(outcome, PermanentFailure)
    assert "image/png" in outcome.reason


@pytest.mark.asyncio
async def test_redirect_is_followed_and_reported(make_site):
    routes = {"/old": (302, "", {"Location": "/a"}), "/a": page("A", "<p>Alpha text.</p>")}
    site = await make_site(routes)
    async with fetcher_for() as fetcher:
        outcome = await fetcher.fetch(site.url("/old"))
    assert isinstance(outcome, Fetched)
    assert outcome.url == site.url("/old")
    assert outcome.final_url == site.url("/a")


@pytest.mark.asyncio
async def test_redirect_target_is_checked_against_robots(make_site):
    routes = {
        "/robots.txt": "User-agent: *\nDisallow: /a\n",
        "/old": (301, "", {"Location": "/a"}),
        "/a": page("A", "<p>secret</p>"),
    }
    site = await make_site(routes)
    async with fetcher_for() as fetcher:
        outcome = await fetcher.fetch(site.url("/old"))
    assert isinstance(outcome, RobotsBlocked)
    assert site.hits["/a"] == 0


@pytest.mark.asyncio
async def test_redirect_loop_gives_up(make_site):
    site = await make_site({"/loop": (302, "", {"Location": "/loop"})})
    async with fetcher_for(max_redirects=3) as fetcher:
        outcome = await fetcher.fetch(site.url("/loop"))
    assert isinstance(outcome, PermanentFailure)
    assert "redirects" in outcome.reason


@pytest.mark.asyncio
async def test_robots_disallow_blocks_before_any_request(make_site):
    site = await make_site({"/robots.txt": "User-agent: *\nDisallow: /a\n", "/a": page("A", "")})
    async with fetcher_for() as fetcher:
        outcome = await fetcher.fetch(site.url("/a"))
    assert isinstance(outcome, RobotsBlocked)
    assert site.hits["/a"] == 0
    assert site.hits["/robots.txt"] == 1


@pytest.mark.asyncio
async def test_loopback_is_unsafe_without_allow_local(make_site):
    site = await make_site()
    async with fetcher_for(allow_local=False) as fetcher:
        outcome = await fetcher.fetch(site.url("/a"))
    assert isinstance(outcome, Unsafe)
    assert site.hits["/a"] == 0
    assert site.hits["/robots.txt"] == 0


@pytest.mark.asyncio
async def test_disallowed_scheme_is_unsafe():
    async with fetcher_for() as fetcher:
        outcome = await fetcher.fetch("file:///etc/passwd")
    assert isinstance(outcome, Unsafe)


@pytest.mark.asyncio
async def test_robots_guard_reads_crawl_delay_and_caches(make_site):
    site = await make_site({"/robots.txt": "User-agent: *\nCrawl-delay: 1\nDisallow: /private\n"})
    session = create_session(UA)
    try:
        guard = RobotsGuard(session, UA, timeout=1.0)
        assert await guard.crawl_delay(site.url("/")) == 1.0
        assert await guard.is_allowed(site.url("/public"))
        assert not await guard.is_allowed(site.url("/private/x"))
    finally:
        await session.close()
    assert site.hits["/robots.txt"] == 1
    assert guard.caveats == {}


@pytest.mark.asyncio
async def test_robots_server_error_fails_open_with_caveat(make_site):
    site = await make_site({"/robots.txt": (503, "down")})
    session = create_session(UA)
    try:
        guard = RobotsGuard(session, UA, timeout=1.0)
        assert await guard.is_allowed(site.url("/anything"))
    finally:
        await session.close()
    assert list(guard.caveats.values()) == ["http status 503"]


@pytest.mark.asyncio
async def test_missing_robots_allows_everything_without_caveat(make_site):
    site = await make_site({})
    session = create_session(UA)
    try:
        guard = RobotsGuard(session, UA, timeout=1.0)
        assert await guard.is_allowed(site.url("/anything"))
    finally:
        await session.close()
    assert guard.caveats == {}


@pytest.mark.asyncio
async def test_redirect_to_claimed_url_is_not_fetched(make_site):
    routes = {"/old": (302, "", {"Location": "/a"}), "/a": page("A", "<p>Alpha text.</p>")}
    site = await make_site(routes)
    asked = []

    def claim(url):
        asked.append(url)
        return False

    async with fetcher_for() as fetcher:
        outcome = await fetcher.fetch(site.url("/old"), claim=claim)
    assert isinstance(outcome, Duplicate)
    assert outcome.target == site.url("/a")
    assert asked == [site.url("/a")]
    assert site.hits["/a"] == 0


@pytest.mark.asyncio
async def test_claim_is_not_asked_for_the_requested_url(make_site):
    site = await make_site()
    async with fetcher_for() as fetcher:
        outcome = await fetcher.fetch(site.url("/a"), claim=lambda url: False)
    assert isinstance(outcome, Fetched)


@pytest.mark.asyncio
async def test_robots_same_host_redirect_is_followed(make_site):
    routes = {
        "/robots.txt": (301, "", {"Location": "/rules.txt"}),
        "/rules.txt": "User-agent: *\nDisallow: /private\n",
    }
    site = await make_site(routes)
    session = create_session(UA)
    try:
        guard = RobotsGuard(session, UA, timeout=1.0)
        assert not await guard.is_allowed(site.url("/private/x"))
        assert await guard.is_allowed(site.url("/public"))
    finally:
        await session.close()
    assert site.hits["/rules.txt"] == 1
    assert guard.caveats == {}


@pytest.mark.asyncio
async def test_robots_off_host_redirect_means_no_rules(make_site):
    # Port 1 is never listened on; a request there would surface as a caveat.
    site = await make_site({"/robots.txt": (302, "", {"Location": "http://localhost:1/robots.txt"})})
    session = create_session(UA)
    try:
        guard = RobotsGuard(session, UA, timeout=1.0)
        assert await guard.is_allowed(site.url("/private/x"))
    finally:
        await session.close()
    assert guard.caveats == {}
    assert site.hits["/robots.txt"] == 1


@pytest.mark.asyncio
async def test_robots_redirect_chain_means_no_rules(make_site):
    site = await make_site({"/robots.txt": (302, "", {"Location": "/robots.txt"})})
    session = create_session(UA)
    try:
        guard = RobotsGuard(session, UA, timeout=1.0)
        assert await guard.is_allowed(site.url("/anything"))
    finally:
        await session.close()
    assert site.hits["/robots.txt"] == 2
    assert guard.caveats == {}


@pytest.mark.asyncio
async def test_robots_fetch_takes_the_host_slot(make_site):
    site = await make_site({"/robots.txt": "User-agent: *\nAllow: /\n"})
    limiter = HostRateLimiter(0.3, 1.0)
    session = create_session(UA)
    loop = asyncio.get_running_loop()
    try:
        guard = RobotsGuard(session, UA, timeout=1.0, limiter=limiter)
        await guard.is_allowed(site.url("/a"))
        started = loop.time()
        async with limiter.slot(host_of(site.url("/a"))):
            waited = loop.time() - started
    finally:
        await session.close()
    assert waited >= 0.2
