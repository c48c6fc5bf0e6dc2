# tests/services/test_content_fetcher.py
import random
import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from harvester.models.internal import ExtractionMethod, SourceType
from harvester.services.content_fetcher import (
    HIGH_CONCURRENCY, STRICT, MarkdownProxyExtractor, RateLimitedFetcher, build_fetch_profile
)
from harvester.core.exceptions import ExtractionItemError, ExtractionStageError
from harvester.tests.fakes import FakeExtractor, RecordingSleep, fast_profile

def rate_limited(url):
    return ExtractionItemError(url, "rate limited", rate_limited=True, status=429)

def not_found(url):
    return ExtractionItemError(url, "HTTP 404", status=404)

class TestFetchProfiles:
    def test_stock_profiles(self):
        strict = build_fetch_profile(STRICT)
        fast = build_fetch_profile(HIGH_CONCURRENCY)

        assert (strict.batch_size, strict.inter_batch_delay) == (1, 3.1)
        assert (fast.batch_size, fast.inter_batch_delay) == (10, 0.0)
        assert strict.max_retries == fast.max_retries == 3

    def test_unknown_profile(self):
        with pytest.raises(ValueError):
            build_fetch_profile("turbo")

class TestBackoff:
    """Jittered exponential backoff"""

    @pytest.mark.parametrize("seed", range(20))
    def test_monotone_non_decreasing(self, seed):
        fetcher = RateLimitedFetcher(fast_profile(max_retries=6), rng=random.Random(seed))
        delays = [fetcher.backoff_delay(attempt) for attempt in range(6)]
        assert delays == sorted(delays)

    def test_bounds(self):
        fetcher = RateLimitedFetcher(fast_profile(), rng=random.Random(1))
        for attempt in range(4):
            delay = fetcher.backoff_delay(attempt)
            assert 2 ** attempt <= delay <= 1.5 * 2 ** attempt

class TestFetchAll:
    """Batched extraction with retry, dedupe and truncation"""

    async def test_retry_ceiling_is_three_attempts(self):
        url = "https://example.com/busy-post"
        extractor = FakeExtractor({url: rate_limited(url)})
        sleep = RecordingSleep()
        fetcher = RateLimitedFetcher(fast_profile(), sleep=sleep, rng=random.Random(0))

        records = await fetcher.fetch_all([url], extractor.extract_blog_post, SourceType.BLOG)

        assert records == []
        assert extractor.calls == [url] * 3
        # backoff only between attempts
        assert len(sleep.calls) == 2
        assert sleep.calls[0] <= sleep.calls[1]

    async def test_retry_then_success(self):
        url = "https://example.com/flaky-post"
        extractor = FakeExtractor({url: [rate_limited(url), aiohttp.ClientConnectionError("reset"), "# Flaky\nbody"]})
        fetcher = RateLimitedFetcher(fast_profile(), sleep=RecordingSleep())

        records = await fetcher.fetch_all([url], extractor.extract_blog_post, SourceType.BLOG)

        assert len(records) == 1
        assert records[0].title == "Flaky"
        assert len(extractor.calls) == 3

    async def test_non_retryable_dropped_immediately(self):
        missing = "https://example.com/missing"
        good = "https://example.com/good-post"
        extractor = FakeExtractor({missing: not_found(missing), good: "# Good\ntext"})
        sleep = RecordingSleep()
        fetcher = RateLimitedFetcher(fast_profile(), sleep=sleep)

        records = await fetcher.fetch_all([missing, good], extractor.extract_blog_post, SourceType.BLOG)

        assert [r.url for r in records] == [good]
        assert extractor.calls.count(missing) == 1
        assert sleep.calls == []

    async def test_strict_profile_spaces_requests(self):
        urls = [f"https://letters.example.com/p/issue-{i}" for i in range(25)]
        throttled, missing, recovering = urls[3], urls[10], urls[20]
        extractor = FakeExtractor({
            throttled: rate_limited(throttled),
            missing: not_found(missing),
            recovering: [rate_limited(recovering), "# Issue\ncontent"],
        }, default="# Issue\ncontent")
        sleep = RecordingSleep()
        fetcher = RateLimitedFetcher(fast_profile(name=STRICT, batch_size=1, delay=3.1), sleep=sleep)

        records = await fetcher.fetch_all(urls, extractor.extract_newsletter_issue, SourceType.NEWSLETTER)

        kept = [r.url for r in records]
        assert len(kept) == 23
        assert kept == [u for u in urls if u not in (throttled, missing)]
        assert all(url in extractor.calls for url in urls)
        assert extractor.calls.count(throttled) == 3
        assert extractor.calls.count(missing) == 1
        assert extractor.calls.count(recovering) == 2
        inter_batch = [d for d in sleep.calls if d == 3.1]
        assert len(inter_batch) == 24
        assert sleep.total >= 24 * 3.1 - 1e-6

    async def test_high_concurrency_profile_never_sleeps(self):
        urls = [f"https://example.com/post-{i}" for i in range(25)]
        extractor = FakeExtractor(default="# Post\ncontent")
        sleep = RecordingSleep()
        fetcher = RateLimitedFetcher(fast_profile(batch_size=10, delay=0.0), sleep=sleep)

        records = await fetcher.fetch_all(urls, extractor.extract_blog_post, SourceType.BLOG)

        assert len(records) == 25
        assert sleep.calls == []

    async def test_one_failure_does_not_affect_batch(self):
        urls = [f"https://example.com/post-{i}" for i in range(4)]
        pages = {url: f"# Post {i}\nbody" for i, url in enumerate(urls)}
        pages[urls[1]] = RuntimeError("parser exploded")
        extractor = FakeExtractor(pages)
        fetcher = RateLimitedFetcher(fast_profile(), sleep=RecordingSleep())

        records = await fetcher.fetch_all(urls, extractor.extract_blog_post, SourceType.BLOG)

        assert [r.url for r in records] == [urls[0], urls[2], urls[3]]

    async def test_stage_error_aborts(self):
        url = "https://example.com/post"
        extractor = FakeExtractor({url: ExtractionStageError("bad credentials")})
        fetcher = RateLimitedFetcher(fast_profile(), sleep=RecordingSleep())

        with pytest.raises(ExtractionStageError):
            await fetcher.fetch_all([url], extractor.extract_blog_post, SourceType.BLOG)

    async def test_dedupe_truncate_and_heuristics(self):
        url = "https://example.com/2024/08/15/long-read"
        empty = "https://example.com/empty-page"
        extractor = FakeExtractor({url: "x" * 50, empty: "   "})
        fetcher = RateLimitedFetcher(fast_profile(), sleep=RecordingSleep())

        records = await fetcher.fetch_all(
            [url, url, empty], extractor.extract_blog_post, SourceType.BLOG, content_cap=10
        )

        assert len(records) == 1
        record = records[0]
        assert record.body == "x" * 10
        assert record.title == "Long Read"
        assert record.published_at.year == 2024
        assert record.extraction_method == ExtractionMethod.PRIMARY
        assert extractor.calls.count(url) == 1

    async def test_fallback_method_and_metadata(self):
        url = "https://example.com/famous-essay"
        extractor = FakeExtractor({url: "# Famous\ntext"})
        fetcher = RateLimitedFetcher(fast_profile(), sleep=RecordingSleep())

        records = await fetcher.fetch_all(
            [url], extractor.extract_blog_post, SourceType.BLOG,
            method=ExtractionMethod.FALLBACK, metadata={url: {"themes": ["startups"]}}
        )

        assert records[0].extraction_method == ExtractionMethod.FALLBACK
        assert records[0].metadata == {"themes": ["startups"]}

    async def test_empty_input(self):
        fetcher = RateLimitedFetcher(fast_profile(), sleep=RecordingSleep())
        assert await fetcher.fetch_all([], FakeExtractor().extract_blog_post, SourceType.BLOG) == []

@pytest.fixture
async def reader_server():
    seen_headers = []

    async def handler(request):
        seen_headers.append({
            "accept": request.headers.get("Accept"),
            "format": request.headers.get("X-Return-Format"),
            "auth": request.headers.get("Authorization"),
        })
        path = request.path
        if "ratelimited" in path:
            return web.Response(status=429, text="slow down")
        if "denied" in path:
            return web.Response(status=401, text="bad key")
        if "broken" in path:
            return web.Response(status=503, text="unavailable")
        if "missing" in path:
            return web.Response(status=404, text="not found")
        return web.Response(text="Title: Reader Title\n\n# Heading\n\nBody text", content_type="text/markdown")

    app = web.Application()
    app.router.add_get("/{tail:.*}", handler)
    server = TestServer(app)
    await server.start_server()
    yield server, seen_headers
    await server.close()

class TestMarkdownProxyExtractor:
    """Reader proxy adapter against a local server"""

    async def test_extracts_markdown(self, reader_server):
        server, seen_headers = reader_server
        extractor = MarkdownProxyExtractor(base_url=str(server.make_url("")), api_key="reader-key")

        page = await extractor.extract_blog_post("https://example.com/2024/05/02/post")
        await extractor.close()

        assert page.title == "Reader Title"
        assert "Body text" in page.text
        assert page.published_at.month == 5
        assert seen_headers[0]["accept"] == "text/markdown"
        assert seen_headers[0]["format"] == "markdown"
        assert seen_headers[0]["auth"] == "Bearer reader-key"

    async def test_status_mapping(self, reader_server):
        server, _ = reader_server
        extractor = MarkdownProxyExtractor(base_url=str(server.make_url("")), api_key="")

        with pytest.raises(ExtractionItemError) as rate:
            await extractor.fetch_markdown("https://example.com/ratelimited")
        with pytest.raises(ExtractionItemError) as broken:
            await extractor.fetch_markdown("https://example.com/broken")
        with pytest.raises(ExtractionItemError) as missing:
            await extractor.fetch_markdown("https://example.com/missing")
        with pytest.raises(ExtractionStageError):
            await extractor.fetch_markdown("https://example.com/denied")
        await extractor.close()

        assert rate.value.rate_limited and rate.value.retryable
        assert broken.value.retryable and not broken.value.rate_limited
        assert not missing.value.retryable

    async def test_rate_limited_item_retried_then_dropped(self, reader_server):
        server, seen_headers = reader_server
        extractor = MarkdownProxyExtractor(base_url=str(server.make_url("")), api_key="")
        sleep = RecordingSleep()
        fetcher = RateLimitedFetcher(fast_profile(), sleep=sleep)

        records = await fetcher.fetch_all(
            ["https://example.com/ratelimited", "https://example.com/fine-post"],
            extractor.extract_blog_post, SourceType.BLOG
        )
        await extractor.close()

        assert [r.url for r in records] == ["https://example.com/fine-post"]
        assert len(seen_headers) == 4
        assert len(sleep.calls) == 2

    async def test_missing_proxy_url_is_stage_error(self):
        extractor = MarkdownProxyExtractor(base_url="", api_key="")
        with pytest.raises(ExtractionStageError):
            await extractor.fetch_markdown("https://example.com/post")
