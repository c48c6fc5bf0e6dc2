# harvester/services/content_fetcher.py
import asyncio
import aiohttp
import logging
import random
import time
from typing import Awaitable, Callable, Dict, List, Optional, Any

from harvester.config.settings import settings
from harvester.models.internal import (
    ContentSource, ExtractedPage, ExtractionMethod, FetchProfile, SourceType, dedupe_by_url
)
from harvester.services.content_heuristics import (
    date_from_url, derive_title, title_from_markdown, title_from_url, truncate
)
from harvester.core.exceptions import ExtractionItemError, ExtractionStageError

logger = logging.getLogger(__name__)

ItemExtractor = Callable[[str], Awaitable[ExtractedPage]]
SleepFn = Callable[[float], Awaitable[None]]

HIGH_CONCURRENCY = "high_concurrency"
STRICT = "strict"

def build_fetch_profile(name: str) -> FetchProfile:
    """Fetch profile by name, parameters taken from settings"""
    common = {
        "max_retries": settings.FETCH_MAX_RETRIES,
        "backoff_base": settings.FETCH_BACKOFF_BASE,
        "backoff_jitter": settings.FETCH_BACKOFF_JITTER,
        "timeout": float(settings.EXTRACTION_TIMEOUT),
    }
    if name == HIGH_CONCURRENCY:
        return FetchProfile(
            name=name,
            batch_size=settings.HIGH_CONCURRENCY_BATCH_SIZE,
            inter_batch_delay=settings.HIGH_CONCURRENCY_DELAY,
            **common
        )
    if name == STRICT:
        return FetchProfile(
            name=name,
            batch_size=settings.STRICT_BATCH_SIZE,
            inter_batch_delay=settings.STRICT_DELAY,
            **common
        )
    raise ValueError(f"Unknown fetch profile: {name}")

def _chunk(items: List[str], size: int) -> List[List[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]

class RateLimitedFetcher:
    """Bounded-concurrency fetch loop shared by the blog and newsletter pipelines.

    URLs are processed in batches of ``profile.batch_size``; items inside a
    batch run concurrently and the whole batch is awaited before the next one
    starts, after ``profile.inter_batch_delay`` seconds. Each item gets up to
    ``profile.max_retries`` attempts with jittered exponential backoff.
    A dropped item never affects the rest of the batch.
    """

    def __init__(self, profile: FetchProfile, sleep: SleepFn = asyncio.sleep,
                 rng: Optional[random.Random] = None):
        self.profile = profile
        self._sleep = sleep
        self._rng = rng or random.Random()

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (0-based).

        Jitter is a fraction of the current base, at most 1.0, so the delay
        never shrinks from one attempt to the next.
        """
        base = self.profile.backoff_base * (2 ** attempt)
        return base * (1 + self._rng.uniform(0, self.profile.backoff_jitter))

    async def fetch_all(
        self,
        urls: List[str],
        extractor: ItemExtractor,
        source_type: SourceType,
        method: ExtractionMethod = ExtractionMethod.PRIMARY,
        content_cap: int = 10000,
        metadata: Optional[Dict[str, Dict[str, Any]]] = None
    ) -> List[ContentSource]:
        start_time = time.time()
        unique_urls = list(dict.fromkeys(u for u in urls if u))
        if not unique_urls:
            return []

        metadata = metadata or {}
        batches = _chunk(unique_urls, self.profile.batch_size)
        records: List[ContentSource] = []

        for index, batch in enumerate(batches):
            if index > 0 and self.profile.inter_batch_delay > 0:
                await self._sleep(self.profile.inter_batch_delay)

            logger.debug(f"[{self.profile.name}] batch {index + 1}/{len(batches)} ({len(batch)} URLs)")
            results = await asyncio.gather(
                *(self._fetch_with_retry(url, extractor) for url in batch),
                return_exceptions=True
            )

            for url, result in zip(batch, results):
                if isinstance(result, ExtractionStageError):
                    raise result
                if isinstance(result, BaseException):
                    logger.warning(f"Extraction failed for {url}: {result}")
                    continue
                if result is None:
                    continue
                record = self._to_content_source(
                    url, result, source_type, method, content_cap, metadata.get(url)
                )
                if record is not None:
                    records.append(record)

        records = dedupe_by_url(records)
        processing_time = time.time() - start_time
        logger.info(
            f"Fetched {len(records)}/{len(unique_urls)} {source_type.value} items "
            f"({method.value}, profile={self.profile.name}) in {processing_time:.2f}s"
        )
        return records

    async def _fetch_with_retry(self, url: str, extractor: ItemExtractor) -> Optional[ExtractedPage]:
        max_attempts = self.profile.max_retries

        for attempt in range(max_attempts):
            try:
                return await asyncio.wait_for(extractor(url), timeout=self.profile.timeout)
            except ExtractionStageError:
                raise
            except asyncio.TimeoutError:
                error = ExtractionItemError(url, f"timed out after {self.profile.timeout}s", retryable=True)
            except ExtractionItemError as e:
                error = e
            except aiohttp.ClientError as e:
                error = ExtractionItemError(url, f"{type(e).__name__}: {e}", retryable=True)
            except Exception as e:
                logger.error(f"Unexpected extractor error for {url}: {type(e).__name__}: {e}", exc_info=True)
                return None

            if not error.retryable:
                logger.warning(f"Dropping {url}: {error.detail}")
                return None

            if attempt < max_attempts - 1:
                delay = self.backoff_delay(attempt)
                reason = "Rate limited" if error.rate_limited else "Retryable failure"
                logger.info(f"{reason} for {url}, attempt {attempt + 1}/{max_attempts}, waiting {delay:.2f}s")
                await self._sleep(delay)

        logger.warning(f"Dropping {url} after {max_attempts} attempts")
        return None

    def _to_content_source(
        self,
        url: str,
        page: ExtractedPage,
        source_type: SourceType,
        method: ExtractionMethod,
        content_cap: int,
        extra: Optional[Dict[str, Any]]
    ) -> Optional[ContentSource]:
        text = page.text or ""
        if not text.strip():
            logger.debug(f"Empty body for {url}, skipping")
            return None

        record_url = page.url or url
        return ContentSource(
            source_type=source_type,
            url=record_url,
            title=page.title or derive_title(text, record_url),
            body=truncate(text, content_cap),
            published_at=page.published_at or date_from_url(record_url),
            extraction_method=method,
            metadata=dict(extra or {})
        )

class MarkdownProxyExtractor:
    """Per-item extractors backed by a markdown-rendering reader proxy"""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 timeout: Optional[int] = None):
        self.base_url = (settings.MARKDOWN_PROXY_URL if base_url is None else base_url).rstrip("/")
        self.api_key = settings.JINA_API_KEY if api_key is None else api_key
        self.timeout = timeout or settings.EXTRACTION_TIMEOUT
        self.session = None

    async def _get_session(self):
        """Lazy initialization of HTTP session"""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self.session

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "text/markdown",
            "X-Return-Format": "markdown",
            "X-Timeout": str(self.timeout)
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def fetch_markdown(self, url: str) -> str:
        if not self.base_url:
            raise ExtractionStageError("Markdown proxy URL is not configured")

        session = await self._get_session()
        async with session.get(f"{self.base_url}/{url}", headers=self._headers()) as response:
            if response.status == 429:
                raise ExtractionItemError(url, "rate limited", rate_limited=True, status=429)
            if response.status in (401, 403):
                raise ExtractionStageError(f"Markdown proxy rejected credentials (HTTP {response.status})")
            if response.status >= 500:
                raise ExtractionItemError(url, f"HTTP {response.status}", retryable=True, status=response.status)
            if response.status != 200:
                raise ExtractionItemError(url, f"HTTP {response.status}", status=response.status)
            return await response.text()

    async def extract_blog_post(self, url: str) -> ExtractedPage:
        content = await self.fetch_markdown(url)
        title = title_from_markdown(content) or title_from_url(url)
        return ExtractedPage(url=url, text=content, title=title, published_at=date_from_url(url))

    async def extract_newsletter_issue(self, url: str) -> ExtractedPage:
        content = await self.fetch_markdown(url)
        title = title_from_markdown(content) or title_from_url(url, default="Newsletter Issue")
        return ExtractedPage(url=url, text=content, title=title, published_at=date_from_url(url))

    async def health_check(self) -> str:
        return "healthy" if self.base_url else "unhealthy - no proxy configured"

    async def close(self):
        """Close HTTP session"""
        if self.session:
            await self.session.close()
            self.session = None
