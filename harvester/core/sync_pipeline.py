# harvester/core/sync_pipeline.py
import logging
import time
from typing import List, Optional

from harvester.config.settings import settings
from harvester.models.internal import (
    ContentSource, ExtractionMethod, PipelineStage, PipelineStepResult, SourceOutcome,
    SourceType, StepStatus, SYNC_SOURCES, dedupe_by_url
)
from harvester.services.answer_engine import AnswerEngine
from harvester.services.content_fetcher import (
    MarkdownProxyExtractor, RateLimitedFetcher, build_fetch_profile
)
from harvester.services.content_heuristics import title_from_markdown, truncate
from harvester.services.url_classifier import URLClassifier
from harvester.services.url_discoverer import URLDiscoverer
from harvester.core.exceptions import ClassificationError, PipelineException

logger = logging.getLogger(__name__)

class SyncExtractionPipeline:
    """Discover -> Classify -> Extract for sources that answer within one request.

    Any stage failure, or a primary pass that yields nothing, switches to the
    fallback answer engine. Blogs also get a "popular posts" enrichment pass
    after a successful primary run.
    """

    def __init__(
        self,
        source_type: SourceType,
        discoverer: URLDiscoverer,
        classifier: URLClassifier,
        answer_engine: AnswerEngine,
        extractor: MarkdownProxyExtractor,
        fetcher: Optional[RateLimitedFetcher] = None,
        content_cap: Optional[int] = None,
        discovery_limit: Optional[int] = None,
        fallback_count: Optional[int] = None,
        popular_count: Optional[int] = None
    ):
        if source_type not in SYNC_SOURCES:
            raise ValueError(f"{source_type.value} is not a synchronous source")

        is_blog = source_type == SourceType.BLOG
        self.source_type = source_type
        self.discoverer = discoverer
        self.classifier = classifier
        self.answer_engine = answer_engine
        self.item_extractor = extractor.extract_blog_post if is_blog else extractor.extract_newsletter_issue

        if fetcher is None:
            profile_name = settings.BLOG_FETCH_PROFILE if is_blog else settings.NEWSLETTER_FETCH_PROFILE
            fetcher = RateLimitedFetcher(build_fetch_profile(profile_name))
        self.fetcher = fetcher

        default_cap = settings.BLOG_CONTENT_CAP if is_blog else settings.NEWSLETTER_CONTENT_CAP
        self.content_cap = content_cap or default_cap
        self.discovery_limit = discovery_limit or settings.DISCOVERY_LIMIT
        self.fallback_count = fallback_count or settings.FALLBACK_PIECE_COUNT
        # only blogs are enriched; zero disables it
        self.popular_count = settings.POPULAR_POST_COUNT if popular_count is None else popular_count

    def _start(self, steps: List[PipelineStepResult], stage: PipelineStage) -> PipelineStepResult:
        step = PipelineStepResult(source_type=self.source_type, stage=stage, status=StepStatus.RUNNING)
        steps.append(step)
        return step

    async def run(self, root_url: str, creator_name: str) -> SourceOutcome:
        """Content for one root URL; failures are reported in the outcome, not raised"""
        start_time = time.time()
        steps: List[PipelineStepResult] = []
        fallback_reason = None
        items: List[ContentSource] = []

        try:
            items = await self._primary(root_url, creator_name, steps)
            if not items:
                fallback_reason = "primary extraction produced no records"
        except PipelineException as e:
            fallback_reason = str(e)
        except Exception as e:
            logger.error(f"Unexpected {self.source_type.value} pipeline error: {e}", exc_info=True)
            fallback_reason = f"unexpected error: {e}"
            for step in steps:
                if step.status == StepStatus.RUNNING:
                    step.finish(StepStatus.ERROR, error=str(e))

        if fallback_reason is None:
            if self.source_type == SourceType.BLOG and self.popular_count > 0:
                items = await self._enrich(root_url, creator_name, items, steps)
            items = dedupe_by_url(items)
            logger.info(
                f"{self.source_type.value} pipeline finished with {len(items)} items "
                f"in {time.time() - start_time:.2f}s"
            )
            return SourceOutcome(source_type=self.source_type, items=items, steps=steps)

        logger.info(f"Falling back for {self.source_type.value} ({root_url}): {fallback_reason}")
        items = dedupe_by_url(await self._fallback(root_url, creator_name, steps))
        error = None if items else f"No {self.source_type.value} content found: {fallback_reason}"
        logger.info(
            f"{self.source_type.value} fallback finished with {len(items)} items "
            f"in {time.time() - start_time:.2f}s"
        )
        return SourceOutcome(source_type=self.source_type, items=items, steps=steps, error=error)

    async def _primary(self, root_url: str, creator_name: str,
                       steps: List[PipelineStepResult]) -> List[ContentSource]:
        step = self._start(steps, PipelineStage.DISCOVER)
        try:
            urls = await self.discoverer.discover(root_url, limit=self.discovery_limit)
        except PipelineException as e:
            step.finish(StepStatus.ERROR, error=str(e))
            raise
        step.finish(StepStatus.COMPLETED, item_count=len(urls), preview=", ".join(urls[:3]))

        step = self._start(steps, PipelineStage.CLASSIFY)
        candidates = await self.classifier.classify(urls, creator_name, self.source_type)
        if not candidates:
            error = f"No {self.source_type.value} URLs among {len(urls)} discovered"
            step.finish(StepStatus.ERROR, error=error)
            raise ClassificationError(error)
        step.finish(StepStatus.COMPLETED, item_count=len(candidates), preview=", ".join(candidates[:3]))

        step = self._start(steps, PipelineStage.EXTRACT)
        try:
            records = await self.fetcher.fetch_all(
                candidates, self.item_extractor, self.source_type,
                method=ExtractionMethod.PRIMARY, content_cap=self.content_cap
            )
        except PipelineException as e:
            step.finish(StepStatus.ERROR, error=str(e))
            raise
        step.finish(
            StepStatus.COMPLETED if records else StepStatus.ERROR,
            item_count=len(records),
            error=None if records else "No content extracted",
            preview=f"{len(records)}/{len(candidates)} pages extracted"
        )
        return records

    async def _enrich(self, root_url: str, creator_name: str, items: List[ContentSource],
                      steps: List[PipelineStepResult]) -> List[ContentSource]:
        step = self._start(steps, PipelineStage.ENRICH)
        try:
            hits = await self.answer_engine.find_top_pieces(
                root_url, creator_name, self.source_type, count=self.popular_count, popular_only=True
            )
            known = {item.url for item in items}
            new_hits = [hit for hit in hits if hit.url not in known]
            metadata = {hit.url: {**hit.as_metadata(), "popular": True} for hit in new_hits}
            popular = await self.fetcher.fetch_all(
                [hit.url for hit in new_hits], self.item_extractor, self.source_type,
                method=ExtractionMethod.FALLBACK, content_cap=self.content_cap, metadata=metadata
            )
        except PipelineException as e:
            logger.warning(f"Popular post enrichment skipped for {root_url}: {e}")
            step.finish(StepStatus.SKIPPED, error=str(e))
            return items
        except Exception as e:
            logger.error(f"Unexpected popular post enrichment error for {root_url}: {e}", exc_info=True)
            step.finish(StepStatus.SKIPPED, error=f"unexpected error: {e}")
            return items

        step.finish(StepStatus.COMPLETED, item_count=len(popular),
                    preview=f"{len(popular)} popular posts added")
        return items + popular

    async def _fallback(self, root_url: str, creator_name: str,
                        steps: List[PipelineStepResult]) -> List[ContentSource]:
        step = self._start(steps, PipelineStage.FALLBACK)
        error = None
        records: List[ContentSource] = []

        try:
            hits = await self.answer_engine.find_top_pieces(
                root_url, creator_name, self.source_type, count=self.fallback_count
            )
            metadata = {hit.url: hit.as_metadata() for hit in hits}
            records = await self.fetcher.fetch_all(
                [hit.url for hit in hits], self.item_extractor, self.source_type,
                method=ExtractionMethod.FALLBACK, content_cap=self.content_cap, metadata=metadata
            )
        except PipelineException as e:
            logger.warning(f"Answer engine fallback failed for {root_url}: {e}")
            error = str(e)
        except Exception as e:
            logger.error(f"Unexpected answer engine fallback error for {root_url}: {e}", exc_info=True)
            error = f"unexpected error: {e}"

        if not records and self.source_type == SourceType.NEWSLETTER:
            try:
                landing = await self._landing_page(root_url)
            except Exception as e:
                logger.error(f"Landing page scrape failed for {root_url}: {e}", exc_info=True)
                landing = None
            if landing is not None:
                records = [landing]

        if records:
            step.finish(StepStatus.COMPLETED, item_count=len(records),
                        preview=", ".join(r.url for r in records[:3]))
        else:
            step.finish(StepStatus.ERROR, error=error or "Fallback found no content")
        return records

    async def _landing_page(self, root_url: str) -> Optional[ContentSource]:
        """Last resort for newsletters: the landing page itself as one record"""
        markdown = await self.discoverer.scrape(root_url)
        if not markdown or not markdown.strip():
            return None
        return ContentSource(
            source_type=self.source_type,
            url=root_url,
            title=title_from_markdown(markdown) or "Newsletter",
            body=truncate(markdown, self.content_cap),
            extraction_method=ExtractionMethod.FALLBACK,
            metadata={"landing_page": True}
        )
