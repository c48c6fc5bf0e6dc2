# tests/core/test_sync_pipeline.py
import json
import pytest

from harvester.models.internal import ExtractionMethod, PipelineStage, SourceType, StepStatus
from harvester.services.content_fetcher import RateLimitedFetcher
from harvester.core.sync_pipeline import SyncExtractionPipeline
from harvester.core.exceptions import DiscoveryError, ExtractionItemError, ExtractionStageError, FallbackError
from harvester.tests.fakes import (
    FakeAnswerEngine, FakeClassifier, FakeDiscoverer, FakeExtractor, RecordingSleep, fast_profile, make_hit
)

BLOG = "https://janedoe.com"
NEWSLETTER = "https://jane.substack.com"

def make_pipeline(source_type, discoverer, classifier, answer_engine, extractor, popular_count=0):
    return SyncExtractionPipeline(
        source_type, discoverer, classifier, answer_engine, extractor,
        fetcher=RateLimitedFetcher(fast_profile(), sleep=RecordingSleep()),
        popular_count=popular_count
    )

def stages(outcome):
    return [(step.stage, step.status) for step in outcome.steps]

class TestPrimaryPath:
    """Discover -> Classify -> Extract"""

    async def test_blog_primary(self):
        posts = [f"{BLOG}/essays/post-{i}" for i in range(3)]
        discoverer = FakeDiscoverer(urls=posts + [f"{BLOG}/about"])
        classifier = FakeClassifier(result=posts[:2])
        extractor = FakeExtractor(default="# Essay\nbody")
        answer_engine = FakeAnswerEngine()

        outcome = await make_pipeline(SourceType.BLOG, discoverer, classifier, answer_engine, extractor).run(BLOG, "Jane Doe")

        assert outcome.error is None
        assert [i.url for i in outcome.items] == posts[:2]
        assert all(i.extraction_method == ExtractionMethod.PRIMARY for i in outcome.items)
        assert stages(outcome) == [
            (PipelineStage.DISCOVER, StepStatus.COMPLETED),
            (PipelineStage.CLASSIFY, StepStatus.COMPLETED),
            (PipelineStage.EXTRACT, StepStatus.COMPLETED),
        ]
        assert answer_engine.piece_calls == []
        assert outcome.steps[0].item_count == 4

    async def test_blog_enrichment_adds_popular_posts(self):
        posts = [f"{BLOG}/essays/post-{i}" for i in range(2)]
        popular = [make_hit(posts[0], themes=["craft"]), make_hit(f"{BLOG}/essays/classic", themes=["writing"])]
        extractor = FakeExtractor(default="# Essay\nbody")
        answer_engine = FakeAnswerEngine(popular=popular)
        pipeline = make_pipeline(
            SourceType.BLOG, FakeDiscoverer(urls=posts), FakeClassifier(result=posts),
            answer_engine, extractor, popular_count=5
        )

        outcome = await pipeline.run(BLOG, "Jane Doe")

        assert [i.url for i in outcome.items] == posts + [f"{BLOG}/essays/classic"]
        added = outcome.items[-1]
        assert added.extraction_method == ExtractionMethod.FALLBACK
        assert added.metadata["popular"] is True
        assert added.metadata["themes"] == ["writing"]
        assert answer_engine.piece_calls[0]["popular_only"] is True
        assert extractor.calls.count(posts[0]) == 1
        assert stages(outcome)[-1] == (PipelineStage.ENRICH, StepStatus.COMPLETED)

    async def test_enrichment_failure_is_ignored(self, fallback_failure):
        posts = [f"{BLOG}/essays/post-1"]
        pipeline = make_pipeline(
            SourceType.BLOG, FakeDiscoverer(urls=posts), FakeClassifier(result=posts),
            FakeAnswerEngine(error=fallback_failure), FakeExtractor(default="# Essay\nbody"), popular_count=5
        )

        outcome = await pipeline.run(BLOG, "Jane Doe")

        assert outcome.error is None
        assert [i.url for i in outcome.items] == posts
        assert stages(outcome)[-1] == (PipelineStage.ENRICH, StepStatus.SKIPPED)

    async def test_enrichment_decode_error_keeps_primary_items(self):
        posts = [f"{BLOG}/essays/post-1", f"{BLOG}/essays/post-2"]
        answer_engine = FakeAnswerEngine(error=json.JSONDecodeError("Expecting value", "<html>gateway</html>", 0))
        pipeline = make_pipeline(
            SourceType.BLOG, FakeDiscoverer(urls=posts), FakeClassifier(result=posts),
            answer_engine, FakeExtractor(default="# Essay\nbody"), popular_count=5
        )

        outcome = await pipeline.run(BLOG, "Jane Doe")

        assert outcome.error is None
        assert [i.url for i in outcome.items] == posts
        assert stages(outcome)[-1] == (PipelineStage.ENRICH, StepStatus.SKIPPED)

    def test_social_source_rejected(self):
        with pytest.raises(ValueError):
            make_pipeline(SourceType.TWITTER, FakeDiscoverer(), FakeClassifier(), FakeAnswerEngine(), FakeExtractor())

class TestFallback:
    """Fallback activation on each primary failure mode"""

    async def test_zero_discovery_uses_answer_engine(self):
        hits = [
            make_hit(f"{BLOG}/famous-essay", themes=["startups"], summary="why startups win"),
            make_hit(f"{BLOG}/other-essay"),
        ]
        answer_engine = FakeAnswerEngine(hits=hits)
        extractor = FakeExtractor(default="# Essay\nbody")

        outcome = await make_pipeline(
            SourceType.BLOG, FakeDiscoverer(urls=[]), FakeClassifier(), answer_engine, extractor
        ).run(BLOG, "Jane Doe")

        assert outcome.error is None
        assert [i.url for i in outcome.items] == [h.url for h in hits]
        assert all(i.extraction_method == ExtractionMethod.FALLBACK for i in outcome.items)
        assert outcome.items[0].metadata == {"themes": ["startups"], "summary": "why startups win"}
        assert stages(outcome) == [
            (PipelineStage.DISCOVER, StepStatus.ERROR),
            (PipelineStage.FALLBACK, StepStatus.COMPLETED),
        ]
        assert answer_engine.piece_calls[0]["count"] == 5

    async def test_zero_classified_candidates(self):
        hits = [make_hit(f"{BLOG}/famous-essay")]
        answer_engine = FakeAnswerEngine(hits=hits)

        outcome = await make_pipeline(
            SourceType.BLOG, FakeDiscoverer(urls=[f"{BLOG}/x"]), FakeClassifier(result=[]),
            answer_engine, FakeExtractor(default="# E\nbody")
        ).run(BLOG, "Jane Doe")

        assert [i.url for i in outcome.items] == [h.url for h in hits]
        assert stages(outcome)[1] == (PipelineStage.CLASSIFY, StepStatus.ERROR)

    async def test_zero_extracted_records(self):
        post = f"{BLOG}/essays/gone"
        fallback_url = f"{BLOG}/famous-essay"
        extractor = FakeExtractor({
            post: ExtractionItemError(post, "HTTP 404", status=404),
            fallback_url: "# Famous\nbody",
        })

        outcome = await make_pipeline(
            SourceType.BLOG, FakeDiscoverer(urls=[post]), FakeClassifier(result=[post]),
            FakeAnswerEngine(hits=[make_hit(fallback_url)]), extractor
        ).run(BLOG, "Jane Doe")

        assert [i.url for i in outcome.items] == [fallback_url]
        assert (PipelineStage.EXTRACT, StepStatus.ERROR) in stages(outcome)

    async def test_extraction_stage_error(self):
        post = f"{BLOG}/essays/post"
        fallback_url = f"{BLOG}/famous-essay"
        extractor = FakeExtractor({post: ExtractionStageError("proxy rejected credentials"), fallback_url: "# F\nbody"})

        outcome = await make_pipeline(
            SourceType.BLOG, FakeDiscoverer(urls=[post]), FakeClassifier(result=[post]),
            FakeAnswerEngine(hits=[make_hit(fallback_url)]), extractor
        ).run(BLOG, "Jane Doe")

        assert [i.extraction_method for i in outcome.items] == [ExtractionMethod.FALLBACK]

    async def test_newsletter_landing_page_last_resort(self, fallback_failure):
        discoverer = FakeDiscoverer(error=DiscoveryError("map failed"), landing_page="# Jane's Letters\nWeekly notes")

        outcome = await make_pipeline(
            SourceType.NEWSLETTER, discoverer, FakeClassifier(),
            FakeAnswerEngine(error=fallback_failure), FakeExtractor()
        ).run(NEWSLETTER, "Jane Doe")

        assert outcome.error is None
        assert len(outcome.items) == 1
        landing = outcome.items[0]
        assert landing.url == NEWSLETTER
        assert landing.title == "Jane's Letters"
        assert landing.metadata == {"landing_page": True}
        assert landing.source_type == SourceType.NEWSLETTER

    async def test_nothing_found_reports_error(self):
        outcome = await make_pipeline(
            SourceType.BLOG, FakeDiscoverer(urls=[]), FakeClassifier(),
            FakeAnswerEngine(error=FallbackError("answer engine down")), FakeExtractor()
        ).run(BLOG, "Jane Doe")

        assert outcome.items == []
        assert "No blog content found" in outcome.error
        assert stages(outcome)[-1] == (PipelineStage.FALLBACK, StepStatus.ERROR)

    async def test_unexpected_error_still_returns(self):
        class BrokenDiscoverer(FakeDiscoverer):
            async def discover(self, root_url, limit=100):
                raise RuntimeError("boom")

        outcome = await make_pipeline(
            SourceType.BLOG, BrokenDiscoverer(), FakeClassifier(),
            FakeAnswerEngine(hits=[make_hit(f"{BLOG}/famous-essay")]), FakeExtractor(default="# F\nbody")
        ).run(BLOG, "Jane Doe")

        assert [i.url for i in outcome.items] == [f"{BLOG}/famous-essay"]
        assert stages(outcome)[0] == (PipelineStage.DISCOVER, StepStatus.ERROR)

    async def test_fallback_decode_error_still_returns(self):
        answer_engine = FakeAnswerEngine(error=json.JSONDecodeError("Expecting value", "<html>gateway</html>", 0))

        outcome = await make_pipeline(
            SourceType.BLOG, FakeDiscoverer(urls=[]), FakeClassifier(), answer_engine, FakeExtractor()
        ).run(BLOG, "Jane Doe")

        assert outcome.items == []
        assert "No blog content found" in outcome.error
        assert stages(outcome)[-1] == (PipelineStage.FALLBACK, StepStatus.ERROR)
        assert "Expecting value" in outcome.steps[-1].error

    async def test_landing_page_failure_still_returns(self, fallback_failure):
        class BrokenScrape(FakeDiscoverer):
            async def scrape(self, url):
                raise ValueError("bad scrape body")

        outcome = await make_pipeline(
            SourceType.NEWSLETTER, BrokenScrape(urls=[]), FakeClassifier(),
            FakeAnswerEngine(error=fallback_failure), FakeExtractor()
        ).run(NEWSLETTER, "Jane Doe")

        assert outcome.items == []
        assert "No newsletter content found" in outcome.error
