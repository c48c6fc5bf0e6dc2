# harvester/core/pipeline.py
import asyncio
import time
import logging
from typing import Dict, List, Optional

from harvester.config.settings import settings
from harvester.models.internal import (
    PipelineRun, PipelineStage, PipelineStepResult, RunStatus, SourceOutcome, SourceType,
    StepStatus, SYNC_SOURCES, dedupe_by_url, utcnow
)
from harvester.models.requests import PipelineRunRequest
from harvester.services.actor_client import ActorClient
from harvester.services.answer_engine import AnswerEngine
from harvester.services.content_fetcher import MarkdownProxyExtractor
from harvester.services.job_store import JobStore
from harvester.services.social_sources import LinkedInSource, SocialSource, TwitterSource
from harvester.services.url_classifier import URLClassifier
from harvester.services.url_discoverer import URLDiscoverer
from harvester.core.job_coordinator import AsyncJobCoordinator
from harvester.core.sync_pipeline import SyncExtractionPipeline
from harvester.core.exceptions import PipelineException, ValidationException

logger = logging.getLogger(__name__)

class PipelineOrchestrator:
    def __init__(
        self,
        discoverer: Optional[URLDiscoverer] = None,
        classifier: Optional[URLClassifier] = None,
        answer_engine: Optional[AnswerEngine] = None,
        extractor: Optional[MarkdownProxyExtractor] = None,
        actor_client: Optional[ActorClient] = None,
        job_store: Optional[JobStore] = None,
        coordinator: Optional[AsyncJobCoordinator] = None,
        sync_pipelines: Optional[Dict[SourceType, SyncExtractionPipeline]] = None,
        social_sources: Optional[Dict[SourceType, SocialSource]] = None
    ):
        self.discoverer = discoverer or URLDiscoverer()
        self.classifier = classifier or URLClassifier()
        self.answer_engine = answer_engine or AnswerEngine()
        self.extractor = extractor or MarkdownProxyExtractor()
        self.actor_client = actor_client or ActorClient()
        self.job_store = job_store or JobStore()
        self.coordinator = coordinator or AsyncJobCoordinator(self.actor_client, self.job_store)

        self.sync_pipelines = sync_pipelines or {
            source_type: SyncExtractionPipeline(
                source_type, self.discoverer, self.classifier, self.answer_engine, self.extractor
            )
            for source_type in SYNC_SOURCES
        }
        self.social_sources = social_sources or {
            SourceType.TWITTER: TwitterSource(),
            SourceType.LINKEDIN: LinkedInSource(),
        }

        # Health state
        self.is_healthy = True
        self.last_health_check = 0
        self._health_cache: Dict[str, str] = {}

    def create_run(self, request: PipelineRunRequest) -> PipelineRun:
        """Validate a request into a pending run; nothing is executed yet"""
        handles = request.sources.as_dict()
        if request.source_types:
            requested = list(dict.fromkeys(request.source_types))
        else:
            requested = [source_type for source_type in SourceType if source_type in handles]
            if not requested and request.resolve_sources:
                requested = list(SourceType)

        if not requested:
            raise ValidationException("No sources requested: provide at least one source handle or enable resolve_sources")

        if not request.resolve_sources:
            missing = [source_type.value for source_type in requested if source_type not in handles]
            if missing:
                raise ValidationException(f"Missing handles for: {', '.join(missing)}")

        return PipelineRun(
            creator_name=request.creator_name,
            requested_sources=requested,
            source_handles=handles,
            resolve_sources=request.resolve_sources
        )

    async def execute(self, run: PipelineRun, cancel_token: Optional[asyncio.Event] = None) -> PipelineRun:
        """Run every requested source concurrently and merge the outcomes into ``run``.

        One failing source never affects the others. Only task cancellation
        propagates; everything else ends up in ``run.errors``.
        """
        start_time = time.time()
        run.status = RunStatus.RUNNING
        logger.info(
            f"Starting run for {run.creator_name}: {[s.value for s in run.requested_sources]}",
            extra={"run_id": run.run_id}
        )

        tasks: Dict[asyncio.Task, SourceType] = {}
        try:
            if run.resolve_sources:
                await self._resolve(run)

            tasks = {
                asyncio.create_task(self._run_source_safely(run, source_type, cancel_token)): source_type
                for source_type in run.requested_sources
            }
            # merged as each source finishes so a cancelled run keeps finished sources
            pending = set(tasks)
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    self._merge(run, self._outcome_of(run, task, tasks[task]))

        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            for task, source_type in tasks.items():
                if source_type in run.results:
                    continue
                if task.cancelled():
                    run.errors[source_type] = f"Run cancelled before {source_type.value} finished"
                else:
                    self._merge(run, self._outcome_of(run, task, source_type))
            run.status = RunStatus.CANCELLED
            run.completed_at = utcnow()
            logger.info(
                f"Run cancelled after {time.time() - start_time:.2f}s with {run.total_items} items kept",
                extra={"run_id": run.run_id}
            )
            raise
        except Exception as e:
            logger.error(f"Run error: {e}", extra={"run_id": run.run_id}, exc_info=True)
            for source_type in run.requested_sources:
                if source_type not in run.results:
                    run.errors.setdefault(source_type, f"Pipeline error: {e}")

        cancelled = cancel_token is not None and cancel_token.is_set()
        run.status = RunStatus.CANCELLED if cancelled else RunStatus.COMPLETED
        run.completed_at = utcnow()
        logger.info(
            f"Run {run.status.value} in {time.time() - start_time:.2f}s: "
            f"{run.total_items} items, {len(run.errors)} source errors",
            extra={"run_id": run.run_id}
        )
        return run

    async def _resolve(self, run: PipelineRun):
        missing = [s for s in run.requested_sources if s not in run.source_handles]
        if not missing:
            return

        step = PipelineStepResult(stage=PipelineStage.RESOLVE, status=StepStatus.RUNNING)
        run.steps.append(step)
        try:
            found = await self.answer_engine.discover_sources(
                run.creator_name,
                hints={source_type.value: handle for source_type, handle in run.source_handles.items()}
            )
        except PipelineException as e:
            logger.warning(f"Source resolution failed: {e}", extra={"run_id": run.run_id})
            step.finish(StepStatus.ERROR, error=str(e))
            return

        resolved = {source_type: found[source_type] for source_type in missing if source_type in found}
        run.source_handles.update(resolved)
        step.finish(
            StepStatus.COMPLETED,
            item_count=len(resolved),
            preview=", ".join(f"{s.value}={handle}" for s, handle in resolved.items()) or None
        )

    async def _run_source(self, run: PipelineRun, source_type: SourceType,
                          cancel_token: Optional[asyncio.Event]) -> SourceOutcome:
        handle = run.source_handles.get(source_type)
        if not handle:
            error = f"No {source_type.value} handle available"
            step = PipelineStepResult(source_type=source_type, stage=PipelineStage.RESOLVE)
            return SourceOutcome(
                source_type=source_type,
                steps=[step.finish(StepStatus.SKIPPED, error=error)],
                error=error
            )

        if source_type in self.sync_pipelines:
            return await self.sync_pipelines[source_type].run(handle, run.creator_name)
        return await self.coordinator.run(
            self.social_sources[source_type], run.creator_name, handle, cancel_token
        )

    async def _run_source_safely(self, run: PipelineRun, source_type: SourceType,
                                 cancel_token: Optional[asyncio.Event]) -> SourceOutcome:
        try:
            return await self._run_source(run, source_type, cancel_token)
        except Exception as e:
            logger.error(
                f"{source_type.value} pipeline raised {type(e).__name__}: {e}",
                extra={"run_id": run.run_id}, exc_info=True
            )
            return SourceOutcome(source_type=source_type, error=f"Pipeline error: {e}")

    @staticmethod
    def _outcome_of(run: PipelineRun, task: asyncio.Task, source_type: SourceType) -> SourceOutcome:
        if task.cancelled():
            return SourceOutcome(source_type=source_type, error=f"{source_type.value} pipeline was cancelled")
        error = task.exception()
        if error is not None:
            logger.error(f"{source_type.value} pipeline raised {type(error).__name__}: {error}",
                         extra={"run_id": run.run_id})
            return SourceOutcome(source_type=source_type, error=f"Pipeline error: {error}")
        return task.result()

    @staticmethod
    def _merge(run: PipelineRun, outcome: SourceOutcome):
        run.results[outcome.source_type] = dedupe_by_url(outcome.items)
        run.steps.extend(outcome.steps)
        if outcome.error:
            run.errors[outcome.source_type] = outcome.error

    async def health_check(self) -> Dict[str, str]:
        current_time = time.time()
        if current_time - self.last_health_check < 30 and self._health_cache:
            return self._health_cache

        def configured(api_key: Optional[str]) -> str:
            return "healthy" if api_key else "degraded - no api key"

        checks = {
            "site_mapper": configured(self.discoverer.api_key),
            "classifier": configured(self.classifier.api_key),
            "answer_engine": configured(self.answer_engine.api_key),
            "actor_api": configured(self.actor_client.api_key),
        }
        component_checks = {
            "markdown_proxy": self._check_component_health(self.extractor.health_check(), "markdown_proxy"),
            "job_store": self._check_component_health(self.job_store.health_check(), "job_store"),
        }
        results = await asyncio.gather(*component_checks.values(), return_exceptions=True)
        for component_name, result in zip(component_checks, results):
            if isinstance(result, Exception):
                logger.error(f"Health check failed for {component_name}: {result}")
                checks[component_name] = "unhealthy"
            else:
                checks[component_name] = result

        unhealthy = [k for k, v in checks.items() if not v.startswith(("healthy", "degraded"))]
        degraded = [k for k, v in checks.items() if v.startswith("degraded")]
        self.is_healthy = not unhealthy
        overall = "unhealthy" if unhealthy else "degraded" if degraded else "healthy"
        self.last_health_check = current_time
        self._health_cache = {"overall": overall, **checks}
        return self._health_cache

    async def _check_component_health(self, health_coro, component_name: str, timeout: float = 5.0):
        try:
            return await asyncio.wait_for(health_coro, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Health check timeout for {component_name}")
            return "timeout"

    async def shutdown(self):
        logger.info("Shutting down pipeline components...")
        await asyncio.gather(
            self.discoverer.close(),
            self.classifier.close(),
            self.answer_engine.close(),
            self.extractor.close(),
            self.actor_client.close(),
            self.job_store.close(),
            return_exceptions=True
        )
        logger.info("Pipeline shutdown completed")

class RunStore:
    """Runs by id, with the background task and cancel token of each.

    Owned by the application instance; finished runs beyond ``max_runs`` are
    evicted oldest first.
    """

    def __init__(self, max_runs: Optional[int] = None):
        self.max_runs = max_runs or settings.MEMORY_CACHE_SIZE
        self._runs: Dict[str, PipelineRun] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, asyncio.Event] = {}

    def __len__(self) -> int:
        return len(self._runs)

    def get(self, run_id: str) -> Optional[PipelineRun]:
        return self._runs.get(run_id)

    def task_for(self, run_id: str) -> Optional[asyncio.Task]:
        """Background task of a run still executing, None once it finished"""
        return self._tasks.get(run_id)

    def start(self, run: PipelineRun, orchestrator: PipelineOrchestrator) -> asyncio.Task:
        """Register ``run`` and execute it in the background"""
        self._evict()
        token = asyncio.Event()
        self._runs[run.run_id] = run
        self._tokens[run.run_id] = token

        task = asyncio.create_task(orchestrator.execute(run, token))
        self._tasks[run.run_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run.run_id, None))
        return task

    def cancel(self, run_id: str) -> bool:
        """Stop a run; long-running remote jobs are abandoned, not cancelled"""
        run = self._runs.get(run_id)
        if run is None:
            return False

        token = self._tokens.get(run_id)
        if token is not None:
            token.set()
        task = self._tasks.get(run_id)
        if task is not None and not task.done():
            task.cancel()
        if run.status in (RunStatus.PENDING, RunStatus.RUNNING):
            run.status = RunStatus.CANCELLED
            run.completed_at = utcnow()
        logger.info(f"Cancel requested for run {run_id}", extra={"run_id": run_id})
        return True

    def _evict(self):
        finished = [
            run_id for run_id, run in self._runs.items()
            if run.status in (RunStatus.COMPLETED, RunStatus.CANCELLED)
        ]
        while len(self._runs) >= self.max_runs and finished:
            run_id = finished.pop(0)
            self._runs.pop(run_id, None)
            self._tokens.pop(run_id, None)

    async def shutdown(self):
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
