# harvester/core/job_coordinator.py
import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional

from harvester.config.settings import settings
from harvester.models.internal import (
    ExtractionJob, JobStatus, JobStatusReport, PipelineStage, PipelineStepResult,
    SourceOutcome, SourceType, StepStatus, dedupe_by_url
)
from harvester.services.actor_client import ActorClient
from harvester.services.job_store import JobStore
from harvester.services.social_sources import SocialSource
from harvester.core.exceptions import JobAbandoned, JobPollError, JobSubmitError

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]
ClockFn = Callable[[], float]

def default_max_wait(source_type: SourceType) -> float:
    """Upper bound on polling when the caller gives none"""
    if source_type == SourceType.LINKEDIN:
        return settings.LINKEDIN_MAX_WAIT
    return settings.TWITTER_MAX_WAIT

class AsyncJobCoordinator:
    """Submit/poll/complete protocol for extractions run by external actors.

    Actor jobs run for 20-30+ minutes, so the job id is persisted in the
    JobStore right after submit; a restarted process resumes polling from
    the stored id instead of resubmitting. Cancelling a wait marks the job
    abandoned locally and leaves the remote job alone.
    """

    def __init__(self, actor_client: ActorClient, job_store: JobStore,
                 poll_interval: Optional[float] = None,
                 sleep: SleepFn = asyncio.sleep, clock: ClockFn = time.monotonic):
        self.actor_client = actor_client
        self.job_store = job_store
        self.poll_interval = settings.JOB_POLL_INTERVAL if poll_interval is None else poll_interval
        self._sleep = sleep
        self._clock = clock

    async def submit(self, source: SocialSource, creator_name: str, handle: str) -> ExtractionJob:
        existing = await self.job_store.find_active(creator_name, source.source_type)
        if existing:
            logger.info(f"Reusing active {source.source_type.value} job {existing.job_id} for {creator_name}")
            return existing

        run_input = source.build_input(handle)
        submitted = await self.actor_client.submit(source.actor_id, run_input)

        job = ExtractionJob(
            job_id=submitted.job_id,
            source_type=source.source_type,
            creator_name=creator_name,
            source_handle=handle,
            estimated_duration_seconds=source.estimated_duration,
            dataset_id=submitted.dataset_id
        )
        await self.job_store.save(job)
        return job

    async def poll(self, job_id: str) -> JobStatusReport:
        """One status check; the stored job only ever moves forward"""
        job = await self.job_store.get(job_id)
        if job is None:
            raise JobPollError(f"Unknown job {job_id}")
        if job.status == JobStatus.FAILED:
            return JobStatusReport(job_id=job_id, status=JobStatus.FAILED, error=job.error)

        report = await self.actor_client.get_status(job_id)
        if not job.advance(report.status, error=report.error):
            logger.warning(f"Ignoring backwards transition {job.status.value} -> {report.status.value} for job {job_id}")
            report = JobStatusReport(job_id=job_id, status=job.status, dataset_id=report.dataset_id)
        if report.dataset_id and not job.dataset_id:
            job.dataset_id = report.dataset_id
        await self.job_store.save(job)
        return report

    async def wait(self, job_id: str, cancel_token: Optional[asyncio.Event] = None,
                   max_wait: Optional[float] = None) -> JobStatusReport:
        """Poll every ``poll_interval`` seconds until the job is terminal.

        Raises JobAbandoned when ``cancel_token`` is set, JobPollError when
        ``max_wait`` elapses or a status call fails.
        """
        if max_wait is None:
            job = await self.job_store.get(job_id)
            if job is None:
                raise JobPollError(f"Unknown job {job_id}")
            max_wait = default_max_wait(job.source_type)
        deadline = self._clock() + max_wait

        try:
            while True:
                if cancel_token is not None and cancel_token.is_set():
                    await self._abandon(job_id)
                    raise JobAbandoned(job_id)

                report = await self.poll(job_id)
                if report.status.is_terminal:
                    return report

                if self._clock() >= deadline:
                    raise JobPollError(f"Job {job_id} still {report.status.value} after {max_wait}s")

                await self._sleep(self.poll_interval)
        except asyncio.CancelledError:
            await self._abandon(job_id)
            raise

    async def _abandon(self, job_id: str):
        job = await self.job_store.get(job_id)
        if job is None or job.status.is_terminal:
            return
        job.abandoned = True
        await self.job_store.save(job)
        logger.info(f"Polling abandoned for job {job_id}; remote job left running")

    async def run(self, source: SocialSource, creator_name: str, handle: str,
                  cancel_token: Optional[asyncio.Event] = None) -> SourceOutcome:
        """Submit, wait and rank; failures end up in the outcome, never raised"""
        source_type = source.source_type
        steps: List[PipelineStepResult] = []

        submit_step = PipelineStepResult(source_type=source_type, stage=PipelineStage.SUBMIT, status=StepStatus.RUNNING)
        steps.append(submit_step)
        try:
            job = await self.submit(source, creator_name, handle)
        except JobSubmitError as e:
            logger.error(f"{source_type.value} submit failed: {e}")
            submit_step.finish(StepStatus.ERROR, error=str(e))
            return SourceOutcome(source_type=source_type, steps=steps, error=str(e))
        except Exception as e:
            logger.error(f"Unexpected {source_type.value} submit error: {e}", exc_info=True)
            submit_step.finish(StepStatus.ERROR, error=str(e))
            return SourceOutcome(source_type=source_type, steps=steps, error=str(e))

        submit_step.finish(
            StepStatus.COMPLETED,
            preview=f"Job {job.job_id} submitted (ETA ~{job.estimated_duration_seconds}s)"
        )
        return await self._wait_and_collect(source, job, cancel_token, steps)

    async def resume(self, source: SocialSource, job_id: str,
                     cancel_token: Optional[asyncio.Event] = None) -> SourceOutcome:
        """Continue polling a stored job, e.g. after a process restart"""
        steps: List[PipelineStepResult] = []
        job = await self.job_store.get(job_id)
        if job is None:
            error = f"Unknown job {job_id}"
            step = PipelineStepResult(source_type=source.source_type, stage=PipelineStage.POLL)
            steps.append(step.finish(StepStatus.ERROR, error=error))
            return SourceOutcome(source_type=source.source_type, steps=steps, error=error)

        if job.abandoned:
            job.abandoned = False
            await self.job_store.save(job)
        return await self._wait_and_collect(source, job, cancel_token, steps)

    async def _wait_and_collect(self, source: SocialSource, job: ExtractionJob,
                                cancel_token: Optional[asyncio.Event],
                                steps: List[PipelineStepResult]) -> SourceOutcome:
        source_type = source.source_type

        poll_step = PipelineStepResult(source_type=source_type, stage=PipelineStage.POLL, status=StepStatus.RUNNING)
        steps.append(poll_step)
        try:
            report = await self.wait(job.job_id, cancel_token, max_wait=source.max_wait)
        except JobAbandoned as e:
            poll_step.finish(StepStatus.ERROR, error=str(e))
            return SourceOutcome(source_type=source_type, steps=steps, error=str(e))
        except JobPollError as e:
            logger.error(f"{source_type.value} polling failed: {e}")
            poll_step.finish(StepStatus.ERROR, error=str(e))
            return SourceOutcome(source_type=source_type, steps=steps, error=str(e))
        except Exception as e:
            logger.error(f"Unexpected {source_type.value} polling error: {e}", exc_info=True)
            poll_step.finish(StepStatus.ERROR, error=str(e))
            return SourceOutcome(source_type=source_type, steps=steps, error=str(e))

        if report.status == JobStatus.FAILED:
            error = report.error or f"Job {job.job_id} failed"
            poll_step.finish(StepStatus.ERROR, error=error)
            return SourceOutcome(source_type=source_type, steps=steps, error=error)

        raw_items = report.result or []
        poll_step.finish(StepStatus.COMPLETED, item_count=len(raw_items),
                         preview=f"Job {job.job_id} completed with {len(raw_items)} raw items")

        rank_step = PipelineStepResult(source_type=source_type, stage=PipelineStage.RANK, status=StepStatus.RUNNING)
        steps.append(rank_step)
        items = dedupe_by_url(source.normalize(raw_items, job.source_handle, job.creator_name))
        ranked = source.rank(items)
        rank_step.finish(StepStatus.COMPLETED, item_count=len(ranked),
                         preview=f"Kept top {len(ranked)} of {len(items)} by engagement")
        return SourceOutcome(source_type=source_type, items=ranked, steps=steps)
