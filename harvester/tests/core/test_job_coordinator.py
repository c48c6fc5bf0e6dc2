# tests/core/test_job_coordinator.py
import asyncio
import pytest

from harvester.config.settings import settings
from harvester.models.internal import JobStatus, PipelineStage, SourceType, StepStatus
from harvester.services.social_sources import LinkedInSource, TwitterSource
from harvester.core.job_coordinator import AsyncJobCoordinator
from harvester.core.exceptions import JobAbandoned, JobPollError
from harvester.tests.fakes import FakeActorClient, RecordingSleep

TWEETS = [
    {"id": "1", "text": "small", "likeCount": 1},
    {"id": "2", "text": "big", "likeCount": 90, "retweetCount": 5},
    {"id": "3", "text": "medium", "likeCount": 30},
]

def twitter(max_wait: int = 1800) -> TwitterSource:
    source = TwitterSource(actor_id="twitter-actor", top_n=2)
    source.max_wait = max_wait
    return source

@pytest.fixture
def coordinator_factory(job_store, recording_sleep, fake_clock):
    def build(actor_client, sleep=None):
        return AsyncJobCoordinator(
            actor_client, job_store, poll_interval=2.0,
            sleep=sleep or recording_sleep, clock=fake_clock
        )
    return build

class TestSubmit:
    """Submission and idempotency"""

    async def test_submit_persists_job(self, coordinator_factory, job_store):
        actor = FakeActorClient()
        job = await coordinator_factory(actor).submit(twitter(), "Jane Doe", "@janedoe")

        stored = await job_store.get(job.job_id)
        assert stored.status == JobStatus.PENDING
        assert stored.dataset_id == "dataset-1"
        assert stored.estimated_duration_seconds > 0
        assert actor.submitted[0]["actor_id"] == "twitter-actor"

    async def test_second_submit_reuses_active_job(self, coordinator_factory):
        actor = FakeActorClient()
        coordinator = coordinator_factory(actor)

        first = await coordinator.submit(twitter(), "Jane Doe", "@janedoe")
        second = await coordinator.submit(twitter(), "jane doe", "@janedoe")

        assert first.job_id == second.job_id
        assert len(actor.submitted) == 1

    async def test_failed_job_is_not_reused(self, coordinator_factory):
        actor = FakeActorClient(statuses=[JobStatus.FAILED])
        coordinator = coordinator_factory(actor)

        first = await coordinator.submit(twitter(), "Jane Doe", "@janedoe")
        await coordinator.poll(first.job_id)
        second = await coordinator.submit(twitter(), "Jane Doe", "@janedoe")

        assert second.job_id != first.job_id
        assert len(actor.submitted) == 2

class TestPoll:
    async def test_forward_only(self, coordinator_factory, job_store):
        actor = FakeActorClient(statuses=[JobStatus.COMPLETED, JobStatus.RUNNING])
        coordinator = coordinator_factory(actor)
        job = await coordinator.submit(twitter(), "Jane Doe", "@janedoe")

        assert (await coordinator.poll(job.job_id)).status == JobStatus.COMPLETED
        report = await coordinator.poll(job.job_id)

        assert report.status == JobStatus.COMPLETED
        assert (await job_store.get(job.job_id)).status == JobStatus.COMPLETED

    async def test_failed_job_answered_from_store(self, coordinator_factory):
        actor = FakeActorClient(statuses=[JobStatus.FAILED])
        coordinator = coordinator_factory(actor)
        job = await coordinator.submit(twitter(), "Jane Doe", "@janedoe")

        await coordinator.poll(job.job_id)
        report = await coordinator.poll(job.job_id)

        assert report.status == JobStatus.FAILED
        assert len(actor.status_calls) == 1

    async def test_unknown_job(self, coordinator_factory):
        with pytest.raises(JobPollError):
            await coordinator_factory(FakeActorClient()).poll("nope")

class TestWait:
    """Bounded polling loop with cancellation"""

    async def test_polls_on_interval_until_terminal(self, coordinator_factory, recording_sleep):
        actor = FakeActorClient(statuses=[JobStatus.PENDING, JobStatus.RUNNING, JobStatus.COMPLETED], items=TWEETS)
        coordinator = coordinator_factory(actor)
        job = await coordinator.submit(twitter(), "Jane Doe", "@janedoe")

        report = await coordinator.wait(job.job_id, max_wait=60)

        assert report.status == JobStatus.COMPLETED
        assert report.result == TWEETS
        assert recording_sleep.calls == [2.0, 2.0]

    async def test_max_wait_exceeded(self, coordinator_factory, recording_sleep):
        actor = FakeActorClient(statuses=[JobStatus.RUNNING])
        coordinator = coordinator_factory(actor)
        job = await coordinator.submit(twitter(), "Jane Doe", "@janedoe")

        with pytest.raises(JobPollError):
            await coordinator.wait(job.job_id, max_wait=10)

        assert recording_sleep.total == 10.0

    async def test_default_bound_follows_source(self, coordinator_factory, recording_sleep, monkeypatch):
        monkeypatch.setattr(settings, "TWITTER_MAX_WAIT", 60)
        monkeypatch.setattr(settings, "LINKEDIN_MAX_WAIT", 6)
        actor = FakeActorClient(statuses=[JobStatus.RUNNING])
        coordinator = coordinator_factory(actor)
        job = await coordinator.submit(
            LinkedInSource(actor_id="linkedin-actor"), "Jane Doe", "https://www.linkedin.com/in/jane-doe"
        )

        with pytest.raises(JobPollError, match="after 6s"):
            await coordinator.wait(job.job_id)

        assert recording_sleep.total == 6.0

    async def test_cancel_token_abandons_job(self, coordinator_factory, job_store, fake_clock):
        actor = FakeActorClient(statuses=[JobStatus.RUNNING])
        token = asyncio.Event()
        calls = []

        async def sleep_then_cancel(delay):
            calls.append(delay)
            fake_clock.advance(delay)
            if len(calls) == 2:
                token.set()

        coordinator = coordinator_factory(actor, sleep=sleep_then_cancel)
        job = await coordinator.submit(twitter(), "Jane Doe", "@janedoe")

        with pytest.raises(JobAbandoned):
            await coordinator.wait(job.job_id, cancel_token=token, max_wait=600)

        stored = await job_store.get(job.job_id)
        assert stored.abandoned is True
        assert stored.status == JobStatus.RUNNING
        assert len(actor.status_calls) == 2

    async def test_task_cancellation_abandons_job(self, coordinator_factory, job_store):
        actor = FakeActorClient(statuses=[JobStatus.RUNNING])

        async def cancelled_sleep(delay):
            raise asyncio.CancelledError()

        coordinator = coordinator_factory(actor, sleep=cancelled_sleep)
        job = await coordinator.submit(twitter(), "Jane Doe", "@janedoe")

        with pytest.raises(asyncio.CancelledError):
            await coordinator.wait(job.job_id, max_wait=600)

        assert (await job_store.get(job.job_id)).abandoned is True

class TestRun:
    """submit -> wait -> rank as one outcome"""

    async def test_run_ranks_results(self, coordinator_factory):
        actor = FakeActorClient(statuses=[JobStatus.RUNNING, JobStatus.COMPLETED], items=TWEETS)

        outcome = await coordinator_factory(actor).run(twitter(), "Jane Doe", "@janedoe")

        assert outcome.error is None
        assert [i.url for i in outcome.items] == [
            "https://x.com/janedoe/status/2",
            "https://x.com/janedoe/status/3",
        ]
        assert [(s.stage, s.status) for s in outcome.steps] == [
            (PipelineStage.SUBMIT, StepStatus.COMPLETED),
            (PipelineStage.POLL, StepStatus.COMPLETED),
            (PipelineStage.RANK, StepStatus.COMPLETED),
        ]

    async def test_submit_failure_is_reported(self, coordinator_factory, submit_failure):
        actor = FakeActorClient(submit_error=submit_failure)

        outcome = await coordinator_factory(actor).run(
            LinkedInSource(actor_id="linkedin-actor"), "Jane Doe", "https://www.linkedin.com/in/jane-doe"
        )

        assert outcome.items == []
        assert "paid plan" in outcome.error
        assert outcome.steps[0].status == StepStatus.ERROR

    async def test_invalid_handle_is_reported(self, coordinator_factory):
        actor = FakeActorClient()
        outcome = await coordinator_factory(actor).run(
            LinkedInSource(actor_id="linkedin-actor"), "Jane Doe", "not a profile"
        )
        assert "Invalid LinkedIn URL" in outcome.error
        assert actor.submitted == []

    async def test_failed_job_is_reported(self, coordinator_factory):
        actor = FakeActorClient(statuses=[JobStatus.FAILED])
        outcome = await coordinator_factory(actor).run(twitter(), "Jane Doe", "@janedoe")
        assert outcome.error == "Actor run ended with status FAILED"

    async def test_timeout_is_reported(self, coordinator_factory):
        actor = FakeActorClient(statuses=[JobStatus.RUNNING])
        outcome = await coordinator_factory(actor).run(twitter(max_wait=6), "Jane Doe", "@janedoe")
        assert "still running" in outcome.error
        assert outcome.steps[-1].stage == PipelineStage.POLL

class TestResume:
    """A restarted coordinator sharing the store picks the job back up"""

    async def test_resume_after_abandon(self, job_store, fake_clock):
        actor = FakeActorClient(statuses=[JobStatus.RUNNING, JobStatus.RUNNING, JobStatus.COMPLETED], items=TWEETS)
        token = asyncio.Event()
        token.set()

        first = AsyncJobCoordinator(actor, job_store, sleep=RecordingSleep(fake_clock), clock=fake_clock)
        abandoned = await first.run(twitter(), "Jane Doe", "@janedoe", cancel_token=token)
        job_id = "job-1"
        assert "abandoned" in abandoned.error
        assert (await job_store.get(job_id)).abandoned is True

        restarted = AsyncJobCoordinator(actor, job_store, sleep=RecordingSleep(fake_clock), clock=fake_clock)
        outcome = await restarted.resume(twitter(), job_id)

        assert outcome.error is None
        assert len(outcome.items) == 2
        assert len(actor.submitted) == 1
        stored = await job_store.get(job_id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.abandoned is False

        # a third instance sees the same terminal result
        third = AsyncJobCoordinator(actor, job_store, sleep=RecordingSleep(fake_clock), clock=fake_clock)
        again = await third.resume(twitter(), job_id)
        assert [i.url for i in again.items] == [i.url for i in outcome.items]

    async def test_resume_unknown_job(self, coordinator_factory):
        outcome = await coordinator_factory(FakeActorClient()).resume(twitter(), "missing")
        assert outcome.error == "Unknown job missing"
