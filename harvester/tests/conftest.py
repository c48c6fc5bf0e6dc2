# tests/conftest.py
import pytest

from harvester.services.job_store import JobStore
from harvester.core.exceptions import FallbackError, JobSubmitError
from harvester.tests.fakes import FakeClock, RecordingSleep

@pytest.fixture
def fake_clock():
    return FakeClock()

@pytest.fixture
def recording_sleep(fake_clock):
    return RecordingSleep(fake_clock)

@pytest.fixture
async def job_store():
    store = JobStore(use_redis=False)
    yield store
    await store.close()

@pytest.fixture
def submit_failure():
    return JobSubmitError("Actor apimaestro~linkedin-profile-posts requires a paid plan (HTTP 403)")

@pytest.fixture
def fallback_failure():
    return FallbackError("Answer engine API key is not configured")
