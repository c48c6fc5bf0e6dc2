# harvester/services/actor_client.py
import asyncio
import aiohttp
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from harvester.config.settings import settings
from harvester.models.internal import JobStatus, JobStatusReport
from harvester.core.exceptions import JobSubmitError, JobPollError

logger = logging.getLogger(__name__)

ACTOR_STATUS_MAP = {
    "READY": JobStatus.PENDING,
    "RUNNING": JobStatus.RUNNING,
    "TIMING-OUT": JobStatus.RUNNING,
    "ABORTING": JobStatus.RUNNING,
    "SUCCEEDED": JobStatus.COMPLETED,
    "FAILED": JobStatus.FAILED,
    "ABORTED": JobStatus.FAILED,
    "TIMED-OUT": JobStatus.FAILED,
}

class SubmittedJob(BaseModel):
    job_id: str
    dataset_id: Optional[str] = None

class ActorClient:
    """Submit/status adapter for long-running hosted scraper actors"""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[int] = None):
        self.api_key = settings.APIFY_API_KEY if api_key is None else api_key
        self.base_url = (base_url or settings.APIFY_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.ACTOR_REQUEST_TIMEOUT
        self.session = None

    async def _get_session(self):
        """Lazy initialization of HTTP session"""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self.session

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }

    async def submit(self, actor_id: str, run_input: Dict[str, Any]) -> SubmittedJob:
        if not self.api_key:
            raise JobSubmitError("Actor API key is not configured")

        try:
            session = await self._get_session()
            async with session.post(
                f"{self.base_url}/v2/acts/{actor_id}/runs",
                json=run_input,
                headers=self._headers()
            ) as response:
                if response.status == 403:
                    raise JobSubmitError(f"Actor {actor_id} requires a paid plan (HTTP 403)")
                if response.status not in (200, 201):
                    error_text = await response.text()
                    raise JobSubmitError(f"Actor submit failed: HTTP {response.status} {error_text[:200]}")
                data = (await response.json()).get("data") or {}
        except asyncio.TimeoutError:
            raise JobSubmitError(f"Actor submit timed out after {self.timeout}s")
        except aiohttp.ClientError as e:
            raise JobSubmitError(f"Actor submit failed: {type(e).__name__}: {e}")
        except ValueError as e:
            raise JobSubmitError(f"Actor submit returned a non-JSON body: {e}")

        job_id = data.get("id")
        if not job_id:
            raise JobSubmitError("Actor submit response carried no run id")

        logger.info(f"Submitted actor {actor_id} as job {job_id}")
        return SubmittedJob(job_id=job_id, dataset_id=data.get("defaultDatasetId"))

    async def get_status(self, job_id: str) -> JobStatusReport:
        """Current status; the result items are attached once the job completes"""
        if not self.api_key:
            raise JobPollError("Actor API key is not configured")

        try:
            session = await self._get_session()
            async with session.get(f"{self.base_url}/v2/actor-runs/{job_id}", headers=self._headers()) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise JobPollError(f"Status check failed for {job_id}: HTTP {response.status} {error_text[:200]}")
                data = (await response.json()).get("data") or {}

            raw_status = str(data.get("status", "")).upper()
            status = ACTOR_STATUS_MAP.get(raw_status)
            if status is None:
                raise JobPollError(f"Unknown actor status {raw_status!r} for {job_id}")

            dataset_id = data.get("defaultDatasetId")
            report = JobStatusReport(job_id=job_id, status=status, dataset_id=dataset_id)
            if status == JobStatus.FAILED:
                report.error = f"Actor run ended with status {raw_status}"
            elif status == JobStatus.COMPLETED:
                report.result = await self._fetch_items(session, dataset_id)
            return report
        except asyncio.TimeoutError:
            raise JobPollError(f"Status check timed out after {self.timeout}s for {job_id}")
        except aiohttp.ClientError as e:
            raise JobPollError(f"Status check failed for {job_id}: {type(e).__name__}: {e}")
        except ValueError as e:
            raise JobPollError(f"Status check returned a non-JSON body for {job_id}: {e}")

    async def _fetch_items(self, session, dataset_id: Optional[str]) -> List[Dict[str, Any]]:
        if not dataset_id:
            raise JobPollError("Completed actor run has no dataset")

        async with session.get(
            f"{self.base_url}/v2/datasets/{dataset_id}/items",
            params={"clean": "true", "format": "json"},
            headers=self._headers()
        ) as response:
            if response.status != 200:
                raise JobPollError(f"Dataset fetch failed for {dataset_id}: HTTP {response.status}")
            items = await response.json()

        if isinstance(items, dict):
            items = [items]
        return [item for item in items if isinstance(item, dict)]

    async def close(self):
        """Close HTTP session"""
        if self.session:
            await self.session.close()
            self.session = None
