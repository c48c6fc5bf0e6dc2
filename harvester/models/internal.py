# harvester/models/internal.py
from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class SourceType(str, Enum):
    BLOG = "blog"
    NEWSLETTER = "newsletter"
    TWITTER = "twitter"
    LINKEDIN = "linkedin"

SYNC_SOURCES = (SourceType.BLOG, SourceType.NEWSLETTER)
ASYNC_SOURCES = (SourceType.TWITTER, SourceType.LINKEDIN)

class ExtractionMethod(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"

class ContentSource(BaseModel):
    source_type: SourceType
    url: str
    title: str = ""
    body: str = ""
    published_at: Optional[datetime] = None
    engagement_score: Optional[float] = None
    extraction_method: ExtractionMethod
    extracted_at: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("body", "title", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        return "" if v is None else v

class ExtractedPage(BaseModel):
    """Raw output of a per-item extractor, before normalization"""
    url: str
    text: str = ""
    title: Optional[str] = None
    published_at: Optional[datetime] = None

class FetchProfile(BaseModel):
    name: str
    batch_size: int = Field(ge=1)
    inter_batch_delay: float = Field(default=0.0, ge=0.0)
    max_retries: int = Field(default=3, ge=1)
    backoff_base: float = Field(default=1.0, ge=0.0)
    backoff_jitter: float = Field(default=0.5, ge=0.0, le=1.0)
    timeout: float = Field(default=30.0, gt=0.0)

class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

_JOB_STATUS_ORDER = {
    JobStatus.PENDING: 0,
    JobStatus.RUNNING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
}

class ExtractionJob(BaseModel):
    job_id: str
    source_type: SourceType
    creator_name: str
    source_handle: str
    status: JobStatus = JobStatus.PENDING
    submitted_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    estimated_duration_seconds: int = 0
    dataset_id: Optional[str] = None
    abandoned: bool = False
    error: Optional[str] = None

    def can_transition(self, new_status: JobStatus) -> bool:
        if self.status.is_terminal:
            return False
        return _JOB_STATUS_ORDER[new_status] >= _JOB_STATUS_ORDER[self.status]

    def advance(self, new_status: JobStatus, error: Optional[str] = None) -> bool:
        """Move forward to ``new_status``; returns False when the move is refused"""
        if new_status == self.status:
            return True
        if not self.can_transition(new_status):
            return False
        self.status = new_status
        if new_status.is_terminal:
            self.completed_at = utcnow()
        if error:
            self.error = error
        return True

class JobStatusReport(BaseModel):
    job_id: str
    status: JobStatus
    result: Optional[List[Dict[str, Any]]] = None
    dataset_id: Optional[str] = None
    error: Optional[str] = None

class PipelineStage(str, Enum):
    RESOLVE = "resolve"
    DISCOVER = "discover"
    CLASSIFY = "classify"
    EXTRACT = "extract"
    ENRICH = "enrich"
    FALLBACK = "fallback"
    SUBMIT = "submit"
    POLL = "poll"
    RANK = "rank"

class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"

class PipelineStepResult(BaseModel):
    source_type: Optional[SourceType] = None
    stage: PipelineStage
    status: StepStatus = StepStatus.PENDING
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    item_count: int = 0
    error: Optional[str] = None
    preview: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def finish(self, status: StepStatus, item_count: int = 0,
               error: Optional[str] = None, preview: Optional[str] = None) -> "PipelineStepResult":
        self.status = status
        self.ended_at = utcnow()
        self.item_count = item_count
        self.error = error
        self.preview = preview
        return self

class SourceOutcome(BaseModel):
    """Result of one source pipeline, merged into the run by the orchestrator"""
    source_type: SourceType
    items: List[ContentSource] = Field(default_factory=list)
    steps: List[PipelineStepResult] = Field(default_factory=list)
    error: Optional[str] = None

class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class PipelineRun(BaseModel):
    run_id: str = Field(default_factory=lambda: uuid4().hex)
    creator_name: str
    requested_sources: List[SourceType]
    source_handles: Dict[SourceType, str] = Field(default_factory=dict)
    resolve_sources: bool = False
    status: RunStatus = RunStatus.PENDING
    results: Dict[SourceType, List[ContentSource]] = Field(default_factory=dict)
    errors: Dict[SourceType, str] = Field(default_factory=dict)
    steps: List[PipelineStepResult] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def total_items(self) -> int:
        return sum(len(items) for items in self.results.values())

    def to_payload(self) -> Dict[str, Any]:
        """JSON shape handed to voice analysis and the UI"""
        payload: Dict[str, Any] = {
            "run_id": self.run_id,
            "creator_name": self.creator_name,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "errors": {source.value: error for source, error in self.errors.items()},
            "total_items": self.total_items,
        }
        for source in self.requested_sources:
            payload[source.value] = [
                item.model_dump(mode="json") for item in self.results.get(source, [])
            ]
        steps = []
        for step in self.steps:
            data = step.model_dump(mode="json")
            data["duration_seconds"] = step.duration_seconds
            steps.append(data)
        payload["steps"] = steps
        return payload

def dedupe_by_url(items: List[ContentSource]) -> List[ContentSource]:
    """Drop repeated URLs (first occurrence wins) and empty bodies"""
    seen = set()
    unique = []
    for item in items:
        if not item.body.strip() or item.url in seen:
            continue
        seen.add(item.url)
        unique.append(item)
    return unique
