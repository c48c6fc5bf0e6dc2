# harvester/models/__init__.py
"""Data models"""

from .requests import PipelineRunRequest, SourceHandles
from .responses import RunAcceptedResponse, HealthResponse, ErrorResponse
from .internal import (
    SourceType,
    ExtractionMethod,
    ContentSource,
    ExtractedPage,
    FetchProfile,
    JobStatus,
    ExtractionJob,
    JobStatusReport,
    PipelineStage,
    StepStatus,
    PipelineStepResult,
    SourceOutcome,
    RunStatus,
    PipelineRun,
)

__all__ = [
    "PipelineRunRequest",
    "SourceHandles",
    "RunAcceptedResponse",
    "HealthResponse",
    "ErrorResponse",
    "SourceType",
    "ExtractionMethod",
    "ContentSource",
    "ExtractedPage",
    "FetchProfile",
    "JobStatus",
    "ExtractionJob",
    "JobStatusReport",
    "PipelineStage",
    "StepStatus",
    "PipelineStepResult",
    "SourceOutcome",
    "RunStatus",
    "PipelineRun",
]
