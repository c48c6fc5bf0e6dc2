# harvester/core/__init__.py

# Only exceptions here; pipeline modules import services and are imported directly
from .exceptions import (
    PipelineException,
    DiscoveryError,
    ClassificationError,
    ExtractionItemError,
    ExtractionStageError,
    FallbackError,
    JobSubmitError,
    JobPollError,
    JobAbandoned,
)

__all__ = [
    "PipelineException",
    "DiscoveryError",
    "ClassificationError",
    "ExtractionItemError",
    "ExtractionStageError",
    "FallbackError",
    "JobSubmitError",
    "JobPollError",
    "JobAbandoned",
]
