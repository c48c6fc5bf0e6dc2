# harvester/core/exceptions.py
from typing import Optional

from fastapi import HTTPException

class CustomHTTPException(HTTPException):
    def __init__(self, status_code: int, detail: str, error_code: str = None):
        super().__init__(status_code=status_code, detail=detail)
        self.error_code = error_code

class PipelineException(Exception):
    """Base class for errors raised inside the extraction pipeline"""
    pass

class DiscoveryError(PipelineException):
    """Site mapping failed or returned no URLs"""
    pass

class ClassificationError(PipelineException):
    """Classifier response could not be parsed into a URL list"""
    pass

class ExtractionItemError(PipelineException):
    """A single URL could not be extracted.

    ``retryable`` marks failures worth another attempt (rate limits,
    timeouts, transport errors); anything else drops the item immediately.
    """

    def __init__(self, url: str, detail: str, retryable: bool = False,
                 rate_limited: bool = False, status: Optional[int] = None):
        super().__init__(f"{url}: {detail}")
        self.url = url
        self.detail = detail
        self.retryable = retryable or rate_limited
        self.rate_limited = rate_limited
        self.status = status

class ExtractionStageError(PipelineException):
    """The fetcher cannot run at all (missing credentials, bad configuration)"""
    pass

class FallbackError(PipelineException):
    """The fallback answer engine could not produce candidates"""
    pass

class JobSubmitError(PipelineException):
    """Submitting a long-running actor job failed"""
    pass

class JobPollError(PipelineException):
    """Polling a long-running actor job failed or exceeded its wait budget"""
    pass

class JobAbandoned(PipelineException):
    """Polling stopped by the caller; the remote job keeps running"""

    def __init__(self, job_id: str):
        super().__init__(f"Polling abandoned for job {job_id}")
        self.job_id = job_id

class RunNotFoundException(CustomHTTPException):
    def __init__(self, run_id: str):
        super().__init__(status_code=404, detail=f"Run {run_id} not found", error_code="RUN_NOT_FOUND")

class ValidationException(CustomHTTPException):
    def __init__(self, detail: str = "Validation error"):
        super().__init__(status_code=400, detail=detail, error_code="VALIDATION_ERROR")
