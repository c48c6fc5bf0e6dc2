# harvester/models/responses.py
from pydantic import BaseModel, Field
from typing import Optional, Dict
from datetime import datetime

from harvester.models.internal import RunStatus, utcnow

class RunAcceptedResponse(BaseModel):
    run_id: str = Field(..., description="Opaque run identifier used for polling")
    status: RunStatus = Field(..., description="Current run status")
    created_at: datetime = Field(default_factory=utcnow)

class HealthResponse(BaseModel):
    status: str = Field(..., description="Overall system status")
    timestamp: datetime = Field(default_factory=utcnow)
    services: Dict[str, str] = Field(..., description="Individual service statuses")
    response_time_ms: Optional[float] = Field(None, description="Health check response time")

class ErrorResponse(BaseModel):
    error: str = Field(..., description="Error message")
    error_code: Optional[str] = Field(None, description="Error code")
    run_id: Optional[str] = Field(None, description="Run ID for tracking")
    timestamp: datetime = Field(default_factory=utcnow)
