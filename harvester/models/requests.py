# harvester/models/requests.py
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List

from harvester.models.internal import SourceType

class SourceHandles(BaseModel):
    blog: Optional[str] = Field(None, description="Blog root URL")
    newsletter: Optional[str] = Field(None, description="Newsletter archive URL")
    twitter: Optional[str] = Field(None, description="Twitter/X handle, with or without @")
    linkedin: Optional[str] = Field(None, description="LinkedIn profile URL")

    def as_dict(self) -> dict:
        return {
            SourceType(key): value.strip()
            for key, value in self.model_dump().items()
            if value and value.strip()
        }

class PipelineRunRequest(BaseModel):
    creator_name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Name of the creator whose writing is harvested"
    )
    sources: SourceHandles = Field(default_factory=SourceHandles)
    source_types: Optional[List[SourceType]] = Field(
        default=None,
        description="Sources to run; defaults to every source with a handle"
    )
    resolve_sources: bool = Field(
        default=False,
        description="Ask the answer engine for missing source handles"
    )

    @field_validator("creator_name")
    @classmethod
    def validate_creator_name(cls, v):
        if not v.strip():
            raise ValueError("Creator name cannot be empty or whitespace only")
        return v.strip()
