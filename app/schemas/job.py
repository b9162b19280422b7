"""
Job Schemas
Pydantic models for 3D job API requests, responses and push events.
"""

from datetime import datetime
from typing import List, Optional
from enum import Enum
from pydantic import BaseModel, Field

from app.models.job import JobStatus, Provider


class SymmetryMode(str, Enum):
    """Geometry symmetry hint forwarded to providers that support it."""
    OFF = "off"
    AUTO = "auto"
    ON = "on"


class JobOptions(BaseModel):
    """Texture guidance and geometry options for a job."""
    texture_prompt: Optional[str] = None
    texture_image_url: Optional[str] = None
    enable_pbr: bool = False
    should_remesh: bool = True
    target_polycount: Optional[int] = Field(default=None, ge=1)
    symmetry_mode: Optional[SymmetryMode] = None


class JobResponse(BaseModel):
    """Job summary returned by every job endpoint and push event."""
    id: str
    status: JobStatus
    provider: Provider
    provider_task_id: Optional[str] = None
    provider_status: Optional[str] = None
    provider_error: Optional[str] = None
    last_checked_at: Optional[datetime] = None
    input_image_urls: List[str] = []
    output_model_url: Optional[str] = None
    error_message: Optional[str] = None
    progress: Optional[int] = None
    texture_prompt: Optional[str] = None
    texture_image_url: Optional[str] = None
    enable_pbr: bool = False
    should_remesh: bool = True
    target_polycount: Optional[int] = None
    symmetry_mode: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class JobListResponse(BaseModel):
    """Recent jobs for the caller, newest first."""
    jobs: List[JobResponse]


class JobEvent(BaseModel):
    """Push message carrying the full current job summary."""
    event: str = "model3d:job"
    job: JobResponse
