"""
Model3D Job Model
Database model for image-to-3D conversion jobs.
"""

from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import Column, String, Text, DateTime, Integer, Boolean, JSON

from app.core.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite drops tzinfo on the way back)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStatus(str, Enum):
    """Authoritative job lifecycle status."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED.value, JobStatus.FAILED.value})


class Provider(str, Enum):
    """3D generation backends. Fixed at job creation."""
    MOCK = "mock"
    MESHY = "meshy"            # commercial image-to-3D API
    NODEODM = "nodeodm"        # photogrammetry engine
    REPLICATE = "replicate"    # generic prediction API


class Model3DJob(Base):
    """Image-to-3D conversion job."""

    __tablename__ = "model3d_jobs"

    id = Column(String, primary_key=True)  # m3d_xxxx format
    user_id = Column(String, nullable=False, index=True)

    # Provider is immutable once the row exists
    provider = Column(String, nullable=False)
    provider_task_id = Column(String, nullable=True)  # write-once; null = not yet dispatched

    # Status: PENDING, PROCESSING, SUCCEEDED, FAILED
    status = Column(String, default=JobStatus.PROCESSING.value, index=True)

    # Diagnostics, recomputed on each refresh
    provider_status = Column(String, nullable=True)
    provider_error = Column(Text, nullable=True)
    progress = Column(Integer, nullable=True)
    last_checked_at = Column(DateTime, nullable=True)

    # Inputs (order matters: first image is the primary reference)
    input_image_urls = Column(JSON, default=list)
    texture_prompt = Column(Text, nullable=True)
    texture_image_url = Column(String, nullable=True)
    enable_pbr = Column(Boolean, default=False)
    should_remesh = Column(Boolean, default=True)
    target_polycount = Column(Integer, nullable=True)
    symmetry_mode = Column(String, nullable=True)

    # Result
    output_model_url = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def image_urls(self) -> list:
        return list(self.input_image_urls or [])
