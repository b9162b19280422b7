# Pydantic schemas package
from app.schemas.job import JobOptions, JobResponse, JobListResponse, JobEvent, SymmetryMode

__all__ = [
    "JobOptions", "JobResponse", "JobListResponse", "JobEvent", "SymmetryMode",
]
