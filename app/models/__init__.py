# Database models package
from app.models.job import Model3DJob, JobStatus, Provider, TERMINAL_STATUSES

__all__ = [
    "Model3DJob",
    "JobStatus",
    "Provider",
    "TERMINAL_STATUSES",
]
