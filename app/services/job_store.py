"""
Job Store
Durable record of 3D jobs on top of SQLAlchemy sessions.

Every call opens its own short session and returns detached rows, so callers
in the orchestrator never hold a session across an await.
"""

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.models.job import Model3DJob, utcnow

logger = logging.getLogger(__name__)

# Fields that can be written once and never replaced
WRITE_ONCE_FIELDS = ("provider_task_id", "output_model_url")
IMMUTABLE_FIELDS = ("id", "user_id", "provider", "created_at")


class JobStore:
    """create / get / update / list_by_owner over the model3d_jobs table."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def _detach(self, db: Session, job: Model3DJob) -> Model3DJob:
        db.refresh(job)
        db.expunge(job)
        return job

    def create(self, **fields: Any) -> Model3DJob:
        """Insert a job. An id is generated when none is given."""
        fields.setdefault("id", f"m3d_{uuid.uuid4().hex[:12]}")
        db = self._session_factory()
        try:
            job = Model3DJob(**fields)
            db.add(job)
            db.commit()
            return self._detach(db, job)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get(self, job_id: str) -> Optional[Model3DJob]:
        db = self._session_factory()
        try:
            job = db.query(Model3DJob).filter(Model3DJob.id == job_id).first()
            if job is None:
                return None
            db.expunge(job)
            return job
        finally:
            db.close()

    def update(self, job_id: str, fields: Dict[str, Any]) -> Optional[Model3DJob]:
        """
        Apply a partial update and return the stored row.

        Raises:
            ValueError: on an attempt to change an immutable field or to
                replace a write-once field that is already set.
        """
        db = self._session_factory()
        try:
            job = db.query(Model3DJob).filter(Model3DJob.id == job_id).first()
            if job is None:
                return None

            for name, value in fields.items():
                current = getattr(job, name)
                if name in IMMUTABLE_FIELDS and value != current:
                    raise ValueError(f"{name} cannot change after creation")
                if name in WRITE_ONCE_FIELDS and current is not None and value != current:
                    raise ValueError(f"{name} is already set for job {job_id}")
                setattr(job, name, value)

            job.updated_at = utcnow()
            db.commit()
            return self._detach(db, job)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def list_by_owner(self, user_id: str, limit: int = 20) -> List[Model3DJob]:
        """Most recent jobs for one owner, newest first."""
        db = self._session_factory()
        try:
            jobs = (
                db.query(Model3DJob)
                .filter(Model3DJob.user_id == user_id)
                .order_by(Model3DJob.created_at.desc())
                .limit(limit)
                .all()
            )
            for job in jobs:
                db.expunge(job)
            return jobs
        finally:
            db.close()
