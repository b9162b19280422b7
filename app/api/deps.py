"""
API Dependencies
Common dependencies for FastAPI routes (database sessions, caller identity,
services created at startup).
"""

from typing import Generator, Optional

from fastapi import Header, HTTPException, Request, status

from app.core.database import SessionLocal
from app.services.orchestrator import JobOrchestrator
from app.services.storage import StorageService


def get_db() -> Generator:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> str:
    """
    Caller identity, verified upstream by the authentication layer and
    forwarded in the X-User-Id header.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )
    return x_user_id.strip()


def get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage
