"""
Model3D Orchestrator API
FastAPI Backend Entry Point
"""

import io
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.api import events, jobs
from app.api.deps import get_db, get_storage
from app.core.config import settings
from app.core.database import init_db
from app.core.logger import setup_logging
from app.services import build_services
from app.services.storage import StorageService

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".glb": "model/gltf-binary",
    ".gltf": "model/gltf+json",
    ".obj": "text/plain",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging(settings.LOG_LEVEL)
    logger.info(f"Starting {settings.APP_NAME}...")
    init_db()

    services = build_services(settings)
    app.state.services = services
    app.state.storage = services.storage
    app.state.connections = services.connections
    app.state.orchestrator = services.orchestrator
    logger.info(f"Default 3D provider: {settings.MODEL3D_PROVIDER}")
    yield
    logger.info(f"Shutting down {settings.APP_NAME}...")
    await services.aclose()


app = FastAPI(
    title=settings.APP_NAME,
    description="Image-to-3D conversion jobs across heterogeneous generation providers",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(jobs.router, prefix="/api/v1/model3d", tags=["3D Jobs"])
app.include_router(events.router, prefix="/api/v1/model3d", tags=["3D Job Events"])


@app.get("/health", tags=["Health"])
async def health_check(db: Session = Depends(get_db)):
    """
    Health check endpoint for deployment health checks and monitoring.
    Returns detailed status of critical services.
    """
    services = app.state.services
    result = {
        "status": "healthy",
        "version": "0.1.0",
        "providers": {
            "default": settings.MODEL3D_PROVIDER,
            "configured": services.registry.configured(),
        },
        "services": {},
    }

    # Check database connection
    try:
        db.execute(text("SELECT 1"))
        result["services"]["database"] = "ok"
    except Exception as e:
        result["services"]["database"] = f"error: {str(e)}"
        result["status"] = "degraded"

    # Check Redis connection (only when events are fanned out through it)
    if services.redis is not None:
        redis_status = await services.redis.health_check()
        if redis_status.get("connected"):
            result["services"]["redis"] = "ok"
        else:
            result["services"]["redis"] = f"error: {redis_status.get('error', 'not connected')}"
            result["status"] = "degraded"

    # Check storage availability
    if services.storage.base_path.is_dir():
        result["services"]["storage"] = "ok"
    else:
        result["services"]["storage"] = "error: storage path missing"
        result["status"] = "degraded"

    return result


@app.get("/uploads/{file_path:path}", tags=["Files"])
async def serve_file(file_path: str, storage: StorageService = Depends(get_storage)):
    """Serve stored input images and generated models."""
    try:
        file_bytes = await storage.get_file(file_path)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="File not found")

    suffix = "." + file_path.rsplit(".", 1)[-1].lower() if "." in file_path else ""
    content_type = CONTENT_TYPES.get(suffix, "application/octet-stream")

    return StreamingResponse(
        io.BytesIO(file_bytes),
        media_type=content_type,
        headers={
            "Cache-Control": "public, max-age=3600",
            "Access-Control-Allow-Origin": "*"
        }
    )


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": settings.APP_NAME,
        "docs": "/docs",
        "health": "/health",
    }
