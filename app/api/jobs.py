"""
3D Jobs API Routes
Handles image uploads, job creation, status polling and job listing.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from pydantic import ValidationError

from app.api.deps import get_current_user_id, get_orchestrator, get_storage
from app.core.config import settings
from app.core.errors import ProviderError
from app.schemas.job import JobListResponse, JobOptions, JobResponse, SymmetryMode
from app.services.orchestrator import JobOrchestrator
from app.services.storage import TEXTURE_INPUTS_FOLDER, INPUTS_FOLDER, InvalidImageError, StorageService

logger = logging.getLogger(__name__)

router = APIRouter()


async def _read_image(upload: UploadFile) -> bytes:
    """Read one uploaded image, enforcing type and size limits."""
    if upload.content_type and not upload.content_type.startswith("image/"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Only image files can be uploaded ({upload.filename})"
        )
    data = await upload.read()
    if not data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Empty file: {upload.filename}"
        )
    if len(data) > settings.max_file_size_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"{upload.filename} exceeds {settings.MODEL3D_MAX_FILE_SIZE_MB}MB"
        )
    return data


async def _store_image(storage: StorageService, upload: UploadFile, folder: str) -> str:
    data = await _read_image(upload)
    try:
        return await storage.save_image(data, folder)
    except InvalidImageError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{upload.filename}: {e}"
        )


@router.post("/jobs", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_job(
    images: Optional[List[UploadFile]] = File(default=None),
    texture_image: Optional[UploadFile] = File(default=None),
    provider: Optional[str] = Form(default=None),
    texture_prompt: Optional[str] = Form(default=None),
    enable_pbr: bool = Form(default=False),
    should_remesh: bool = Form(default=True),
    target_polycount: Optional[int] = Form(default=None),
    symmetry_mode: Optional[SymmetryMode] = Form(default=None),
    user_id: str = Depends(get_current_user_id),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
    storage: StorageService = Depends(get_storage),
):
    """
    Upload 1..N images and start an image-to-3D job.

    Returns immediately with status PROCESSING; the provider task is created
    in the background. Poll GET /jobs/{id} (or listen on /events) for progress.
    """
    images = images or []
    if not images:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="At least one image file is required"
        )
    if len(images) > settings.MODEL3D_MAX_IMAGES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"At most {settings.MODEL3D_MAX_IMAGES} images can be uploaded"
        )

    provider_name = (provider or settings.MODEL3D_PROVIDER).strip().lower()
    try:
        adapter = orchestrator.check_provider(provider_name)
    except ProviderError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if adapter.max_images is not None and len(images) > adapter.max_images:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{adapter.display_name} accepts at most {adapter.max_images} images (got {len(images)})"
        )

    try:
        options = JobOptions(
            texture_prompt=(texture_prompt or "").strip() or None,
            enable_pbr=enable_pbr,
            should_remesh=should_remesh,
            target_polycount=target_polycount,
            symmetry_mode=symmetry_mode,
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.errors()[0]["msg"])

    image_urls = [await _store_image(storage, upload, INPUTS_FOLDER) for upload in images]
    if texture_image is not None and texture_image.filename:
        options.texture_image_url = await _store_image(storage, texture_image, TEXTURE_INPUTS_FOLDER)

    try:
        job = await orchestrator.create_job(user_id, image_urls, provider_name, options)
    except ProviderError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return job


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job_status(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Get job status and result. Each call re-checks the provider for unfinished jobs."""
    job = await orchestrator.get_job(job_id, user_id)

    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found"
        )

    return job


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    limit: int = Query(default=settings.MODEL3D_LIST_LIMIT, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """List the caller's most recent jobs, newest first."""
    jobs = orchestrator.list_jobs(user_id, limit=limit)
    return JobListResponse(jobs=[JobResponse.model_validate(job) for job in jobs])
