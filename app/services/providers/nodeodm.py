"""
NodeODM Provider
Photogrammetry through OpenDroneMap's NodeODM API.

Flow:
1. Fetch every input image and upload them as one multipart task
2. Poll task info (numeric status codes, 0-100 progress)
3. On completion: download all.zip -> extract -> find the first .obj
   -> convert to GLB through the result materializer

Each materialization step raises its own MaterializationError subclass so
the job's error message says which step failed.
"""

import asyncio
import logging
import os
import tempfile
import zipfile
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

import httpx

from app.core.config import NodeOdmConfig
from app.core.errors import (
    ArchiveExtractionError,
    ArtifactDownloadError,
    GeometryNotFoundError,
    ProviderError,
)
from app.services.providers.base import (
    ProviderAdapter,
    TaskHandle,
    TaskOptions,
    build_url,
    first_string,
    read_json,
)

if TYPE_CHECKING:
    from app.services.materializer import ResultMaterializer

logger = logging.getLogger(__name__)

GEOMETRY_EXTENSION = ".obj"


def extract_archive(zip_path: Path, out_dir: Path) -> None:
    """Extract a result archive, refusing members that escape out_dir."""
    out_dir.mkdir(parents=True, exist_ok=True)
    root = out_dir.resolve()
    try:
        with zipfile.ZipFile(zip_path) as archive:
            for member in archive.namelist():
                target = (out_dir / member).resolve()
                if root != target and root not in target.parents:
                    raise ArchiveExtractionError(f"Result archive has an unsafe path: {member}")
            archive.extractall(out_dir)
    except zipfile.BadZipFile as e:
        raise ArchiveExtractionError(f"Result archive could not be extracted: {e}") from e


def find_first_geometry(root: Path, extension: str = GEOMETRY_EXTENSION) -> Optional[Path]:
    """First file with the geometry extension, scanning the tree in sorted order."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in sorted(filenames):
            if filename.lower().endswith(extension):
                return Path(dirpath) / filename
    return None


def _image_part(index: int, content: bytes, content_type: str) -> Tuple[str, Tuple[str, bytes, str]]:
    ext = "png" if "png" in content_type else "jpg"
    return ("images", (f"image_{index + 1}.{ext}", content, content_type))


class NodeOdmAdapter(ProviderAdapter):
    """Adapter for a NodeODM photogrammetry node."""

    name = "nodeodm"
    display_name = "NodeODM"

    def __init__(self, config: NodeOdmConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(transport=transport, timeout=config.timeout)
        self.config = config
        self.min_images = config.min_images

    def _params(self) -> Dict[str, str]:
        return {"token": self.config.token} if self.config.token else {}

    def _task_url(self, template: str, task_id: str) -> str:
        return build_url(self.config.base_url, template.replace("{id}", quote(task_id, safe="")))

    async def _fetch_images(self, client: httpx.AsyncClient, image_urls: Sequence[str]) -> List[Any]:
        parts = []
        for index, url in enumerate(image_urls):
            response = await client.get(url)
            if not response.is_success:
                raise ProviderError(
                    self.name,
                    f"Could not fetch input image {index + 1} for NodeODM upload: {response.status_code}",
                    status_code=response.status_code,
                )
            content_type = response.headers.get("content-type", "image/jpeg")
            parts.append(_image_part(index, response.content, content_type))
        return parts

    async def create_task(self, image_urls: Sequence[str], options: TaskOptions) -> str:
        self.validate_inputs(image_urls)

        async with self._client() as client:
            files = await self._fetch_images(client, image_urls)
            data = {"options": self.config.options_json} if self.config.options_json else None
            logger.info(f"[NodeODM] Uploading {len(files)} images")
            response = await client.post(
                build_url(self.config.base_url, self.config.create_path),
                params=self._params(),
                files=files,
                data=data,
            )
        payload = read_json(response)
        self.raise_for_response(response, payload, "task creation")

        task_id = first_string(payload.get("uuid"), payload.get("id")) if isinstance(payload, dict) else None
        if not task_id:
            raise ProviderError(
                self.name,
                "NodeODM task id missing from response",
                status_code=response.status_code,
                body=payload,
            )
        logger.info(f"[NodeODM] Task created: {task_id}")
        return task_id

    async def get_task_status(self, handle: TaskHandle) -> Dict[str, Any]:
        url = self._task_url(self.config.info_path_template, handle.task_id)
        async with self._client() as client:
            response = await client.get(url, params=self._params())
        payload = read_json(response)
        self.raise_for_response(response, payload, "status check")
        return payload

    def archive_url(self, task_id: str) -> str:
        return self._task_url(self.config.download_zip_template, task_id)

    def extract_result_url(self, payload: Dict[str, Any]) -> Optional[str]:
        task_id = first_string(payload.get("uuid"), payload.get("id")) if isinstance(payload, dict) else None
        return self.archive_url(task_id) if task_id else None

    def extract_error_message(self, payload: Dict[str, Any]) -> Optional[str]:
        if isinstance(payload, dict) and isinstance(payload.get("status"), dict):
            message = first_string(payload["status"].get("errorMessage"))
            if message:
                return message
        return super().extract_error_message(payload)

    async def download_archive(self, task_id: str, out_path: Path) -> None:
        url = self.archive_url(task_id)
        try:
            async with self._client() as client:
                async with client.stream("GET", url, params=self._params()) as response:
                    if not response.is_success:
                        raise ArtifactDownloadError(
                            f"NodeODM result archive download failed: {response.status_code}",
                            status_code=response.status_code,
                        )
                    with open(out_path, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
        except httpx.HTTPError as e:
            raise ArtifactDownloadError(f"NodeODM result archive download failed: {e}") from e

    async def materialize(
        self,
        handle: TaskHandle,
        payload: Dict[str, Any],
        job_id: str,
        materializer: "ResultMaterializer",
    ) -> str:
        with tempfile.TemporaryDirectory(prefix=f"nodeodm-{job_id}-") as tmp:
            work_dir = Path(tmp)
            zip_path = work_dir / "all.zip"
            extract_dir = work_dir / "extracted"

            await self.download_archive(handle.task_id, zip_path)
            logger.info(f"[NodeODM] Archive downloaded for job {job_id}")

            await asyncio.to_thread(extract_archive, zip_path, extract_dir)

            geometry = await asyncio.to_thread(find_first_geometry, extract_dir)
            if geometry is None:
                raise GeometryNotFoundError("No .obj geometry file found in the NodeODM result archive")
            logger.info(f"[NodeODM] Converting {geometry.name} for job {job_id}")

            return await materializer.convert_mesh(job_id, geometry)
