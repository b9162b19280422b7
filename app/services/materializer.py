"""
Result Materializer
Turns a finished provider task into a locally served artifact:
- remote URL: download bytes, keep the .glb/.gltf extension from the URL
- intermediate mesh (OBJ): convert to a single binary glTF with trimesh

Artifacts are stored as models/<job_id>.<ext>, so the public URL of a job's
model is deterministic.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import httpx
import trimesh

from app.core.errors import ArtifactDownloadError, MeshConversionError
from app.services.storage import StorageService

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = "glb"
DELIVERY_EXTENSIONS = ("glb", "gltf")


def infer_extension(url: str) -> str:
    """Delivery extension from the URL path, defaulting to glb."""
    path = urlparse(url).path.lower()
    for ext in DELIVERY_EXTENSIONS:
        if path.endswith(f".{ext}"):
            return ext
    return DEFAULT_EXTENSION


def convert_to_glb(mesh_path: Path) -> bytes:
    """Load a mesh file (OBJ and friends) and export it as binary glTF."""
    loaded = trimesh.load(str(mesh_path))
    scene = loaded if isinstance(loaded, trimesh.Scene) else trimesh.Scene(loaded)
    if scene.is_empty:
        raise ValueError(f"{mesh_path.name} contains no geometry")
    return scene.export(file_type="glb")


class ResultMaterializer:
    """Persists provider results under deterministic per-job file names."""

    def __init__(
        self,
        storage: StorageService,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 120.0,
    ):
        self.storage = storage
        self._transport = transport
        self._timeout = timeout

    async def write_artifact(self, job_id: str, ext: str, data: bytes) -> str:
        url = await self.storage.upload_bytes(data, self.storage.model_path(job_id, ext))
        logger.info(f"[Materializer] Stored {len(data)} bytes for job {job_id}: {url}")
        return url

    async def fetch_remote(self, job_id: str, url: str) -> str:
        """
        Download a finished artifact and return its public URL.

        Raises:
            ArtifactDownloadError: non-success response (status preserved) or
                transport failure.
        """
        ext = infer_extension(url)
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self._timeout, follow_redirects=True
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise ArtifactDownloadError(f"Model download failed: {e}") from e

        if not response.is_success:
            raise ArtifactDownloadError(
                f"Model download failed: {response.status_code}",
                status_code=response.status_code,
            )
        return await self.write_artifact(job_id, ext, response.content)

    async def convert_mesh(self, job_id: str, mesh_path: Path) -> str:
        """Convert an intermediate mesh to GLB and return its public URL."""
        try:
            glb = await asyncio.to_thread(convert_to_glb, Path(mesh_path))
        except Exception as e:
            raise MeshConversionError(f"Mesh conversion to GLB failed: {e}") from e
        return await self.write_artifact(job_id, "glb", glb)
