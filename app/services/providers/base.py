"""
Provider Adapter Base
Uniform contract every 3D backend adapter implements, plus the payload
helpers adapters share.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence, Tuple

import httpx

from app.core.errors import NoResultUrlError, ProviderError, ProviderPreconditionError

if TYPE_CHECKING:
    from app.services.materializer import ResultMaterializer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskOptions:
    """Per-job texture and geometry options passed to create_task."""
    texture_prompt: Optional[str] = None
    texture_image_url: Optional[str] = None
    enable_pbr: bool = False
    should_remesh: bool = True
    target_polycount: Optional[int] = None
    symmetry_mode: Optional[str] = None

    @classmethod
    def from_job(cls, job) -> "TaskOptions":
        return cls(
            texture_prompt=job.texture_prompt,
            texture_image_url=job.texture_image_url,
            enable_pbr=bool(job.enable_pbr),
            should_remesh=True if job.should_remesh is None else bool(job.should_remesh),
            target_polycount=job.target_polycount,
            symmetry_mode=job.symmetry_mode,
        )


@dataclass(frozen=True)
class TaskHandle:
    """
    Everything needed to query a remote task.

    Built from the stored job on every poll, so anything derived from it
    (e.g. which status endpoint to call) is a pure function of stored inputs.
    """
    task_id: str
    image_urls: Tuple[str, ...]

    @classmethod
    def from_job(cls, job) -> "TaskHandle":
        return cls(task_id=job.provider_task_id, image_urls=tuple(job.image_urls))


def build_url(base: str, path: str) -> str:
    clean_base = base.rstrip("/")
    clean_path = path if path.startswith("/") else f"/{path}"
    return f"{clean_base}{clean_path}"


def read_json(response: httpx.Response) -> Any:
    """Decode a response body; non-JSON bodies come back as {"raw": text}."""
    text = response.text
    if not text:
        return {}
    try:
        return json.loads(text)
    except ValueError:
        return {"raw": text}


def get_by_path(obj: Any, dotted_path: str) -> Any:
    """Follow a dotted path (``model_urls.glb``) through nested dicts."""
    cur = obj
    for part in [p for p in dotted_path.split(".") if p]:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(part)
    return cur


def is_http_url(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(("http://", "https://"))


def scan_for_url(value: Any) -> Optional[str]:
    """
    Depth-first search for the first http(s) URL anywhere in a payload.

    Last resort for result shapes an adapter does not know about.
    """
    if is_http_url(value):
        return value
    if isinstance(value, (list, tuple)):
        for item in value:
            found = scan_for_url(item)
            if found:
                return found
    if isinstance(value, dict):
        for item in value.values():
            found = scan_for_url(item)
            if found:
                return found
    return None


def first_string(*candidates: Any) -> Optional[str]:
    for c in candidates:
        if isinstance(c, str) and c.strip():
            return c.strip()
    return None


class ProviderAdapter(ABC):
    """
    Contract shared by all 3D generation backends.

    - create_task: validate inputs, then start a remote task and return its id
    - get_task_status: raw provider payload, uninterpreted
    - extract_result_url: find the artifact URL in a finished payload
    - materialize: turn a finished task into a locally served artifact URL
    """

    name: str = ""
    display_name: str = ""
    # Local providers finish at dispatch time and are never polled
    completes_on_dispatch: bool = False
    min_images: int = 1
    max_images: Optional[int] = None

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 60.0):
        self._transport = transport
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    def validate_inputs(self, image_urls: Sequence[str]) -> None:
        """Raise ProviderPreconditionError when the image count is out of bounds."""
        count = len(image_urls)
        if count < self.min_images:
            raise ProviderPreconditionError(
                self.name,
                f"{self.display_name} requires at least {self.min_images} images (got {count})",
            )
        if self.max_images is not None and count > self.max_images:
            raise ProviderPreconditionError(
                self.name,
                f"{self.display_name} accepts at most {self.max_images} images (got {count})",
            )

    @abstractmethod
    async def create_task(self, image_urls: Sequence[str], options: TaskOptions) -> str:
        ...

    @abstractmethod
    async def get_task_status(self, handle: TaskHandle) -> Dict[str, Any]:
        ...

    @abstractmethod
    def extract_result_url(self, payload: Dict[str, Any]) -> Optional[str]:
        ...

    def extract_error_message(self, payload: Dict[str, Any]) -> Optional[str]:
        """Provider-reported failure message, if the payload carries one."""
        if not isinstance(payload, dict):
            return None
        error = payload.get("error")
        if isinstance(error, dict):
            error = error.get("message")
        return first_string(error, payload.get("message"))

    @property
    def failure_fallback(self) -> str:
        return f"3D generation failed ({self.display_name})"

    async def materialize(
        self,
        handle: TaskHandle,
        payload: Dict[str, Any],
        job_id: str,
        materializer: "ResultMaterializer",
    ) -> str:
        """Download the finished artifact and return its public URL."""
        url = self.extract_result_url(payload)
        if not url:
            raise NoResultUrlError(f"No result model URL found in {self.display_name} payload")
        return await materializer.fetch_remote(job_id, url)

    def raise_for_response(self, response: httpx.Response, body: Any, action: str) -> None:
        """Raise ProviderError carrying the upstream status and body on non-2xx."""
        if response.is_success:
            return
        raise ProviderError(
            self.name,
            f"{self.display_name} {action} failed: {response.status_code} {json.dumps(body, default=str)[:500]}",
            status_code=response.status_code,
            body=body,
        )
