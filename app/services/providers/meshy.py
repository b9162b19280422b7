"""
Meshy Provider
Commercial image-to-3D API. Single-image and multi-image (2-4) task types.

Endpoints, image field names and result URL paths vary by plan and API
version, so all of them come from MeshyConfig.
"""

import json
import logging
from typing import Any, Dict, Optional, Sequence
from urllib.parse import quote

import httpx

from app.core.config import MeshyConfig
from app.core.errors import ProviderError, ProviderQuotaError
from app.services.providers.base import (
    ProviderAdapter,
    TaskHandle,
    TaskOptions,
    build_url,
    first_string,
    get_by_path,
    is_http_url,
    read_json,
    scan_for_url,
)

logger = logging.getLogger(__name__)

SINGLE = "single"
MULTI = "multi"

DEFAULT_RESULT_URL_FIELDS = (
    "model_urls.glb",
    "model_urls.pre_remeshed_glb",
    "model_urls.obj",
    "model_urls.fbx",
    "glb_url",
    "gltf_url",
    "model_url",
    "output.glb",
    "output.gltf",
)


def task_type_for(image_urls: Sequence[str]) -> str:
    """Two or more images use the multi-image task type."""
    return MULTI if len(image_urls) >= 2 else SINGLE


def build_task_options(options: TaskOptions) -> Dict[str, Any]:
    """Per-job body fields. The texture prompt wins over a texture image."""
    body: Dict[str, Any] = {}
    if options.texture_prompt or options.texture_image_url:
        body["should_texture"] = True
    if options.enable_pbr:
        body["enable_pbr"] = True
    if options.texture_prompt:
        body["texture_prompt"] = options.texture_prompt
    elif options.texture_image_url:
        body["texture_image_url"] = options.texture_image_url
    body["should_remesh"] = options.should_remesh
    if options.target_polycount is not None:
        body["target_polycount"] = options.target_polycount
    if options.symmetry_mode:
        body["symmetry_mode"] = options.symmetry_mode
    return body


def extract_task_id(payload: Any) -> Optional[str]:
    """Task id may arrive as id, task_id, result, data.id or data.task_id."""
    if not isinstance(payload, dict):
        return None
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    return first_string(
        payload.get("id"),
        payload.get("task_id"),
        payload.get("result"),
        data.get("id"),
        data.get("task_id"),
    )


class MeshyAdapter(ProviderAdapter):
    """Adapter for the Meshy image-to-3D API."""

    name = "meshy"
    display_name = "Meshy"
    min_images = 1

    def __init__(self, config: MeshyConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(transport=transport, timeout=config.timeout)
        self.config = config
        self.max_images = config.max_images

    def _headers(self) -> Dict[str, str]:
        # Both auth styles are accepted across plan tiers
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key}",
            "x-api-key": self.config.api_key,
        }

    def build_body(self, image_urls: Sequence[str], options: TaskOptions) -> Dict[str, Any]:
        if task_type_for(image_urls) == MULTI:
            body: Dict[str, Any] = {self.config.multi_image_field: list(image_urls)}
        else:
            body = {self.config.image_field: image_urls[0]}
        body.update(self.config.extra_body)
        # Per-job options override configured extras
        body.update(build_task_options(options))
        return body

    async def create_task(self, image_urls: Sequence[str], options: TaskOptions) -> str:
        self.validate_inputs(image_urls)
        task_type = task_type_for(image_urls)
        path = self.config.multi_create_path if task_type == MULTI else self.config.create_path
        body = self.build_body(image_urls, options)

        logger.info(f"[Meshy] Creating {task_type}-image task with {len(image_urls)} image(s)")
        async with self._client() as client:
            response = await client.post(
                build_url(self.config.api_base, path),
                headers=self._headers(),
                json=body,
            )
        payload = read_json(response)

        if response.status_code == 402:
            message = payload.get("message") if isinstance(payload, dict) else None
            raise ProviderQuotaError(
                self.name,
                f"Meshy plan upgrade required (402). {message or 'Task creation was refused by the plan limits'}",
                status_code=402,
                body=payload,
            )
        self.raise_for_response(response, payload, "task creation")

        task_id = extract_task_id(payload)
        if not task_id:
            raise ProviderError(
                self.name,
                f"Meshy task id missing from response: {json.dumps(payload, default=str)[:500]}",
                status_code=response.status_code,
                body=payload,
            )
        logger.info(f"[Meshy] Task created: {task_id} ({task_type})")
        return task_id

    def status_url(self, handle: TaskHandle) -> str:
        if task_type_for(handle.image_urls) == MULTI:
            template = self.config.multi_status_path_template
        else:
            template = self.config.status_path_template
        return build_url(self.config.api_base, template.replace("{id}", quote(handle.task_id, safe="")))

    async def get_task_status(self, handle: TaskHandle) -> Dict[str, Any]:
        async with self._client() as client:
            response = await client.get(self.status_url(handle), headers=self._headers())
        payload = read_json(response)
        self.raise_for_response(response, payload, "status check")
        return payload

    def extract_result_url(self, payload: Dict[str, Any]) -> Optional[str]:
        fields = self.config.result_url_fields or DEFAULT_RESULT_URL_FIELDS
        for field in fields:
            value = get_by_path(payload, field)
            if is_http_url(value):
                return value

        if not isinstance(payload, dict):
            return None
        for key in ("output", "result", "data"):
            found = scan_for_url(payload.get(key))
            if found:
                return found
        return None

    def extract_error_message(self, payload: Dict[str, Any]) -> Optional[str]:
        if isinstance(payload, dict):
            task_error = payload.get("task_error")
            if isinstance(task_error, dict) and first_string(task_error.get("message")):
                return first_string(task_error.get("message"))
        return super().extract_error_message(payload)
