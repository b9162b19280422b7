"""
Replicate Provider
Generic prediction API. Model version and the input field that receives the
image are configurable because every hosted model names them differently.
"""

import logging
from typing import Any, Dict, Optional, Sequence
from urllib.parse import quote

import httpx

from app.core.config import ReplicateConfig
from app.core.errors import ProviderError, ProviderQuotaError
from app.services.providers.base import (
    ProviderAdapter,
    TaskHandle,
    TaskOptions,
    build_url,
    first_string,
    read_json,
    scan_for_url,
)

logger = logging.getLogger(__name__)

OUTPUT_KEYS = ("model", "glb", "gltf", "output", "url", "file", "files")


def extract_model_url_from_output(output: Any) -> Optional[str]:
    """
    Find the model file URL in a prediction output.

    Output is a bare string, a list (first string wins) or an object with
    one of the common keys, possibly nested.
    """
    if not output:
        return None
    if isinstance(output, str):
        return output
    if isinstance(output, list):
        for item in output:
            if isinstance(item, str):
                return item
    if isinstance(output, dict):
        for key in OUTPUT_KEYS:
            found = extract_model_url_from_output(output.get(key))
            if found:
                return found
    return None


class ReplicateAdapter(ProviderAdapter):
    """Adapter for the Replicate predictions API (single primary image)."""

    name = "replicate"
    display_name = "Replicate"
    min_images = 1

    def __init__(self, config: ReplicateConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(transport=transport, timeout=config.timeout)
        self.config = config

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_token}",
        }

    def build_input(self, image_urls: Sequence[str]) -> Dict[str, Any]:
        model_input: Dict[str, Any] = {self.config.image_field: image_urls[0]}
        model_input.update(self.config.extra_input)
        return model_input

    async def create_task(self, image_urls: Sequence[str], options: TaskOptions) -> str:
        self.validate_inputs(image_urls)
        body = {"version": self.config.model_version, "input": self.build_input(image_urls)}

        logger.info(f"[Replicate] Creating prediction for {image_urls[0]}")
        async with self._client() as client:
            response = await client.post(
                build_url(self.config.api_base, "/predictions"),
                headers=self._headers(),
                json=body,
            )
        payload = read_json(response)

        if response.status_code == 402:
            raise ProviderQuotaError(
                self.name,
                "Replicate billing limit reached (402). Add credit or raise the spend limit.",
                status_code=402,
                body=payload,
            )
        self.raise_for_response(response, payload, "prediction request")

        prediction_id = first_string(payload.get("id")) if isinstance(payload, dict) else None
        if not prediction_id:
            raise ProviderError(
                self.name,
                "Replicate prediction id missing from response",
                status_code=response.status_code,
                body=payload,
            )
        logger.info(f"[Replicate] Prediction created: {prediction_id}")
        return prediction_id

    async def get_task_status(self, handle: TaskHandle) -> Dict[str, Any]:
        url = build_url(self.config.api_base, f"/predictions/{quote(handle.task_id, safe='')}")
        async with self._client() as client:
            response = await client.get(url, headers=self._headers())
        payload = read_json(response)
        self.raise_for_response(response, payload, "status check")
        return payload

    def extract_result_url(self, payload: Dict[str, Any]) -> Optional[str]:
        if not isinstance(payload, dict):
            return None
        output = payload.get("output")
        return extract_model_url_from_output(output) or scan_for_url(output)
