"""
Mock Provider
Development/demo backend with no external dependency. Dispatch writes a
one-triangle glTF placeholder so the viewer can be exercised end to end.
"""

import base64
import json
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence

import numpy as np

from app.services.providers.base import ProviderAdapter, TaskHandle, TaskOptions

if TYPE_CHECKING:
    from app.services.materializer import ResultMaterializer

ARRAY_BUFFER = 34962
ELEMENT_ARRAY_BUFFER = 34963
FLOAT = 5126
UNSIGNED_SHORT = 5123


def create_placeholder_gltf() -> str:
    """
    Build a minimal glTF 2.0 document: one unlit triangle near the origin
    with its buffer embedded as a base64 data URI.
    """
    positions = np.array(
        [
            [-0.6, -0.5, 0.0],
            [0.6, -0.5, 0.0],
            [0.0, 0.7, 0.0],
        ],
        dtype=np.float32,
    )
    indices = np.array([0, 1, 2], dtype=np.uint16)

    pos_bytes = positions.tobytes()
    idx_bytes = indices.tobytes()
    combined = pos_bytes + idx_bytes  # positions are 36 bytes, already 4-byte aligned

    gltf: Dict[str, Any] = {
        "asset": {"version": "2.0", "generator": "model3d-mock-gltf"},
        "scene": 0,
        "scenes": [{"nodes": [0]}],
        "nodes": [{"mesh": 0, "name": "MockTriangle"}],
        "meshes": [
            {"primitives": [{"attributes": {"POSITION": 0}, "indices": 1, "material": 0}]}
        ],
        "materials": [
            {
                "name": "UnlitBlue",
                "pbrMetallicRoughness": {
                    "baseColorFactor": [0.2, 0.6, 1.0, 1.0],
                    "metallicFactor": 0.0,
                    "roughnessFactor": 1.0,
                },
                "extensions": {"KHR_materials_unlit": {}},
            }
        ],
        "buffers": [
            {
                "uri": "data:application/octet-stream;base64," + base64.b64encode(combined).decode("ascii"),
                "byteLength": len(combined),
            }
        ],
        "bufferViews": [
            {"buffer": 0, "byteOffset": 0, "byteLength": len(pos_bytes), "target": ARRAY_BUFFER},
            {"buffer": 0, "byteOffset": len(pos_bytes), "byteLength": len(idx_bytes), "target": ELEMENT_ARRAY_BUFFER},
        ],
        "accessors": [
            {
                "bufferView": 0,
                "byteOffset": 0,
                "componentType": FLOAT,
                "count": int(positions.shape[0]),
                "type": "VEC3",
                "min": [float(v) for v in positions.min(axis=0)],
                "max": [float(v) for v in positions.max(axis=0)],
            },
            {
                "bufferView": 1,
                "byteOffset": 0,
                "componentType": UNSIGNED_SHORT,
                "count": int(indices.shape[0]),
                "type": "SCALAR",
            },
        ],
        "extensionsUsed": ["KHR_materials_unlit"],
    }
    return json.dumps(gltf, indent=2)


class MockAdapter(ProviderAdapter):
    """Completes at dispatch time with a generated placeholder model."""

    name = "mock"
    display_name = "Mock"
    completes_on_dispatch = True

    async def create_task(self, image_urls: Sequence[str], options: TaskOptions) -> str:
        self.validate_inputs(image_urls)
        return "mock"

    async def get_task_status(self, handle: TaskHandle) -> Dict[str, Any]:
        return {"status": "SUCCEEDED", "progress": 100}

    def extract_result_url(self, payload: Dict[str, Any]) -> Optional[str]:
        return None

    async def materialize(
        self,
        handle: Optional[TaskHandle],
        payload: Dict[str, Any],
        job_id: str,
        materializer: "ResultMaterializer",
    ) -> str:
        return await materializer.write_artifact(job_id, "gltf", create_placeholder_gltf().encode("utf-8"))
