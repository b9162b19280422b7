import asyncio

import httpx
import pytest

from app.core.errors import ArtifactDownloadError, MeshConversionError
from app.services.materializer import ResultMaterializer, infer_extension

TRIANGLE_OBJ = "v 0 0 0\nv 1 0 0\nv 0 1 0\nf 1 2 3\n"


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://cdn.example/a/model.glb", "glb"),
        ("https://cdn.example/a/model.GLTF?sig=abc", "gltf"),
        ("https://cdn.example/a/model.obj", "glb"),
        ("https://cdn.example/download?id=7", "glb"),
    ],
)
def test_infer_extension(url, expected):
    assert infer_extension(url) == expected


def test_fetch_remote_stores_under_job_id(storage):
    def handler(request):
        return httpx.Response(200, content=b"glTF-binary-bytes")

    materializer = ResultMaterializer(storage, transport=httpx.MockTransport(handler))
    url = asyncio.run(materializer.fetch_remote("m3d_abc", "https://cdn.example/out/model.gltf?x=1"))

    assert url == "http://testserver/uploads/models/m3d_abc.gltf"
    assert (storage.base_path / "models" / "m3d_abc.gltf").read_bytes() == b"glTF-binary-bytes"


def test_fetch_remote_keeps_upstream_status(storage):
    def handler(request):
        return httpx.Response(404, text="gone")

    materializer = ResultMaterializer(storage, transport=httpx.MockTransport(handler))
    with pytest.raises(ArtifactDownloadError) as exc:
        asyncio.run(materializer.fetch_remote("m3d_abc", "https://cdn.example/model.glb"))

    assert exc.value.status_code == 404
    assert exc.value.step == "download"
    assert "404" in str(exc.value)
    assert not (storage.base_path / "models" / "m3d_abc.glb").exists()


def test_fetch_remote_transport_error(storage):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    materializer = ResultMaterializer(storage, transport=httpx.MockTransport(handler))
    with pytest.raises(ArtifactDownloadError):
        asyncio.run(materializer.fetch_remote("m3d_abc", "https://cdn.example/model.glb"))


def test_convert_mesh_writes_glb(storage, tmp_path):
    obj_path = tmp_path / "mesh.obj"
    obj_path.write_text(TRIANGLE_OBJ)

    materializer = ResultMaterializer(storage)
    url = asyncio.run(materializer.convert_mesh("m3d_obj", obj_path))

    assert url.endswith("/uploads/models/m3d_obj.glb")
    data = (storage.base_path / "models" / "m3d_obj.glb").read_bytes()
    assert data[:4] == b"glTF"


def test_convert_mesh_missing_file(storage, tmp_path):
    bad = tmp_path / "missing.obj"

    materializer = ResultMaterializer(storage)
    with pytest.raises(MeshConversionError) as exc:
        asyncio.run(materializer.convert_mesh("m3d_bad", bad))
    assert exc.value.step == "convert"
