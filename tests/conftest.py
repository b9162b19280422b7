import io
import os
import tempfile

# Settings are read at import time; point them at throwaway locations first
_TEST_ROOT = tempfile.mkdtemp(prefix="model3d-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_ROOT, 'api.db')}"
os.environ["LOCAL_STORAGE_PATH"] = os.path.join(_TEST_ROOT, "uploads")
os.environ["PUBLIC_BASE_URL"] = "http://testserver"
os.environ["MODEL3D_PROVIDER"] = "mock"
os.environ["REDIS_EVENTS_ENABLED"] = "false"
for _key in ("MESHY_API_KEY", "NODEODM_URL", "REPLICATE_API_TOKEN", "REPLICATE_MODEL_VERSION"):
    os.environ.pop(_key, None)

import asyncio
from typing import Any, Dict, List, Optional

import httpx
import pytest
from PIL import Image
from sqlalchemy.orm import sessionmaker

from app.core.database import init_db, make_engine
from app.services.events import EventPublisher
from app.services.job_store import JobStore
from app.services.materializer import ResultMaterializer
from app.services.orchestrator import JobOrchestrator
from app.services.providers import ProviderRegistry
from app.services.providers.base import ProviderAdapter
from app.services.storage import StorageService


def png_bytes(color=(200, 40, 40)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), color).save(buf, format="PNG")
    return buf.getvalue()


def no_network(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"Unexpected network call: {request.method} {request.url}")


class RecordingPublisher(EventPublisher):
    def __init__(self):
        self.events: List[tuple] = []

    async def publish(self, user_id: str, event: Dict[str, Any]) -> None:
        self.events.append((user_id, event))


class FakeAdapter(ProviderAdapter):
    """Scriptable adapter that counts every call."""

    display_name = "Fake"

    def __init__(
        self,
        name: str = "meshy",
        payloads: Optional[List[Dict[str, Any]]] = None,
        task_id: str = "task-1",
        create_error: Optional[Exception] = None,
        status_error: Optional[Exception] = None,
        min_images: int = 1,
    ):
        super().__init__()
        self.name = name
        self.payloads = list(payloads or [{"status": "IN_PROGRESS", "progress": 10}])
        self.task_id = task_id
        self.create_error = create_error
        self.status_error = status_error
        self.min_images = min_images
        self.create_calls: List[tuple] = []
        self.status_calls: List[Any] = []
        self.materialize_calls = 0

    async def create_task(self, image_urls, options):
        self.validate_inputs(image_urls)
        self.create_calls.append((list(image_urls), options))
        if self.create_error:
            raise self.create_error
        return self.task_id

    async def get_task_status(self, handle):
        self.status_calls.append(handle)
        if self.status_error:
            raise self.status_error
        if len(self.payloads) > 1:
            return self.payloads.pop(0)
        return self.payloads[0]

    def extract_result_url(self, payload):
        return payload.get("url")

    async def materialize(self, handle, payload, job_id, materializer):
        self.materialize_calls += 1
        await asyncio.sleep(0.01)
        return await super().materialize(handle, payload, job_id, materializer)


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return JobStore(session_factory)


@pytest.fixture
def storage(tmp_path):
    return StorageService(str(tmp_path / "files"), "http://testserver")


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def make_orchestrator(store, storage, publisher):
    """Build an orchestrator around the given adapters and transport."""

    def _make(*adapters, transport=None, **kwargs):
        registry = ProviderRegistry({adapter.name: adapter for adapter in adapters})
        materializer = ResultMaterializer(storage, transport=transport or httpx.MockTransport(no_network))
        return JobOrchestrator(
            store=store,
            registry=registry,
            materializer=materializer,
            publisher=publisher,
            **kwargs,
        )

    return _make
