import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from app.core.config import MeshyConfig
from app.core.errors import ProviderMisconfiguredError, ProviderPreconditionError, ProviderQuotaError
from app.models.job import JobStatus, utcnow
from app.schemas.job import JobOptions, JobResponse
from app.services.events import EventPublisher
from app.services.providers import MeshyAdapter, MockAdapter

from tests.conftest import FakeAdapter

IMG = "http://testserver/uploads/3d-inputs/img-{}.png"
RESULT_URL = "https://cdn.example/out/model.glb"


def images(count):
    return [IMG.format(i) for i in range(count)]


def cdn(request):
    return httpx.Response(200, content=b"glb-bytes")


def _job(store, **overrides):
    fields = dict(
        user_id="user-1",
        provider="meshy",
        status=JobStatus.PROCESSING.value,
        input_image_urls=images(1),
        provider_task_id="task-1",
    )
    fields.update(overrides)
    return store.create(**fields)


def _summary(job):
    return JobResponse.model_validate(job).model_dump()


# ---------------------------------------------------------------------------
# Creation and dispatch
# ---------------------------------------------------------------------------


def test_mock_job_completes_on_first_read(make_orchestrator, storage, publisher):
    orchestrator = make_orchestrator(MockAdapter())

    async def scenario():
        job = await orchestrator.create_job("user-1", images(1), "mock")
        assert job.status == JobStatus.PROCESSING.value
        refreshed = await orchestrator.refresh(job.id)
        await orchestrator.aclose()
        return refreshed

    job = asyncio.run(scenario())

    assert job.status == JobStatus.SUCCEEDED.value
    assert job.progress == 100
    assert job.output_model_url == f"http://testserver/uploads/models/{job.id}.gltf"
    assert (storage.base_path / "models" / f"{job.id}.gltf").is_file()
    statuses = [event["job"]["status"] for _, event in publisher.events]
    assert statuses == ["PROCESSING", "SUCCEEDED"]


def test_mock_job_completes_at_dispatch(make_orchestrator, store):
    orchestrator = make_orchestrator(MockAdapter())

    async def scenario():
        job = await orchestrator.create_job("user-1", images(2), "mock")
        await orchestrator.aclose()
        return job

    job = asyncio.run(scenario())
    assert store.get(job.id).status == JobStatus.SUCCEEDED.value


def test_dispatch_records_task_id_once(make_orchestrator, store):
    adapter = FakeAdapter(task_id="remote-7")
    orchestrator = make_orchestrator(adapter)

    async def scenario():
        job = await orchestrator.create_job("user-1", images(1), "meshy")
        await orchestrator.aclose()
        await orchestrator.dispatch(job.id)
        return job

    job = asyncio.run(scenario())
    stored = store.get(job.id)

    assert stored.provider_task_id == "remote-7"
    assert stored.provider_status == "SUBMITTED"
    assert stored.status == JobStatus.PROCESSING.value
    assert len(adapter.create_calls) == 1


def test_create_rejects_unknown_and_unconfigured_providers(make_orchestrator, store):
    orchestrator = make_orchestrator(MockAdapter())

    async def scenario():
        with pytest.raises(ProviderPreconditionError):
            await orchestrator.create_job("user-1", images(1), "blender")
        with pytest.raises(ProviderMisconfiguredError, match="meshy"):
            await orchestrator.create_job("user-1", images(1), "meshy")
        with pytest.raises(ProviderPreconditionError):
            await orchestrator.create_job("user-1", [], "mock")

    asyncio.run(scenario())
    assert store.list_by_owner("user-1") == []


def test_too_few_images_fail_before_any_provider_call(make_orchestrator, store):
    adapter = FakeAdapter(name="nodeodm", min_images=8)
    adapter.display_name = "NodeODM"
    orchestrator = make_orchestrator(adapter)

    async def scenario():
        job = await orchestrator.create_job("user-1", images(3), "nodeodm")
        await orchestrator.aclose()
        return job

    job = store.get(asyncio.run(scenario()).id)

    assert job.status == JobStatus.FAILED.value
    assert "at least 8" in job.error_message
    assert job.provider_status == "DISPATCH_FAILED"
    assert job.provider_task_id is None
    assert adapter.create_calls == []
    assert adapter.status_calls == []


def test_dispatch_error_fails_job(make_orchestrator, store):
    adapter = FakeAdapter(create_error=ProviderQuotaError("meshy", "Meshy plan upgrade required (402)", status_code=402))
    orchestrator = make_orchestrator(adapter)

    async def scenario():
        job = await orchestrator.create_job("user-1", images(1), "meshy")
        await orchestrator.aclose()
        return job

    job = store.get(asyncio.run(scenario()).id)
    assert job.status == JobStatus.FAILED.value
    assert "402" in job.error_message
    assert job.provider_task_id is None


class SlowAdapter(FakeAdapter):
    def __init__(self, delay, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay

    async def create_task(self, image_urls, options):
        await asyncio.sleep(self.delay)
        return await super().create_task(image_urls, options)


def test_dispatch_timeout(make_orchestrator, store):
    orchestrator = make_orchestrator(SlowAdapter(delay=1.0), dispatch_timeout=0.01)

    async def scenario():
        job = await orchestrator.create_job("user-1", images(1), "meshy")
        await orchestrator.aclose()
        return job

    job = store.get(asyncio.run(scenario()).id)
    assert job.status == JobStatus.FAILED.value
    assert job.provider_status == "DISPATCH_TIMEOUT"


def test_read_during_dispatch_does_not_poll(make_orchestrator):
    adapter = SlowAdapter(delay=0.05)
    orchestrator = make_orchestrator(adapter)

    async def scenario():
        job = await orchestrator.create_job("user-1", images(1), "meshy")
        await asyncio.sleep(0)
        during = await orchestrator.refresh(job.id)
        await orchestrator.aclose()
        after = await orchestrator.refresh(job.id)
        return during, after

    during, after = asyncio.run(scenario())

    assert during.status == JobStatus.PROCESSING.value
    assert during.provider_task_id is None
    assert after.provider_task_id == "task-1"
    # Only the read after dispatch reached the provider
    assert len(adapter.status_calls) == 1


def test_texture_prompt_wins_in_request_but_both_are_stored(make_orchestrator, store):
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"result": "t-1"})

    adapter = MeshyAdapter(MeshyConfig(api_key="key"), transport=httpx.MockTransport(handler))
    orchestrator = make_orchestrator(adapter)
    options = JobOptions(texture_prompt="mossy stone", texture_image_url="http://testserver/uploads/t.png")

    async def scenario():
        job = await orchestrator.create_job("user-1", images(1), "meshy", options)
        await orchestrator.aclose()
        return job

    job = store.get(asyncio.run(scenario()).id)

    assert bodies[0]["texture_prompt"] == "mossy stone"
    assert "texture_image_url" not in bodies[0]
    assert job.texture_prompt == "mossy stone"
    assert job.texture_image_url == "http://testserver/uploads/t.png"


@pytest.mark.parametrize(
    "count, create_path, status_path",
    [
        (1, "/openapi/v1/image-to-3d", "/openapi/v1/image-to-3d/t-1"),
        (3, "/openapi/v1/multi-image-to-3d", "/openapi/v1/multi-image-to-3d/t-1"),
    ],
)
def test_status_endpoint_matches_dispatch_task_type(make_orchestrator, count, create_path, status_path):
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path))
        if request.method == "POST":
            return httpx.Response(200, json={"result": "t-1"})
        return httpx.Response(200, json={"status": "IN_PROGRESS", "progress": 10})

    orchestrator = make_orchestrator(MeshyAdapter(MeshyConfig(api_key="key"), transport=httpx.MockTransport(handler)))

    async def scenario():
        job = await orchestrator.create_job("user-1", images(count), "meshy")
        await orchestrator.aclose()
        await orchestrator.refresh(job.id)
        await orchestrator.refresh(job.id)

    asyncio.run(scenario())

    assert calls == [("POST", create_path), ("GET", status_path), ("GET", status_path)]


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


def test_refresh_records_progress(make_orchestrator, store):
    adapter = FakeAdapter(payloads=[{"status": "IN_PROGRESS", "progress": 42}])
    orchestrator = make_orchestrator(adapter)
    job = _job(store)

    refreshed = asyncio.run(orchestrator.refresh(job.id))

    assert refreshed.status == JobStatus.PROCESSING.value
    assert refreshed.provider_status == "IN_PROGRESS"
    assert refreshed.progress == 42
    assert refreshed.last_checked_at is not None
    assert adapter.status_calls[0].task_id == "task-1"


@pytest.mark.parametrize("raw, expected", [(1.5, 100), (-3, 0), (0.42, 42), (150, 100), ("abc", None)])
def test_refresh_clamps_progress(make_orchestrator, store, raw, expected):
    adapter = FakeAdapter(name="replicate", payloads=[{"status": "processing", "progress": raw}])
    orchestrator = make_orchestrator(adapter)
    job = _job(store, provider="replicate")

    assert asyncio.run(orchestrator.refresh(job.id)).progress == expected


@pytest.mark.parametrize("status", [JobStatus.SUCCEEDED.value, JobStatus.FAILED.value])
def test_terminal_jobs_are_never_refreshed(make_orchestrator, store, publisher, status):
    adapter = FakeAdapter()
    orchestrator = make_orchestrator(adapter)
    job = _job(
        store,
        status=status,
        output_model_url="http://testserver/uploads/models/x.glb" if status == "SUCCEEDED" else None,
        error_message="boom" if status == "FAILED" else None,
    )

    async def scenario():
        return await orchestrator.refresh(job.id), await orchestrator.refresh(job.id)

    first, second = asyncio.run(scenario())

    assert _summary(first) == _summary(job)
    assert _summary(second) == _summary(job)
    assert adapter.status_calls == []
    assert publisher.events == []


def test_transient_status_error_keeps_job_running(make_orchestrator, store, storage):
    adapter = FakeAdapter(status_error=httpx.ConnectError("connection reset"))
    orchestrator = make_orchestrator(adapter, transport=httpx.MockTransport(cdn))
    job = _job(store, progress=30)

    first = asyncio.run(orchestrator.refresh(job.id))
    assert first.status == JobStatus.PROCESSING.value
    assert "connection reset" in first.provider_error
    assert first.error_message is None
    assert first.progress == 30

    adapter.status_error = None
    adapter.payloads = [{"status": "SUCCEEDED", "url": RESULT_URL}]
    second = asyncio.run(orchestrator.refresh(job.id))

    assert second.status == JobStatus.SUCCEEDED.value
    assert second.provider_error is None
    assert second.output_model_url == f"http://testserver/uploads/models/{job.id}.glb"
    assert (storage.base_path / "models" / f"{job.id}.glb").read_bytes() == b"glb-bytes"


def test_provider_failure_uses_reported_message(make_orchestrator, store):
    adapter = FakeAdapter(payloads=[{"status": "FAILED", "error": {"message": "Image has no subject"}}])
    orchestrator = make_orchestrator(adapter)
    job = _job(store)

    failed = asyncio.run(orchestrator.refresh(job.id))

    assert failed.status == JobStatus.FAILED.value
    assert failed.error_message == "Image has no subject"
    assert failed.provider_status == "FAILED"


def test_provider_failure_without_message_uses_fallback(make_orchestrator, store):
    adapter = FakeAdapter(payloads=[{"status": "CANCELED"}])
    orchestrator = make_orchestrator(adapter)
    job = _job(store)

    failed = asyncio.run(orchestrator.refresh(job.id))

    assert failed.status == JobStatus.FAILED.value
    assert failed.error_message == "3D generation failed (Fake)"


def test_success_without_result_url_fails(make_orchestrator, store):
    orchestrator = make_orchestrator(FakeAdapter(payloads=[{"status": "SUCCEEDED"}]))
    job = _job(store)

    failed = asyncio.run(orchestrator.refresh(job.id))

    assert failed.status == JobStatus.FAILED.value
    assert "No result model URL" in failed.error_message
    assert failed.output_model_url is None


def test_download_failure_fails_job_with_status(make_orchestrator, store):
    orchestrator = make_orchestrator(
        FakeAdapter(payloads=[{"status": "SUCCEEDED", "url": RESULT_URL}]),
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    job = _job(store)

    failed = asyncio.run(orchestrator.refresh(job.id))

    assert failed.status == JobStatus.FAILED.value
    assert "503" in failed.error_message


def test_unconfigured_provider_fails_on_read(make_orchestrator, store):
    orchestrator = make_orchestrator(MockAdapter())
    job = _job(store, provider="replicate")

    failed = asyncio.run(orchestrator.refresh(job.id))

    assert failed.status == JobStatus.FAILED.value
    assert failed.provider_status == "MISCONFIGURED"
    assert "replicate" in failed.error_message


def test_concurrent_reads_materialize_once(make_orchestrator, store):
    adapter = FakeAdapter(payloads=[{"status": "SUCCEEDED", "url": RESULT_URL}])
    downloads = []

    def handler(request):
        downloads.append(request.url)
        return httpx.Response(200, content=b"glb-bytes")

    orchestrator = make_orchestrator(adapter, transport=httpx.MockTransport(handler))
    job = _job(store)

    async def scenario():
        return await asyncio.gather(orchestrator.refresh(job.id), orchestrator.refresh(job.id))

    first, second = asyncio.run(scenario())

    assert adapter.materialize_calls == 1
    assert len(adapter.status_calls) == 1
    assert len(downloads) == 1
    assert first.status == second.status == JobStatus.SUCCEEDED.value
    assert first.output_model_url == second.output_model_url
    assert orchestrator._locks == {}


def test_dispatch_never_replaces_existing_task_id(make_orchestrator, store):
    adapter = FakeAdapter(task_id="other")
    orchestrator = make_orchestrator(adapter)
    job = _job(store, provider_task_id="task-1")

    asyncio.run(orchestrator.dispatch(job.id))

    assert store.get(job.id).provider_task_id == "task-1"
    assert adapter.create_calls == []


def test_undispatched_job_past_deadline_fails(make_orchestrator, store):
    adapter = FakeAdapter()
    orchestrator = make_orchestrator(adapter, dispatch_deadline=900)
    job = _job(store, provider_task_id=None, created_at=utcnow() - timedelta(hours=1))

    failed = asyncio.run(orchestrator.refresh(job.id))

    assert failed.status == JobStatus.FAILED.value
    assert failed.provider_status == "DISPATCH_TIMEOUT"
    assert adapter.status_calls == []


def test_undispatched_job_clears_stale_error(make_orchestrator, store):
    adapter = FakeAdapter()
    orchestrator = make_orchestrator(adapter)
    job = _job(store, provider_task_id=None, error_message="Dispatch hiccup")

    healed = asyncio.run(orchestrator.refresh(job.id))

    assert healed.status == JobStatus.PROCESSING.value
    assert healed.error_message is None
    assert adapter.status_calls == []


def test_get_job_is_owner_scoped(make_orchestrator, store):
    adapter = FakeAdapter()
    orchestrator = make_orchestrator(adapter)
    job = _job(store)

    assert asyncio.run(orchestrator.get_job(job.id, "intruder")) is None
    assert asyncio.run(orchestrator.get_job("m3d_missing", "user-1")) is None
    assert adapter.status_calls == []
    assert asyncio.run(orchestrator.get_job(job.id, "user-1")).id == job.id


def test_list_jobs(make_orchestrator, store):
    orchestrator = make_orchestrator(MockAdapter())
    _job(store)
    _job(store, user_id="user-2")

    assert [j.user_id for j in orchestrator.list_jobs("user-1")] == ["user-1"]


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


def test_events_go_to_owner_and_skip_quiet_polls(make_orchestrator, store, publisher):
    orchestrator = make_orchestrator(FakeAdapter(payloads=[{"status": "IN_PROGRESS", "progress": 42}]))
    job = _job(store, user_id="owner")

    async def scenario():
        await orchestrator.refresh(job.id)
        await orchestrator.refresh(job.id)

    asyncio.run(scenario())

    assert len(publisher.events) == 1
    user_id, event = publisher.events[0]
    assert user_id == "owner"
    assert event["event"] == "model3d:job"
    assert event["job"]["id"] == job.id
    assert event["job"]["progress"] == 42


class BrokenPublisher(EventPublisher):
    async def publish(self, user_id, event):
        raise RuntimeError("socket closed")


def test_publish_failure_does_not_affect_job(store, storage):
    from app.services.materializer import ResultMaterializer
    from app.services.orchestrator import JobOrchestrator
    from app.services.providers import ProviderRegistry

    orchestrator = JobOrchestrator(
        store=store,
        registry=ProviderRegistry({"mock": MockAdapter()}),
        materializer=ResultMaterializer(storage),
        publisher=BrokenPublisher(),
    )

    async def scenario():
        job = await orchestrator.create_job("user-1", images(1), "mock")
        await orchestrator.aclose()
        return job

    job = store.get(asyncio.run(scenario()).id)
    assert job.status == JobStatus.SUCCEEDED.value
