"""
Job Orchestrator
Owns the 3D job lifecycle:

    create -> (background) dispatch -> refresh-on-read ... -> SUCCEEDED | FAILED

- create returns immediately; dispatch runs as a detached asyncio task that
  writes its own outcome to the store
- refresh runs on every client read (no background poller) and is a no-op
  for terminal jobs
- transient polling errors only touch diagnostic fields; provider-reported
  failures, materialization errors and misconfiguration fail the job
- refresh holds a per-job lock and re-reads the job once inside it, so
  concurrent reads never materialize the same result twice
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from app.core.errors import MaterializationError, ProviderMisconfiguredError, ProviderPreconditionError
from app.models.job import JobStatus, Model3DJob, Provider, utcnow
from app.schemas.job import JobOptions
from app.services.events import EventPublisher, NullPublisher, build_job_event
from app.services.job_store import JobStore
from app.services.materializer import ResultMaterializer
from app.services.providers import ProviderAdapter, ProviderRegistry, TaskHandle, TaskOptions
from app.services.status import normalize_status

logger = logging.getLogger(__name__)

# Diagnostic labels set by the orchestrator itself
LABEL_SUBMITTED = "SUBMITTED"
LABEL_MISCONFIGURED = "MISCONFIGURED"
LABEL_DISPATCH_FAILED = "DISPATCH_FAILED"
LABEL_DISPATCH_TIMEOUT = "DISPATCH_TIMEOUT"

# Changes to these alone are not worth a push event
QUIET_FIELDS = frozenset({"last_checked_at"})


class JobOrchestrator:
    """State machine driving jobs through provider adapters."""

    def __init__(
        self,
        store: JobStore,
        registry: ProviderRegistry,
        materializer: ResultMaterializer,
        publisher: Optional[EventPublisher] = None,
        dispatch_timeout: float = 180.0,
        dispatch_deadline: Optional[float] = 900.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.registry = registry
        self.materializer = materializer
        self.publisher = publisher or NullPublisher()
        self.dispatch_timeout = dispatch_timeout
        self.dispatch_deadline = dispatch_deadline
        self._clock = clock

        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}
        self._dispatching: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def create_job(
        self,
        user_id: str,
        image_urls: Sequence[str],
        provider: str,
        options: Optional[JobOptions] = None,
    ) -> Model3DJob:
        """
        Insert a PROCESSING job and schedule its dispatch.

        Raises:
            ProviderPreconditionError: no images or unknown provider.
            ProviderMisconfiguredError: the provider has no configuration.
        """
        if not image_urls:
            raise ProviderPreconditionError(provider, "At least one input image is required")
        self.check_provider(provider)

        options = options or JobOptions()
        job = self.store.create(
            user_id=user_id,
            provider=provider,
            status=JobStatus.PROCESSING.value,
            input_image_urls=list(image_urls),
            texture_prompt=options.texture_prompt or None,
            texture_image_url=options.texture_image_url or None,
            enable_pbr=options.enable_pbr,
            should_remesh=options.should_remesh,
            target_polycount=options.target_polycount,
            symmetry_mode=options.symmetry_mode.value if options.symmetry_mode else None,
        )
        logger.info(f"[Orchestrator] Job {job.id} created for user {user_id} ({provider}, {len(image_urls)} images)")

        await self._publish(job)
        self.spawn_dispatch(job.id)
        return job

    def check_provider(self, provider: str) -> ProviderAdapter:
        """Reject unknown or unconfigured providers before anything is stored."""
        if provider not in {p.value for p in Provider}:
            raise ProviderPreconditionError(provider, f"Unknown 3D provider: {provider}")
        return self.registry.resolve(provider)

    def spawn_dispatch(self, job_id: str) -> asyncio.Task:
        """Run dispatch in the background. The caller does not wait for it."""
        self._dispatching.add(job_id)
        task = asyncio.create_task(self.dispatch(job_id), name=f"dispatch-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def dispatch(self, job_id: str) -> None:
        """
        Create the remote task for a job. This is the only writer of
        provider_task_id. Every failure is written to the job as FAILED.
        """
        self._dispatching.add(job_id)
        try:
            job = self.store.get(job_id)
            if job is None or job.is_terminal or job.provider_task_id:
                return

            adapter = self.registry.resolve(job.provider)
            if adapter.completes_on_dispatch:
                async with self._single_flight(job_id):
                    job = self.store.get(job_id)
                    if job is not None and not job.is_terminal:
                        await self._complete_locally(job, adapter)
                return

            image_urls = job.image_urls
            adapter.validate_inputs(image_urls)
            task_id = await asyncio.wait_for(
                adapter.create_task(image_urls, TaskOptions.from_job(job)),
                timeout=self.dispatch_timeout,
            )
            await self._write(
                job,
                provider_task_id=task_id,
                status=JobStatus.PROCESSING.value,
                provider_status=LABEL_SUBMITTED,
                provider_error=None,
                error_message=None,
            )
            logger.info(f"[Orchestrator] Job {job_id} dispatched to {adapter.name}: {task_id}")
        except ProviderMisconfiguredError as e:
            await self._fail_by_id(job_id, str(e), LABEL_MISCONFIGURED)
        except asyncio.TimeoutError:
            await self._fail_by_id(
                job_id,
                f"Provider did not accept the task within {self.dispatch_timeout:.0f}s",
                LABEL_DISPATCH_TIMEOUT,
            )
        except Exception as e:
            logger.warning(f"[Orchestrator] Dispatch failed for job {job_id}: {e}")
            await self._fail_by_id(job_id, str(e) or "3D conversion could not be started", LABEL_DISPATCH_FAILED)
        finally:
            self._dispatching.discard(job_id)

    async def refresh(self, job_id: str) -> Optional[Model3DJob]:
        """
        Re-synchronize a job with its provider and return the stored record.

        Terminal jobs are returned as stored without contacting anything.
        """
        job = self.store.get(job_id)
        if job is None or job.is_terminal:
            return job

        async with self._single_flight(job_id):
            # Another reader may have finished the job while we waited
            job = self.store.get(job_id)
            if job is None or job.is_terminal:
                return job
            try:
                return await self._refresh_locked(job)
            except Exception:
                logger.exception(f"[Orchestrator] Refresh failed for job {job_id}")
                return job

    async def get_job(self, job_id: str, user_id: str) -> Optional[Model3DJob]:
        """Owner-scoped read with refresh. Foreign jobs look like missing ones."""
        job = self.store.get(job_id)
        if job is None or job.user_id != user_id:
            return None
        return await self.refresh(job_id)

    def list_jobs(self, user_id: str, limit: int = 20) -> List[Model3DJob]:
        return self.store.list_by_owner(user_id, limit=limit)

    def is_dispatching(self, job_id: str) -> bool:
        return job_id in self._dispatching

    async def aclose(self, timeout: float = 10.0) -> None:
        """Give in-flight dispatches a chance to write their outcome."""
        pending = [t for t in self._tasks if not t.done()]
        if not pending:
            return
        logger.info(f"[Orchestrator] Waiting for {len(pending)} dispatch task(s)")
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()

    # ------------------------------------------------------------------
    # Refresh internals
    # ------------------------------------------------------------------

    async def _refresh_locked(self, job: Model3DJob) -> Model3DJob:
        try:
            adapter = self.registry.resolve(job.provider)
        except ProviderMisconfiguredError as e:
            return await self._fail(job, str(e), LABEL_MISCONFIGURED)

        if adapter.completes_on_dispatch:
            return await self._complete_locally(job, adapter)

        if not job.provider_task_id:
            return await self._await_dispatch(job)

        handle = TaskHandle.from_job(job)
        checked_at = self._clock()
        try:
            payload = await adapter.get_task_status(handle)
        except Exception as e:
            # Transient: keep the job as it is and try again on the next read
            logger.warning(f"[Orchestrator] Status check failed for job {job.id}: {e}")
            return await self._write(job, provider_error=f"Status check failed: {e}", last_checked_at=checked_at)

        normalized = normalize_status(adapter.name, payload)
        diagnostics: Dict[str, Any] = {
            "provider_status": normalized.label,
            "progress": normalized.progress,
            "provider_error": None,
            "last_checked_at": checked_at,
        }

        if normalized.is_failure:
            message = adapter.extract_error_message(payload) or adapter.failure_fallback
            logger.info(f"[Orchestrator] Job {job.id} failed at provider: {message}")
            return await self._write(job, status=JobStatus.FAILED.value, error_message=message, **diagnostics)

        if normalized.is_success:
            if job.output_model_url:
                return job
            return await self._materialize(job, adapter, handle, payload, diagnostics)

        return await self._write(job, status=JobStatus.PROCESSING.value, error_message=None, **diagnostics)

    async def _materialize(
        self,
        job: Model3DJob,
        adapter: ProviderAdapter,
        handle: TaskHandle,
        payload: Dict[str, Any],
        diagnostics: Dict[str, Any],
    ) -> Model3DJob:
        try:
            url = await adapter.materialize(handle, payload, job.id, self.materializer)
        except MaterializationError as e:
            logger.warning(f"[Orchestrator] Materialization failed for job {job.id} at {e.step}: {e}")
            return await self._write(job, status=JobStatus.FAILED.value, error_message=str(e), **diagnostics)
        except Exception as e:
            logger.exception(f"[Orchestrator] Materialization crashed for job {job.id}")
            return await self._write(
                job,
                status=JobStatus.FAILED.value,
                error_message=f"Result materialization failed: {e}",
                **diagnostics,
            )

        logger.info(f"[Orchestrator] Job {job.id} succeeded: {url}")
        return await self._write(
            job,
            status=JobStatus.SUCCEEDED.value,
            output_model_url=url,
            error_message=None,
            **diagnostics,
        )

    async def _complete_locally(self, job: Model3DJob, adapter: ProviderAdapter) -> Model3DJob:
        """Finish a local-provider job. Caller holds the job's lock."""
        if job.output_model_url:
            return job
        url = await adapter.materialize(None, {}, job.id, self.materializer)
        logger.info(f"[Orchestrator] Job {job.id} completed locally: {url}")
        return await self._write(
            job,
            status=JobStatus.SUCCEEDED.value,
            output_model_url=url,
            error_message=None,
            provider_status=JobStatus.SUCCEEDED.value,
            provider_error=None,
            progress=100,
            last_checked_at=self._clock(),
        )

    async def _await_dispatch(self, job: Model3DJob) -> Model3DJob:
        """Job has no remote task yet: never contact the provider."""
        if not self.is_dispatching(job.id) and self._dispatch_expired(job):
            return await self._fail(
                job,
                f"Dispatch to {job.provider} did not complete within {self.dispatch_deadline:.0f}s",
                LABEL_DISPATCH_TIMEOUT,
            )
        if job.error_message:
            # A stale error from an earlier attempt; the job is still in flight
            return await self._write(job, status=JobStatus.PROCESSING.value, error_message=None)
        return job

    def _dispatch_expired(self, job: Model3DJob) -> bool:
        if not self.dispatch_deadline or job.created_at is None:
            return False
        return (self._clock() - job.created_at).total_seconds() > self.dispatch_deadline

    # ------------------------------------------------------------------
    # Writes and events
    # ------------------------------------------------------------------

    async def _write(self, job: Model3DJob, **fields: Any) -> Model3DJob:
        """Persist only the fields that differ, then publish if anything visible changed."""
        changes = {k: v for k, v in fields.items() if getattr(job, k) != v}
        if job.provider_task_id and "provider_task_id" in changes:
            changes.pop("provider_task_id")
        if job.output_model_url and "output_model_url" in changes:
            changes.pop("output_model_url")
        if not changes:
            return job

        updated = self.store.update(job.id, changes)
        if updated is None:
            return job
        if set(changes) - QUIET_FIELDS:
            await self._publish(updated)
        return updated

    async def _fail(self, job: Model3DJob, message: str, label: str) -> Model3DJob:
        return await self._write(
            job,
            status=JobStatus.FAILED.value,
            error_message=message,
            provider_status=label,
        )

    async def _fail_by_id(self, job_id: str, message: str, label: str) -> None:
        try:
            job = self.store.get(job_id)
            if job is None or job.is_terminal:
                return
            await self._fail(job, message, label)
        except Exception:
            logger.exception(f"[Orchestrator] Could not record dispatch failure for job {job_id}")

    async def _publish(self, job: Model3DJob) -> None:
        try:
            await self.publisher.publish(job.user_id, build_job_event(job))
        except Exception as e:
            logger.warning(f"[Orchestrator] Event publish failed for job {job.id}: {e}")

    @asynccontextmanager
    async def _single_flight(self, job_id: str):
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        self._lock_holders[job_id] = self._lock_holders.get(job_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[job_id] -= 1
            if not self._lock_holders[job_id]:
                del self._lock_holders[job_id]
                self._locks.pop(job_id, None)
