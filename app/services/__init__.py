# Services package - 3D job orchestration and external integrations
from dataclasses import dataclass
from typing import Optional

import httpx

from app.core.config import Settings
from app.core.database import SessionLocal
from app.core.redis import RedisManager
from app.services.events import ConnectionManager, EventPublisher, FanoutPublisher, RedisEventPublisher
from app.services.job_store import JobStore
from app.services.materializer import ResultMaterializer
from app.services.orchestrator import JobOrchestrator
from app.services.providers import ProviderRegistry
from app.services.storage import StorageService


@dataclass
class Services:
    """Everything the API needs, built once at startup."""
    storage: StorageService
    registry: ProviderRegistry
    connections: ConnectionManager
    publisher: EventPublisher
    orchestrator: JobOrchestrator
    redis: Optional[RedisManager] = None

    async def aclose(self):
        await self.orchestrator.aclose()
        if self.redis is not None:
            await self.redis.close()


def build_services(
    settings: Settings,
    session_factory=SessionLocal,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Services:
    """Resolve configuration once and wire adapters, store and publishers together."""
    storage = StorageService(settings.LOCAL_STORAGE_PATH, settings.public_base_url)
    registry = ProviderRegistry.from_settings(settings, transport=transport)
    materializer = ResultMaterializer(storage, transport=transport, timeout=settings.HTTP_TIMEOUT_SECONDS * 2)

    connections = ConnectionManager()
    publishers = [connections]
    redis_manager = None
    if settings.REDIS_EVENTS_ENABLED:
        redis_manager = RedisManager(settings.REDIS_URL)
        publishers.append(RedisEventPublisher(redis_manager, settings.REDIS_EVENTS_CHANNEL_PREFIX))
    publisher = FanoutPublisher(publishers)

    orchestrator = JobOrchestrator(
        store=JobStore(session_factory),
        registry=registry,
        materializer=materializer,
        publisher=publisher,
        dispatch_timeout=settings.MODEL3D_DISPATCH_TIMEOUT_SECONDS,
        dispatch_deadline=settings.MODEL3D_DISPATCH_DEADLINE_SECONDS,
    )
    return Services(
        storage=storage,
        registry=registry,
        connections=connections,
        publisher=publisher,
        orchestrator=orchestrator,
        redis=redis_manager,
    )


__all__ = [
    "Services",
    "build_services",
    "StorageService",
    "JobStore",
    "JobOrchestrator",
    "ProviderRegistry",
    "ResultMaterializer",
]
