# Provider adapters - one per 3D generation backend
import logging
from typing import Dict, List, Optional

import httpx

from app.core.config import Settings
from app.core.errors import ProviderMisconfiguredError
from app.models.job import Provider
from app.services.providers.base import ProviderAdapter, TaskHandle, TaskOptions
from app.services.providers.meshy import MeshyAdapter
from app.services.providers.mock import MockAdapter
from app.services.providers.nodeodm import NodeOdmAdapter
from app.services.providers.replicate import ReplicateAdapter

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """
    Adapters keyed by provider name, built once from resolved settings.

    A provider with no configuration has no adapter; resolving it raises
    ProviderMisconfiguredError.
    """

    def __init__(self, adapters: Dict[str, ProviderAdapter]):
        self._adapters = dict(adapters)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ProviderRegistry":
        adapters: Dict[str, ProviderAdapter] = {Provider.MOCK.value: MockAdapter()}

        meshy = settings.meshy_config()
        if meshy:
            adapters[Provider.MESHY.value] = MeshyAdapter(meshy, transport=transport)
        nodeodm = settings.nodeodm_config()
        if nodeodm:
            adapters[Provider.NODEODM.value] = NodeOdmAdapter(nodeodm, transport=transport)
        replicate = settings.replicate_config()
        if replicate:
            adapters[Provider.REPLICATE.value] = ReplicateAdapter(replicate, transport=transport)

        logger.info(f"[Providers] Configured: {', '.join(sorted(adapters))}")
        return cls(adapters)

    def resolve(self, name: str) -> ProviderAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise ProviderMisconfiguredError(name)
        return adapter

    def is_configured(self, name: str) -> bool:
        return name in self._adapters

    def configured(self) -> List[str]:
        return sorted(self._adapters)


__all__ = [
    "ProviderAdapter",
    "ProviderRegistry",
    "TaskHandle",
    "TaskOptions",
    "MeshyAdapter",
    "MockAdapter",
    "NodeOdmAdapter",
    "ReplicateAdapter",
]
