"""
Error Types
Exceptions raised by provider adapters and the result materializer.

The orchestrator catches all of these at the dispatch and refresh boundaries
and folds them into the job record; none of them reach an HTTP handler.
"""

from typing import Any, Optional


class Model3DError(Exception):
    """Base exception for 3D job errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ProviderError(Model3DError):
    """A provider call failed (non-success response or malformed body)."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
    ):
        super().__init__(message, details={"provider": provider, "status_code": status_code})
        self.provider = provider
        self.status_code = status_code
        self.body = body


class ProviderQuotaError(ProviderError):
    """The provider refused the task because of a plan or quota limit (HTTP 402)."""


class ProviderPreconditionError(ProviderError):
    """Inputs violate a provider constraint; raised before any network call."""


class ProviderMisconfiguredError(ProviderError):
    """The selected provider has no usable configuration."""

    def __init__(self, provider: str, message: Optional[str] = None):
        super().__init__(provider, message or f"3D provider '{provider}' is not configured")


class MaterializationError(Model3DError):
    """Turning a finished task into a local artifact failed."""

    step = "materialize"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, details)
        self.details.setdefault("step", self.step)


class NoResultUrlError(MaterializationError):
    """No result URL could be found in the provider payload."""
    step = "locate"


class ArtifactDownloadError(MaterializationError):
    """Fetching the remote artifact failed."""
    step = "download"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, details={"status_code": status_code})
        self.status_code = status_code


class ArchiveExtractionError(MaterializationError):
    """The result archive could not be decompressed."""
    step = "extract"


class GeometryNotFoundError(MaterializationError):
    """The extracted result tree holds no geometry file."""
    step = "find-geometry"


class MeshConversionError(MaterializationError):
    """Converting the intermediate mesh to the delivery format failed."""
    step = "convert"
