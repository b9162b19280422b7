"""
Application Configuration
Loads settings from environment variables and resolves per-provider config.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MeshyConfig:
    """Commercial image-to-3D API settings."""
    api_key: str
    api_base: str = "https://api.meshy.ai"
    create_path: str = "/openapi/v1/image-to-3d"
    status_path_template: str = "/openapi/v1/image-to-3d/{id}"
    image_field: str = "image_url"
    multi_create_path: str = "/openapi/v1/multi-image-to-3d"
    multi_status_path_template: str = "/openapi/v1/multi-image-to-3d/{id}"
    multi_image_field: str = "image_urls"
    result_url_fields: Tuple[str, ...] = ()
    extra_body: Dict[str, Any] = field(default_factory=dict)
    max_images: int = 4
    timeout: float = 60.0


@dataclass(frozen=True)
class NodeOdmConfig:
    """Photogrammetry engine (NodeODM) settings."""
    base_url: str
    token: str = ""
    create_path: str = "/task/new"
    info_path_template: str = "/task/{id}/info"
    download_zip_template: str = "/task/{id}/download/all.zip"
    options_json: str = ""
    min_images: int = 8
    timeout: float = 60.0


@dataclass(frozen=True)
class ReplicateConfig:
    """Generic prediction API settings."""
    api_token: str
    model_version: str
    api_base: str = "https://api.replicate.com/v1"
    image_field: str = "image"
    extra_input: Dict[str, Any] = field(default_factory=dict)
    timeout: float = 60.0


def _parse_json_object(raw: str, setting_name: str) -> Dict[str, Any]:
    """Parse a JSON object setting; malformed values are ignored."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning(f"[Config] Ignoring malformed JSON in {setting_name}")
        return {}
    if not isinstance(parsed, dict):
        logger.warning(f"[Config] Ignoring non-object JSON in {setting_name}")
        return {}
    return parsed


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    APP_NAME: str = "Model3D Orchestrator"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    PUBLIC_BASE_URL: str = "http://localhost:8000"  # Prefix for every served file URL

    # Database - SQLite for local dev, PostgreSQL for production
    DATABASE_URL: str = "sqlite:///./model3d.db"

    # Redis (optional pub/sub fan-out of job events)
    REDIS_URL: str = "redis://localhost:6379"
    REDIS_EVENTS_ENABLED: bool = False
    REDIS_EVENTS_CHANNEL_PREFIX: str = "model3d:user:"

    # Local storage for inputs and artifacts
    LOCAL_STORAGE_PATH: str = "./uploads"

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Job settings
    MODEL3D_PROVIDER: str = "mock"  # mock | meshy | nodeodm | replicate
    MODEL3D_MAX_IMAGES: int = 32
    MODEL3D_MAX_FILE_SIZE_MB: int = 10
    MODEL3D_LIST_LIMIT: int = 20
    MODEL3D_DISPATCH_TIMEOUT_SECONDS: float = 180.0  # Upper bound on one create-task call
    MODEL3D_DISPATCH_DEADLINE_SECONDS: float = 900.0  # Jobs never dispatched after this are failed
    HTTP_TIMEOUT_SECONDS: float = 60.0

    # Meshy (commercial image-to-3D API)
    MESHY_API_KEY: str = ""
    MESHY_API_BASE: str = "https://api.meshy.ai"
    MESHY_CREATE_PATH: str = "/openapi/v1/image-to-3d"
    MESHY_STATUS_PATH_TEMPLATE: str = "/openapi/v1/image-to-3d/{id}"
    MESHY_IMAGE_FIELD: str = "image_url"
    MESHY_MULTI_CREATE_PATH: str = "/openapi/v1/multi-image-to-3d"
    MESHY_MULTI_STATUS_PATH_TEMPLATE: str = "/openapi/v1/multi-image-to-3d/{id}"
    MESHY_MULTI_IMAGE_FIELD: str = "image_urls"
    MESHY_RESULT_URL_FIELDS: str = (
        "model_urls.glb,model_urls.pre_remeshed_glb,model_urls.obj,model_urls.fbx,"
        "glb_url,gltf_url,model_url,output.glb,output.gltf"
    )
    MESHY_EXTRA_BODY: str = ""

    # NodeODM (photogrammetry)
    NODEODM_URL: str = ""
    NODEODM_TOKEN: str = ""
    NODEODM_CREATE_PATH: str = "/task/new"
    NODEODM_INFO_PATH_TEMPLATE: str = "/task/{id}/info"
    NODEODM_DOWNLOAD_ZIP_TEMPLATE: str = "/task/{id}/download/all.zip"
    NODEODM_OPTIONS_JSON: str = ""
    NODEODM_MIN_IMAGES: int = 8

    # Replicate (generic prediction API)
    REPLICATE_API_TOKEN: str = ""
    REPLICATE_MODEL_VERSION: str = ""
    REPLICATE_API_BASE: str = "https://api.replicate.com/v1"
    REPLICATE_IMAGE_FIELD: str = "image"
    REPLICATE_EXTRA_INPUT: str = ""

    @field_validator('MESHY_API_KEY', 'REPLICATE_API_TOKEN', 'NODEODM_TOKEN', mode='before')
    @classmethod
    def strip_api_keys(cls, v):
        """Strip whitespace and newlines from API keys loaded from secrets."""
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator('MODEL3D_PROVIDER', mode='before')
    @classmethod
    def normalize_provider(cls, v):
        if isinstance(v, str):
            return v.strip().lower() or "mock"
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def public_base_url(self) -> str:
        return self.PUBLIC_BASE_URL.rstrip("/")

    @property
    def max_file_size_bytes(self) -> int:
        return self.MODEL3D_MAX_FILE_SIZE_MB * 1024 * 1024

    def meshy_config(self) -> Optional[MeshyConfig]:
        """Resolve Meshy config, or None when no API key is set."""
        if not self.MESHY_API_KEY:
            return None
        fields = tuple(f.strip() for f in self.MESHY_RESULT_URL_FIELDS.split(",") if f.strip())
        return MeshyConfig(
            api_key=self.MESHY_API_KEY,
            api_base=self.MESHY_API_BASE,
            create_path=self.MESHY_CREATE_PATH,
            status_path_template=self.MESHY_STATUS_PATH_TEMPLATE,
            image_field=self.MESHY_IMAGE_FIELD,
            multi_create_path=self.MESHY_MULTI_CREATE_PATH,
            multi_status_path_template=self.MESHY_MULTI_STATUS_PATH_TEMPLATE,
            multi_image_field=self.MESHY_MULTI_IMAGE_FIELD,
            result_url_fields=fields,
            extra_body=_parse_json_object(self.MESHY_EXTRA_BODY, "MESHY_EXTRA_BODY"),
            timeout=self.HTTP_TIMEOUT_SECONDS,
        )

    def nodeodm_config(self) -> Optional[NodeOdmConfig]:
        """Resolve NodeODM config, or None when no engine URL is set."""
        if not self.NODEODM_URL:
            return None
        # Forwarded verbatim; the engine accepts an object or a [{name, value}] list
        options = self.NODEODM_OPTIONS_JSON.strip()
        if options:
            try:
                json.loads(options)
            except ValueError:
                logger.warning("[Config] Ignoring malformed JSON in NODEODM_OPTIONS_JSON")
                options = ""
        return NodeOdmConfig(
            base_url=self.NODEODM_URL,
            token=self.NODEODM_TOKEN,
            create_path=self.NODEODM_CREATE_PATH,
            info_path_template=self.NODEODM_INFO_PATH_TEMPLATE,
            download_zip_template=self.NODEODM_DOWNLOAD_ZIP_TEMPLATE,
            options_json=options,
            min_images=self.NODEODM_MIN_IMAGES,
            timeout=self.HTTP_TIMEOUT_SECONDS,
        )

    def replicate_config(self) -> Optional[ReplicateConfig]:
        """Resolve Replicate config, or None unless both token and model version are set."""
        if not (self.REPLICATE_API_TOKEN and self.REPLICATE_MODEL_VERSION):
            return None
        return ReplicateConfig(
            api_token=self.REPLICATE_API_TOKEN,
            model_version=self.REPLICATE_MODEL_VERSION,
            api_base=self.REPLICATE_API_BASE,
            image_field=self.REPLICATE_IMAGE_FIELD or "image",
            extra_input=_parse_json_object(self.REPLICATE_EXTRA_INPUT, "REPLICATE_EXTRA_INPUT"),
            timeout=self.HTTP_TIMEOUT_SECONDS,
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
