"""Environment-based configuration for FishID."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PRECACHE_MANIFEST: tuple[str, ...] = (
    "/",
    "/index.html",
    "/static/js/main.chunk.js",
    "/static/js/bundle.js",
    "/static/js/vendors~main.chunk.js",
    "/static/css/main.chunk.css",
    "/manifest.json",
    "/icon-192.png",
    "/icon-512.png",
    "/model/model.json",
    "/model/metadata.json",
)


class Settings(BaseSettings):
    """Application settings loaded from FISHID_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FISHID_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "127.0.0.1"
    port: int = 8083

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model assets
    asset_base_url: str = "http://127.0.0.1:3000"
    models_dir: str = "models"
    model_repo_id: str | None = None

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Result interpretation (percent)
    low_confidence_threshold: float = Field(default=50.0, ge=0.0, le=100.0)
    high_confidence_threshold: float = Field(default=80.0, ge=0.0, le=100.0)
    translations_path: str | None = None

    # Camera
    camera_enabled: bool = True
    handheld: bool = False
    rear_camera_index: int = Field(default=0, ge=0)
    front_camera_index: int = Field(default=0, ge=0)
    preferred_width: int = Field(default=1280, ge=1)
    preferred_height: int = Field(default=720, ge=1)
    snapshot_jpeg_quality: int = Field(default=90, ge=1, le=100)

    # Offline cache
    offline_cache_enabled: bool = True
    cache_dir: str = ".fishid-cache"
    cache_name: str = "fish-identifier-v1"
    precache_manifest: list[str] = Field(default_factory=lambda: list(DEFAULT_PRECACHE_MANIFEST))


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
