"""Environment-based configuration for localvr."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from LOCALVR_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LOCALVR_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication for this API (None = disabled)
    api_key: str | None = None

    # Remote classifier service
    service_url: str = "http://localhost:8000/api/v1.0"
    service_api_key: str | None = None
    service_version: str | None = None
    request_timeout: float = Field(default=60.0, gt=0)

    # Storage
    models_dir: str = "models"
    scratch_dir: str = "scratch"
    backup_exclude_xattr: str = "user.com.apple.metadata:com_apple_backup_excludeItem"

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=4, ge=1)

    # Classification
    confidence_floor: float = Field(default=0.01, ge=0.0, le=1.0)
    image_crop_and_scale: Literal["scale_fill", "center_crop", "scale_fit"] = "scale_fill"
    preserve_request_order: bool = True
    fail_on_empty: bool = False

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    # Model management
    auto_fetch_missing: bool = False
    model_max_age: int = Field(default=0, ge=0)
    model_ttl: int = Field(default=300, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
