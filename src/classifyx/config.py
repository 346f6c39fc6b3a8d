"""Environment-based configuration for ClassifyX."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from CLASSIFYX_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CLASSIFYX_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication (None = disabled)
    api_key: str | None = None

    # Model selection
    models_dir: str = "models"
    model_name: str = "mobilenet_v1_quant"
    model_filename: str = "mobilenet_v1_1.0_224_quant.tflite"
    labels_filename: str = "labels.txt"
    # Hugging Face repo to fetch the files from (None = files must exist locally)
    model_repo_id: str | None = None

    # TFLite kernel threads (0 = host CPU count)
    num_threads: int = Field(default=0, ge=0)

    # Ranking
    top_k: int = Field(default=10, ge=1)
    confidence_threshold: float = Field(default=0.001, ge=0.0, le=1.0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0.0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)

    # Model management
    model_ttl: int = Field(default=300, ge=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
