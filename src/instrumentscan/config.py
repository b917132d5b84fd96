"""Environment-based configuration for InstrumentScan."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from INSTRUMENTSCAN_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="INSTRUMENTSCAN_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model artifact. When model_repo_id is set the file is fetched from the
    # Hugging Face Hub into models_dir; otherwise model_path is used as-is.
    model_path: str = "assets/model/model.onnx"
    model_repo_id: str | None = None
    model_filename: str = "model.onnx"
    models_dir: str = "models"
    labels_path: str = "assets/model/labels.txt"
    lazy_load: bool = False

    # Preprocessing
    input_size: int = Field(default=224, ge=1)
    normalization: Literal["unit", "symmetric", "imagenet"] = "unit"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Scan history
    database_path: str = "scan_history.db"


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
