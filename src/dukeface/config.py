"""Environment-based configuration for DukeFace."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import cv2
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def default_classifier_file() -> str:
    """Return the path of OpenCV's bundled frontal face Haar cascade."""
    return str(Path(cv2.data.haarcascades) / "haarcascade_frontalface_default.xml")


class Settings(BaseSettings):
    """Application settings loaded from DUKEFACE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DUKEFACE_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080

    # Authentication (None = disabled)
    api_key: str | None = None

    # Face detection
    classifier_file: str = Field(default_factory=default_classifier_file)
    scale_factor: float = Field(default=1.1, gt=1.0)
    min_neighbors: int = Field(default=3, ge=0)
    min_face_size: int = Field(default=0, ge=0)

    # Output encoding ("auto" = same format as the upload)
    output_format: Literal["auto", "png", "jpeg", "webp", "bmp"] = "auto"
    jpeg_quality: int = Field(default=95, ge=0, le=100)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    listener_concurrency: int = Field(default=5, ge=1)

    # Messaging (kombu broker URL; memory:// keeps queues in-process)
    broker_url: str = "memory://"
    queue_prefix: str = "dukeface"
    queue_max_size: int = Field(default=100, ge=1)
    broker_polling_interval: float = Field(default=0.1, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
