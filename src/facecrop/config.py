"""Environment-based configuration for facecrop."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from FACECROP_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FACECROP_",
        case_sensitive=False,
    )

    # Directories
    source_dir: Path = Path("src")
    dest_dir: Path = Path("dst")
    create_dest_dir: bool = False

    # Region filtering
    min_score: float = 5.0

    # Cascade search
    min_size: int = Field(default=20, ge=1)
    max_size: int = Field(default=2000, ge=1)
    shift_factor: float = Field(default=0.1, gt=0.0, le=1.0)
    scale_factor: float = Field(default=1.1, gt=1.0)
    cluster_iou: float = Field(default=0.18, ge=0.0, le=1.0)

    # Encoding
    jpeg_quality: int = Field(default=95, ge=1, le=100)
    png_compress_level: int = Field(default=0, ge=0, le=9)

    # Model (None repo = read cascade_path from disk)
    cascade_path: Path = Path("./facefinder")
    cascade_repo_id: str | None = None
    cascade_filename: str = "facefinder"
    models_dir: Path = Path("./models")

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)

    # Concurrency
    workers: int = Field(default=1, ge=1)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @model_validator(mode="after")
    def _check_size_range(self) -> Settings:
        if self.max_size < self.min_size:
            raise ValueError(f"max_size ({self.max_size}) must be >= min_size ({self.min_size})")
        return self


def get_settings(**overrides: object) -> Settings:
    """Create and return application settings."""
    return Settings(**overrides)  # type: ignore[arg-type]
