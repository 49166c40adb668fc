"""Environment-based configuration for LeafScan."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from leafscan.ml.pixel_buffer import PixelFormat, RowOrder


class Settings(BaseSettings):
    """Application settings loaded from LEAFSCAN_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LEAFSCAN_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Model
    model_path: Path = Path("models/plant_disease.onnx")
    labels_path: Path | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Preprocessing
    input_size: int = Field(default=224, ge=1)
    resample: Literal["nearest", "bilinear", "bicubic", "lanczos"] = "bilinear"
    pixel_format: PixelFormat = PixelFormat.ARGB32
    row_alignment: int = Field(default=64, ge=1)
    buffer_row_order: RowOrder = RowOrder.TOP_DOWN

    # Tensor conversion
    input_scale: float = Field(default=1 / 255, gt=0.0)
    input_mean: tuple[float, float, float] = (0.0, 0.0, 0.0)
    input_std: tuple[float, float, float] = (1.0, 1.0, 1.0)
    # "auto" passes outputs through when they already look like probabilities
    # (all in [0, 1], summing to at most 1). A logit model whose raw scores
    # can also satisfy that should set "softmax".
    output_activation: Literal["auto", "softmax", "none"] = "auto"

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator("input_std")
    @classmethod
    def std_must_be_positive(cls, value: tuple[float, float, float]) -> tuple[float, float, float]:
        if any(std <= 0.0 for std in value):
            raise ValueError(f"input_std entries must be positive, got {value}")
        return value


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
