from __future__ import annotations

import os
import threading
from enum import Enum
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from .config import DEFAULT_CONCURRENCY, MAX_CONCURRENCY, MIN_CONCURRENCY


class BackgroundOption(str, Enum):
    TRANSPARENT = "transparent"
    WHITE = "white"


class ShadowMode(str, Enum):
    NONE = "none"
    SOFT = "soft"
    PRESERVED = "preserved"


class CutoutSettings(BaseModel):
    """Per-run cutout policy. Frozen: every job gets the same value."""

    model_config = ConfigDict(frozen=True)

    edge_quality: float = 0.7
    feather_radius: float = 2.0
    threshold: float = 0.5
    padding_percent: float = 8.0
    auto_crop: bool = True
    min_object_size_percent: float = 2.0
    background_option: BackgroundOption = BackgroundOption.TRANSPARENT
    shadow_mode: ShadowMode = ShadowMode.NONE
    preserve_shadow_layer: bool = False
    hair_edge_mode: bool = False
    glass_handling_mode: bool = False
    despeckle: bool = True
    edge_smoothing: bool = True
    auto_white_balance: bool = False
    keep_largest_object_only: bool = True
    confidence_threshold: float = 0.4


class BatchSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    concurrency_limit: int = Field(default=DEFAULT_CONCURRENCY, ge=MIN_CONCURRENCY, le=MAX_CONCURRENCY)
    retry_on_failure: bool = True
    max_retries: int = Field(default=2, ge=0)
    preserve_exif: bool = False
    png_compress_level: int = Field(default=6, ge=0, le=9)

    @property
    def effective_max_retries(self) -> int:
        return self.max_retries if self.retry_on_failure else 0


class QualitySettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_resolution: int = 800
    max_resolution: int = 5000
    allowed_aspect_ratios: List[float] = Field(default_factory=lambda: [1.0, 4.0 / 5.0, 16.0 / 9.0])
    edge_smoothness_threshold: float = 0.6
    transparency_artifacts_threshold: float = 0.3


class SettingsSnapshot(BaseModel):
    """What one attempt reads: everything a job needs, taken at once."""

    model_config = ConfigDict(frozen=True)

    cutout: CutoutSettings = Field(default_factory=CutoutSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    quality: QualitySettings = Field(default_factory=QualitySettings)
    model_name: Optional[str] = None


class SettingsStore:
    """
    Thread-safe holder for the current settings.

    Writers replace whole sections; readers always get a consistent frozen snapshot.
    """

    def __init__(self, snapshot: Optional[SettingsSnapshot] = None):
        self._lock = threading.Lock()
        self._snapshot = snapshot or SettingsSnapshot()

    def snapshot(self) -> SettingsSnapshot:
        with self._lock:
            return self._snapshot

    def update(self, **sections) -> SettingsSnapshot:
        """Replace any of: cutout, batch, quality, model_name."""
        with self._lock:
            self._snapshot = self._snapshot.model_copy(update=sections)
            return self._snapshot


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def load_settings(env_file: Optional[str] = None) -> SettingsSnapshot:
    """
    Build a snapshot from CUTOUT_* environment variables (after loading .env).

    Only batch-level knobs and the model name come from the environment; cutout and
    quality policy start from their defaults.
    """
    load_dotenv(env_file)
    batch = BatchSettings(
        concurrency_limit=min(MAX_CONCURRENCY, max(MIN_CONCURRENCY, _env_int("CUTOUT_CONCURRENCY", DEFAULT_CONCURRENCY))),
        retry_on_failure=_env_bool("CUTOUT_RETRY_ON_FAILURE", True),
        max_retries=max(0, _env_int("CUTOUT_MAX_RETRIES", 2)),
        preserve_exif=_env_bool("CUTOUT_PRESERVE_EXIF", False),
    )
    model_name = os.getenv("CUTOUT_MODEL") or None
    return SettingsSnapshot(batch=batch, model_name=model_name)


def log_level_from_env(default: str = "INFO") -> str:
    return os.getenv("CUTOUT_LOG_LEVEL", default)
