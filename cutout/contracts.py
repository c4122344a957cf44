from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

import numpy as np
from pydantic import BaseModel, Field


class AssetStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"
    NEEDS_REVIEW = "needs_review"


TERMINAL_STATUSES = (AssetStatus.DONE, AssetStatus.FAILED, AssetStatus.NEEDS_REVIEW)


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    FLAGGED = "flagged"


class AssetQualityMetrics(BaseModel):
    edge_smoothness_score: Optional[float] = None
    transparency_artifacts_score: Optional[float] = None
    resolution_ok: Optional[bool] = None
    aspect_ratio_ok: Optional[bool] = None
    confidence_score: Optional[float] = None
    qc_passed: Optional[bool] = None


class ProcessingInfo(BaseModel):
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    file_size_bytes: Optional[int] = None
    pixel_width: Optional[int] = None
    pixel_height: Optional[int] = None
    confidence_score: Optional[float] = None
    warnings: List[str] = Field(default_factory=list)
    attempts: int = 0


class AssetJob(BaseModel):
    """One unit of batch work. Owned by the asset collection, mutated only via its update()."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    source: str
    file_name: str = ""
    status: AssetStatus = AssetStatus.PENDING
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    processing_progress: float = 0.0
    error_message: Optional[str] = None
    output_path: Optional[str] = None
    mask_path: Optional[str] = None
    processing_info: ProcessingInfo = Field(default_factory=ProcessingInfo)
    quality: AssetQualityMetrics = Field(default_factory=AssetQualityMetrics)

    def model_post_init(self, __context) -> None:
        if not self.file_name:
            self.file_name = Path(self.source).stem

    def advance_progress(self, value: float) -> None:
        # Progress is monotonic within an attempt.
        self.processing_progress = max(self.processing_progress, min(1.0, float(value)))


@dataclass
class CutoutResult:
    """
    Output of one pipeline run.

    - output: RGBA uint8 (H, W, 4)
    - mask: float32 (H, W) in [0,1], same extent as output
    - shadow_layer: optional RGBA uint8 shadow-only layer
    - exif / icc_profile: source metadata, only kept when asked for
    """

    output: np.ndarray
    mask: np.ndarray
    confidence: float
    warnings: List[str] = field(default_factory=list)
    shadow_layer: Optional[np.ndarray] = None
    exif: Optional[bytes] = None
    icc_profile: Optional[bytes] = None

    @property
    def size(self) -> tuple[int, int]:
        """(width, height) of the output."""
        h, w = self.output.shape[:2]
        return w, h
