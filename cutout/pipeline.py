from __future__ import annotations

import logging
import threading
import time
from typing import List, Optional

import numpy as np

from . import transforms
from .config import (
    CROP_ALPHA_THRESHOLD,
    EDGE_SMOOTHING_RADIUS,
    GLASS_MIN_FEATHER,
    GLASS_THRESHOLD_FACTOR,
    HAIR_MIN_FEATHER,
    MAX_CONFIDENCE,
    MAX_INFERENCE_DIMENSION,
    MIN_CONFIDENCE,
    PRESERVED_SHADOW_RADIUS,
    SHADOW_LAYER_RADIUS,
    SMALL_OBJECT_WARNING,
    SOFT_SHADOW_RADIUS,
    UNAVAILABLE_MODEL_WARNING,
)
from .contracts import CutoutResult
from .io import DecodedImage, ImageSource, load_image
from .raster import bounding_box_of_visible_pixels, coverage_ratio
from .segmentation import SegmentationModel, StubModel, load_model
from .settings import BackgroundOption, CutoutSettings, ShadowMode

logger = logging.getLogger(__name__)


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, float(value)))


def effective_feather_radius(settings: CutoutSettings) -> float:
    quality = _clamp(settings.edge_quality, 0.1, 1.0)
    radius = settings.feather_radius * (1.0 + (1.0 - quality))
    if settings.hair_edge_mode:
        radius = max(radius, HAIR_MIN_FEATHER)
    if settings.glass_handling_mode:
        radius = max(radius, GLASS_MIN_FEATHER)
    return radius


def effective_threshold(settings: CutoutSettings) -> float:
    quality = _clamp(settings.edge_quality, 0.1, 1.0)
    base = settings.threshold * GLASS_THRESHOLD_FACTOR if settings.glass_handling_mode else settings.threshold
    return base * (0.9 + 0.2 * quality)


def refine_mask(mask: np.ndarray, settings: CutoutSettings) -> np.ndarray:
    """
    Mask refinement, in order: despeckle, largest object, feather, threshold, edge smoothing.
    """
    if settings.despeckle:
        mask = transforms.despeckle(mask)
    if settings.keep_largest_object_only:
        mask = transforms.largest_connected_component(mask)
    mask = transforms.feather(mask, effective_feather_radius(settings))
    mask = transforms.clamp_threshold(mask, effective_threshold(settings))
    if settings.edge_smoothing:
        mask = transforms.gaussian_blur(mask, EDGE_SMOOTHING_RADIUS)
    return mask


class CutoutPipeline:
    """
    One image in, one cutout out. Never retries; failures propagate to the caller.

    The model is shared read-mostly by concurrent process() calls. update_model() swaps it
    under a lock and each call takes one reference up front.
    """

    def __init__(self, model: Optional[SegmentationModel] = None, models_dir: Optional[str] = None):
        self._model_lock = threading.Lock()
        self._model: SegmentationModel = model or StubModel()
        self._model_name: Optional[str] = None if model is None else model.name
        self.models_dir = models_dir

    @property
    def model(self) -> SegmentationModel:
        with self._model_lock:
            return self._model

    @property
    def model_name(self) -> Optional[str]:
        return self._model_name

    def update_model(self, name: Optional[str]) -> SegmentationModel:
        # Load outside the lock so in-flight calls keep running on the old model.
        model = load_model(name, models_dir=self.models_dir)
        with self._model_lock:
            self._model = model
            self._model_name = name
        return model

    def set_model(self, model: SegmentationModel) -> None:
        with self._model_lock:
            self._model = model
            self._model_name = model.name

    def process(
        self,
        source: ImageSource,
        settings: CutoutSettings,
        preserve_color_metadata: bool = False,
    ) -> CutoutResult:
        t0 = time.perf_counter()
        decoded = load_image(source)
        result = self.process_decoded(decoded, settings)
        logger.info(
            "Processed image %dx%d in %.3fs (confidence=%.2f, warnings=%d)",
            decoded.pixels.shape[1],
            decoded.pixels.shape[0],
            time.perf_counter() - t0,
            result.confidence,
            len(result.warnings),
        )
        if preserve_color_metadata:
            result.exif = decoded.exif
            result.icc_profile = decoded.icc_profile
        return result

    def process_decoded(self, decoded: DecodedImage, settings: CutoutSettings) -> CutoutResult:
        model = self.model
        warnings: List[str] = []

        image = decoded.pixels
        if settings.auto_white_balance:
            image = transforms.auto_white_balance(image)
        h, w = image.shape[:2]

        # Inference-size cap.
        seg_input, scale = transforms.downscale_to_max(image, MAX_INFERENCE_DIMENSION)
        if scale != 1.0:
            logger.debug("Downscaled %dx%d by %.4f for inference (inverse %.4f)", w, h, scale, 1.0 / scale)

        mask = model.predict_mask(seg_input)
        if not model.is_available:
            warnings.append(UNAVAILABLE_MODEL_WARNING)
        if mask is None:
            mask = np.ones((h, w), dtype=np.float32)
        mask = transforms.resize_mask(mask, w, h)

        mask = refine_mask(mask, settings)

        coverage = coverage_ratio(mask)
        confidence = _clamp(coverage, MIN_CONFIDENCE, MAX_CONFIDENCE)
        if confidence < settings.confidence_threshold:
            warnings.append(f"Low confidence segmentation result ({confidence:.2f}).")

        output = transforms.apply_mask(image, mask)
        output, mask = self._frame(output, mask, settings)

        if settings.background_option == BackgroundOption.WHITE:
            output = transforms.add_white_background(output)

        shadow = None
        if settings.shadow_mode != ShadowMode.NONE:
            radius = SOFT_SHADOW_RADIUS if settings.shadow_mode == ShadowMode.SOFT else PRESERVED_SHADOW_RADIUS
            if settings.preserve_shadow_layer:
                shadow = transforms.shadow_layer(output, SHADOW_LAYER_RADIUS)
            output = transforms.add_shadow(output, radius)

        if coverage * 100.0 < settings.min_object_size_percent:
            warnings.append(SMALL_OBJECT_WARNING)

        return CutoutResult(output=output, mask=mask, confidence=confidence, warnings=warnings, shadow_layer=shadow)

    @staticmethod
    def _frame(output: np.ndarray, mask: np.ndarray, settings: CutoutSettings):
        """Auto-crop around visible pixels, or pad uniformly when cropping is off or finds nothing."""
        if settings.auto_crop:
            box = bounding_box_of_visible_pixels(mask, CROP_ALPHA_THRESHOLD)
            if box is not None:
                h, w = mask.shape[:2]
                rect = transforms.pad_rect(box, settings.padding_percent, w, h)
                return transforms.crop(output, rect), transforms.crop(mask, rect)
        return (
            transforms.add_padding(output, settings.padding_percent),
            transforms.add_padding(mask, settings.padding_percent),
        )
