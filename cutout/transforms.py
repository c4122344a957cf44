from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

import cv2
import numpy as np

from .config import COMPONENT_ALPHA_THRESHOLD, DESPECKLE_RADIUS, SHADOW_OPACITY
from .raster import Rect


@dataclass(frozen=True)
class LetterboxMeta:
    """Metadata required to map letterboxed outputs back to original image space."""

    orig_h: int
    orig_w: int
    resized_h: int
    resized_w: int
    scale: float
    x_offset: int
    y_offset: int


def _as_mask(mask: np.ndarray) -> np.ndarray:
    if mask.ndim != 2:
        raise ValueError(f"Expected 2D mask, got shape={mask.shape}")
    return np.clip(mask.astype(np.float32, copy=False), 0.0, 1.0)


def gaussian_blur(mask: np.ndarray, radius: float) -> np.ndarray:
    """
    Gaussian blur with sigma == radius. radius <= 0 is a no-op.
    """
    m = _as_mask(mask)
    if radius <= 0:
        return m
    out = cv2.GaussianBlur(m, (0, 0), sigmaX=float(radius), sigmaY=float(radius))
    return np.clip(out, 0.0, 1.0).astype(np.float32, copy=False)


# Feathering is a blur over the mask edges.
feather = gaussian_blur


def clamp_threshold(mask: np.ndarray, value: float) -> np.ndarray:
    """
    Hard clamp: values below `value` become 0, values in [value, 1] pass through.
    """
    m = _as_mask(mask)
    return np.where(m >= float(value), m, 0.0).astype(np.float32, copy=False)


def despeckle(mask: np.ndarray, radius: int = DESPECKLE_RADIUS) -> np.ndarray:
    """
    Morphological open (erode then dilate) to drop isolated speckles.
    """
    m = _as_mask(mask)
    r = int(radius)
    if r <= 0:
        return m
    kernel = np.ones((2 * r + 1, 2 * r + 1), np.uint8)
    return cv2.morphologyEx(m, cv2.MORPH_OPEN, kernel).astype(np.float32, copy=False)


def largest_connected_component(mask: np.ndarray, threshold: float = COMPONENT_ALPHA_THRESHOLD) -> np.ndarray:
    """
    Keep the dominant connected component (product) and remove small dust blobs.
    """
    m = _as_mask(mask)
    binary = (m > float(threshold)).astype(np.uint8)
    if int(binary.sum()) == 0:
        return m

    num_labels, labels, stats, _centroids = cv2.connectedComponentsWithStats(binary, connectivity=8)
    if num_labels <= 2:
        return m

    # label 0 is background
    areas = stats[1:, cv2.CC_STAT_AREA]
    keep_label = int(np.argmax(areas) + 1)
    keep = (labels == keep_label).astype(np.float32)
    return (m * keep).astype(np.float32, copy=False)


def apply_mask(image: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """
    Straight-alpha composite onto full transparency: RGB kept, alpha = mask (x source alpha).
    """
    if image.ndim != 3 or image.shape[2] not in (3, 4):
        raise ValueError(f"Expected RGB(A) image (H,W,3|4), got {image.shape}")
    m = _as_mask(mask)
    if m.shape != image.shape[:2]:
        raise ValueError(f"Mask shape {m.shape} does not match image {image.shape[:2]}")

    if image.shape[2] == 4:
        m = m * (image[..., 3].astype(np.float32) / 255.0)
    a8 = (m * 255.0).astype(np.uint8)
    return np.dstack([image[..., :3], a8])


def pad_rect(rect: Rect, percent: float, width: int, height: int) -> Rect:
    """
    Grow `rect` by percent% of its own width/height on each side, then clip to the image.
    """
    dx = rect.width * float(percent) / 100.0
    dy = rect.height * float(percent) / 100.0
    return Rect(
        x0=max(0, int(math.floor(rect.x0 - dx))),
        y0=max(0, int(math.floor(rect.y0 - dy))),
        x1=min(width, int(math.ceil(rect.x1 + dx))),
        y1=min(height, int(math.ceil(rect.y1 + dy))),
    )


def crop(image: np.ndarray, rect: Rect) -> np.ndarray:
    return image[rect.y0 : rect.y1, rect.x0 : rect.x1].copy()


def padding_amount(width: int, height: int, percent: float) -> Tuple[int, int]:
    """(pad_x, pad_y) in pixels added on each side for a uniform percent padding."""
    if percent <= 0:
        return 0, 0
    return int(round(width * percent / 100.0)), int(round(height * percent / 100.0))


def add_padding(image: np.ndarray, percent: float) -> np.ndarray:
    """
    Uniform transparent (zero) padding of percent% of the extent on every side.
    Works for RGBA images and 2D masks.
    """
    h, w = image.shape[:2]
    pad_x, pad_y = padding_amount(w, h, percent)
    if pad_x == 0 and pad_y == 0:
        return image
    widths = [(pad_y, pad_y), (pad_x, pad_x)] + [(0, 0)] * (image.ndim - 2)
    return np.pad(image, widths, mode="constant", constant_values=0)


def alpha_composite(top: np.ndarray, bottom: np.ndarray) -> np.ndarray:
    """
    Porter-Duff "over" for straight-alpha RGBA uint8 arrays of the same extent.
    """
    if top.shape != bottom.shape or top.shape[-1] != 4:
        raise ValueError(f"Expected matching RGBA arrays, got {top.shape} and {bottom.shape}")
    ta = top[..., 3:4].astype(np.float32) / 255.0
    ba = bottom[..., 3:4].astype(np.float32) / 255.0
    out_a = ta + ba * (1.0 - ta)
    num = top[..., :3].astype(np.float32) * ta + bottom[..., :3].astype(np.float32) * ba * (1.0 - ta)
    rgb = np.divide(num, out_a, out=np.zeros_like(num), where=out_a > 0)
    out = np.dstack([rgb, out_a * 255.0])
    return np.clip(np.round(out), 0, 255).astype(np.uint8)


def add_white_background(image: np.ndarray) -> np.ndarray:
    white = np.full_like(image, 255)
    return alpha_composite(image, white)


def shadow_layer(image: np.ndarray, radius: float, opacity: float = SHADOW_OPACITY) -> np.ndarray:
    """
    Shadow-only RGBA layer: black, alpha = blurred source alpha x opacity.
    """
    alpha = image[..., 3].astype(np.float32) / 255.0
    blurred = gaussian_blur(alpha, radius)
    a8 = np.clip(np.round(blurred * float(opacity) * 255.0), 0, 255).astype(np.uint8)
    layer = np.zeros_like(image)
    layer[..., 3] = a8
    return layer


def add_shadow(image: np.ndarray, radius: float, opacity: float = SHADOW_OPACITY) -> np.ndarray:
    return alpha_composite(image, shadow_layer(image, radius, opacity))


def resize_mask(mask: np.ndarray, width: int, height: int) -> np.ndarray:
    m = _as_mask(mask)
    if m.shape == (height, width):
        return m
    out = cv2.resize(m, (int(width), int(height)), interpolation=cv2.INTER_LINEAR)
    return np.clip(out, 0.0, 1.0).astype(np.float32, copy=False)


def downscale_to_max(image: np.ndarray, max_dimension: int) -> Tuple[np.ndarray, float]:
    """
    Shrink so the longer edge equals `max_dimension`; returns (image, scale). scale == 1.0 if untouched.
    """
    h, w = image.shape[:2]
    longest = max(h, w)
    if longest <= max_dimension:
        return image, 1.0
    scale = float(max_dimension) / float(longest)
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    return cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_AREA), scale


def resize_with_letterbox(
    image: np.ndarray,
    target_w: int,
    target_h: int,
    pad_value: int = 0,
) -> Tuple[np.ndarray, LetterboxMeta]:
    """
    Aspect-safe resize to fit within (target_w, target_h), then pad (centered) to exactly that size.
    """
    if image.ndim != 3:
        raise ValueError(f"Expected (H,W,C) image, got shape={image.shape}")
    orig_h, orig_w = image.shape[:2]
    if orig_h <= 0 or orig_w <= 0:
        raise ValueError(f"Invalid image size: {(orig_h, orig_w)}")

    scale = min(float(target_w) / orig_w, float(target_h) / orig_h)
    resized_w = max(1, min(target_w, int(round(orig_w * scale))))
    resized_h = max(1, min(target_h, int(round(orig_h * scale))))
    resized = cv2.resize(
        image, (resized_w, resized_h), interpolation=cv2.INTER_AREA if scale < 1 else cv2.INTER_CUBIC
    )
    if resized.ndim == 2:
        resized = resized[..., None]

    padded = np.full((target_h, target_w, image.shape[2]), pad_value, dtype=image.dtype)
    x_offset = (target_w - resized_w) // 2
    y_offset = (target_h - resized_h) // 2
    padded[y_offset : y_offset + resized_h, x_offset : x_offset + resized_w] = resized

    meta = LetterboxMeta(
        orig_h=orig_h,
        orig_w=orig_w,
        resized_h=resized_h,
        resized_w=resized_w,
        scale=scale,
        x_offset=x_offset,
        y_offset=y_offset,
    )
    return padded, meta


def restore_from_letterbox(mask: np.ndarray, meta: LetterboxMeta) -> np.ndarray:
    """
    Undo resize_with_letterbox on a mask: drop the padding, resize back to the original extent.
    """
    m = _as_mask(mask)
    cropped = m[meta.y_offset : meta.y_offset + meta.resized_h, meta.x_offset : meta.x_offset + meta.resized_w]
    if cropped.size == 0:
        raise ValueError("Mask crop is empty; check letterbox meta.")
    return resize_mask(cropped, meta.orig_w, meta.orig_h)


def auto_white_balance(image: np.ndarray) -> np.ndarray:
    """
    Gray-world white balance on the RGB channels; alpha (if any) is left untouched.
    """
    rgb = image[..., :3].astype(np.float32)
    means = rgb.reshape(-1, 3).mean(axis=0)
    gray = float(means.mean())
    gains = np.divide(gray, means, out=np.ones_like(means), where=means > 0)
    balanced = np.clip(rgb * gains.reshape(1, 1, 3), 0, 255).astype(np.uint8)
    if image.shape[2] == 4:
        return np.dstack([balanced, image[..., 3]])
    return balanced


def difference_image(original: np.ndarray, processed: np.ndarray) -> np.ndarray:
    """Per-channel |original - processed| for before/after review."""
    if original.shape != processed.shape:
        raise ValueError(f"Shape mismatch: {original.shape} vs {processed.shape}")
    return cv2.absdiff(original, processed)
