"""
Pixel scans over decoded masks.

All functions accept:
  - float mask (H, W) in [0,1]
  - uint8 mask (H, W)
  - uint8 RGBA image (H, W, 4), alpha channel is used

and are single vectorized passes; row order never affects the result.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .config import COVERAGE_ALPHA_BYTE, OPAQUE_ALPHA, SEMI_TRANSPARENT_LOW


@dataclass(frozen=True)
class Rect:
    """Pixel rectangle; x1/y1 are exclusive."""

    x0: int
    y0: int
    x1: int
    y1: int

    @property
    def width(self) -> int:
        return self.x1 - self.x0

    @property
    def height(self) -> int:
        return self.y1 - self.y0


def alpha_bytes(image: np.ndarray) -> np.ndarray:
    """
    Return the alpha plane as uint8 (H, W).
    """
    if image.ndim == 3:
        if image.shape[2] != 4:
            raise ValueError(f"Expected RGBA image (H,W,4), got {image.shape}")
        a = image[..., 3]
    elif image.ndim == 2:
        a = image
    else:
        raise ValueError(f"Expected 2D mask or RGBA image, got shape={image.shape}")

    if a.dtype == np.uint8:
        return a
    return (np.clip(a.astype(np.float32, copy=False), 0.0, 1.0) * 255.0).astype(np.uint8)


def alpha_float(image: np.ndarray) -> np.ndarray:
    return alpha_bytes(image).astype(np.float64) / 255.0


def coverage_ratio(image: np.ndarray) -> float:
    a8 = alpha_bytes(image)
    if a8.size == 0:
        return 0.0
    return float(np.count_nonzero(a8 > COVERAGE_ALPHA_BYTE)) / float(a8.size)


def bounding_box_of_visible_pixels(image: np.ndarray, threshold: float) -> Optional[Rect]:
    """
    Tight box around alpha/255 > threshold, or None if no pixel qualifies.
    """
    a = alpha_float(image)
    ys, xs = np.where(a > float(threshold))
    if ys.size == 0 or xs.size == 0:
        return None
    return Rect(x0=int(xs.min()), y0=int(ys.min()), x1=int(xs.max()) + 1, y1=int(ys.max()) + 1)


def edge_smoothness_and_artifacts(mask: np.ndarray) -> Tuple[float, float, float]:
    """
    Returns (smoothness, transparency_artifact_ratio, confidence).

    Edge energy is horizontal only: sum |a(x,y) - a(x+1,y)|.
    """
    a = alpha_float(mask)
    pixel_count = a.size
    if pixel_count == 0:
        return 0.0, 0.0, 0.0

    edge_energy = float(np.abs(np.diff(a, axis=1)).sum()) if a.shape[1] > 1 else 0.0
    smoothness = max(0.0, 1.0 - edge_energy / pixel_count)

    semi = np.count_nonzero((a > SEMI_TRANSPARENT_LOW) & (a < OPAQUE_ALPHA))
    opaque = np.count_nonzero(a > OPAQUE_ALPHA)
    return smoothness, float(semi) / pixel_count, float(opaque) / pixel_count
