from __future__ import annotations

import io
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Union

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import ImageLoadError, WriteError

ImageSource = Union[str, os.PathLike, bytes, BinaryIO, Image.Image]

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".bmp", ".tif", ".tiff"}


@dataclass(frozen=True)
class DecodedImage:
    """
    Decoded source pixels plus the metadata blocks we may carry into the output.

    - pixels: uint8 (H, W, 3) RGB or (H, W, 4) RGBA, orientation already applied
    """

    pixels: np.ndarray
    exif: Optional[bytes] = None
    icc_profile: Optional[bytes] = None

    @property
    def has_alpha(self) -> bool:
        return self.pixels.shape[2] == 4


def _open(source: ImageSource) -> Image.Image:
    if isinstance(source, Image.Image):
        return source
    if isinstance(source, (bytes, bytearray)):
        return Image.open(io.BytesIO(source))
    return Image.open(source)


def load_image(source: ImageSource) -> DecodedImage:
    """
    Decode a source into RGB(A) uint8, applying the stored EXIF orientation.
    """
    try:
        img = _open(source)
        img.load()
        exif = img.info.get("exif")
        icc = img.info.get("icc_profile")
        img = ImageOps.exif_transpose(img)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise ImageLoadError(f"Could not read image: {_describe(source)} ({e})") from e

    has_alpha = img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info)
    img = img.convert("RGBA" if has_alpha else "RGB")
    pixels = np.array(img, dtype=np.uint8)
    if pixels.ndim != 3 or pixels.shape[0] == 0 or pixels.shape[1] == 0:
        raise ImageLoadError(f"Decoded image has invalid shape {pixels.shape}: {_describe(source)}")
    return DecodedImage(pixels=pixels, exif=exif, icc_profile=icc)


def _describe(source: ImageSource) -> str:
    if isinstance(source, (str, os.PathLike)):
        return os.path.basename(os.fspath(source))
    return type(source).__name__


def save_rgba_png(
    rgba: np.ndarray,
    out_path: Union[str, os.PathLike],
    *,
    exif: Optional[bytes] = None,
    icc_profile: Optional[bytes] = None,
    compress_level: int = 6,
) -> int:
    """
    Save as lossless RGBA PNG and return the written byte size.
    """
    if rgba.ndim != 3 or rgba.shape[2] != 4:
        raise WriteError(f"Expected RGBA image (H,W,4), got {rgba.shape}")
    params = {"format": "PNG", "compress_level": int(compress_level)}
    if exif:
        params["exif"] = exif
    if icc_profile:
        params["icc_profile"] = icc_profile
    try:
        p = Path(out_path)
        p.parent.mkdir(parents=True, exist_ok=True)
        Image.fromarray(np.ascontiguousarray(rgba, dtype=np.uint8)).save(str(p), **params)
        return p.stat().st_size
    except OSError as e:
        raise WriteError(f"Failed to write {out_path}: {e}") from e


def save_mask_png(mask: np.ndarray, out_path: Union[str, os.PathLike]) -> int:
    """Save a float [0,1] mask as an 8-bit grayscale PNG."""
    a8 = (np.clip(mask, 0.0, 1.0) * 255.0).astype(np.uint8)
    try:
        p = Path(out_path)
        p.parent.mkdir(parents=True, exist_ok=True)
        Image.fromarray(a8).save(str(p), format="PNG")
        return p.stat().st_size
    except OSError as e:
        raise WriteError(f"Failed to write {out_path}: {e}") from e


def iter_images(input_dir: Path, recursive: bool = True) -> Iterator[Path]:
    pattern = "**/*" if recursive else "*"
    for p in sorted(input_dir.glob(pattern)):
        if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS:
            yield p
