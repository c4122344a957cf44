from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import numpy as np
import pytest
from PIL import Image

from cutout.config import SMALL_OBJECT_WARNING, UNAVAILABLE_MODEL_WARNING
from cutout.errors import ImageLoadError
from cutout.io import DecodedImage, load_image, save_rgba_png
from cutout.pipeline import CutoutPipeline, effective_feather_radius, effective_threshold, refine_mask
from cutout.segmentation import SegmentationModel
from cutout.settings import BackgroundOption, CutoutSettings, ShadowMode


@dataclass
class _FakeModel(SegmentationModel):
    mask_fn: Callable[[np.ndarray], Optional[np.ndarray]]
    available: bool = True
    name: str = "fake"
    seen_shapes: List[Tuple[int, ...]] = field(default_factory=list)

    @property
    def is_available(self) -> bool:
        return self.available

    def predict_mask(self, image):
        self.seen_shapes.append(image.shape)
        return self.mask_fn(image)


def _zeros(image):
    return np.zeros(image.shape[:2], dtype=np.float32)


def _ones(image):
    return np.ones(image.shape[:2], dtype=np.float32)


def _center_box(image):
    h, w = image.shape[:2]
    m = np.zeros((h, w), dtype=np.float32)
    m[h // 5 : h - h // 5, w // 5 : w - w // 5] = 1.0
    return m


# Refinement off so mask geometry is exact.
CRISP = CutoutSettings(feather_radius=0.0, despeckle=False, edge_smoothing=False, padding_percent=10.0)


def _decoded(h: int = 100, w: int = 100) -> DecodedImage:
    rng = np.random.default_rng(7)
    return DecodedImage(pixels=rng.integers(0, 256, size=(h, w, 3), dtype=np.uint8))


def _jpeg_bytes(w: int = 20, h: int = 10, orientation: Optional[int] = None) -> bytes:
    img = Image.new("RGB", (w, h), (200, 30, 30))
    buf = io.BytesIO()
    if orientation is None:
        img.save(buf, format="JPEG")
    else:
        exif = Image.Exif()
        exif[0x0112] = orientation
        img.save(buf, format="JPEG", exif=exif.tobytes())
    return buf.getvalue()


def test_empty_mask_floors_confidence_and_pads_instead_of_cropping():
    pipeline = CutoutPipeline(_FakeModel(_zeros))
    result = pipeline.process_decoded(_decoded(50, 100), CutoutSettings())

    assert result.confidence == pytest.approx(0.05)
    # 8% of 100x50 on every side
    assert result.output.shape == (50 + 2 * 4, 100 + 2 * 8, 4)
    assert result.mask.shape == result.output.shape[:2]
    assert "Low confidence segmentation result (0.05)." in result.warnings
    assert SMALL_OBJECT_WARNING in result.warnings
    assert UNAVAILABLE_MODEL_WARNING not in result.warnings


def test_auto_crop_frames_the_object_with_padding():
    result = CutoutPipeline(_FakeModel(_center_box)).process_decoded(_decoded(), CRISP)
    # box 20..80 grown by 10% of 60 on each side
    assert result.output.shape == (72, 72, 4)
    assert result.output[36, 36, 3] == 255
    assert result.output[0, 0, 3] == 0


def test_auto_crop_off_pads_full_frame():
    settings = CRISP.model_copy(update={"auto_crop": False})
    result = CutoutPipeline(_FakeModel(_center_box)).process_decoded(_decoded(), settings)
    assert result.output.shape == (120, 120, 4)


def test_unavailable_model_degrades_with_warning():
    result = CutoutPipeline().process_decoded(_decoded(), CutoutSettings())
    assert result.warnings[0] == UNAVAILABLE_MODEL_WARNING
    assert result.confidence == 1.0
    assert result.output.shape == (100, 100, 4)
    assert result.output[..., 3].min() >= 254


def test_missing_mask_is_treated_as_opaque():
    result = CutoutPipeline(_FakeModel(lambda image: None)).process_decoded(_decoded(), CutoutSettings())
    assert result.confidence == 1.0
    assert result.warnings == []


def test_large_images_are_downscaled_for_inference_only():
    model = _FakeModel(_ones)
    result = CutoutPipeline(model).process_decoded(_decoded(10, 5000), CutoutSettings())
    assert max(model.seen_shapes[0][:2]) == 4096
    assert result.output.shape == (10, 5000, 4)


def test_white_background_is_fully_opaque():
    settings = CRISP.model_copy(update={"background_option": BackgroundOption.WHITE})
    result = CutoutPipeline(_FakeModel(_center_box)).process_decoded(_decoded(), settings)
    assert np.all(result.output[..., 3] == 255)
    np.testing.assert_array_equal(result.output[0, 0, :3], (255, 255, 255))


@pytest.mark.parametrize("mode", [ShadowMode.SOFT, ShadowMode.PRESERVED])
def test_shadow_layer_only_when_requested(mode):
    pipeline = CutoutPipeline(_FakeModel(_center_box))
    plain = pipeline.process_decoded(_decoded(), CRISP.model_copy(update={"shadow_mode": mode}))
    assert plain.shadow_layer is None
    assert plain.output[2, 36, 3] > 0

    kept = pipeline.process_decoded(
        _decoded(), CRISP.model_copy(update={"shadow_mode": mode, "preserve_shadow_layer": True})
    )
    assert kept.shadow_layer is not None
    assert kept.shadow_layer.shape == kept.output.shape
    assert np.all(kept.shadow_layer[..., :3] == 0)


def test_processing_is_deterministic():
    pipeline = CutoutPipeline(_FakeModel(_center_box))
    a = pipeline.process_decoded(_decoded(), CutoutSettings())
    b = pipeline.process_decoded(_decoded(), CutoutSettings())
    np.testing.assert_array_equal(a.output, b.output)
    np.testing.assert_array_equal(a.mask, b.mask)
    assert a.confidence == b.confidence
    assert a.warnings == b.warnings


def test_undecodable_source_raises_image_load_error():
    with pytest.raises(ImageLoadError) as exc:
        CutoutPipeline().process(b"this is not an image", CutoutSettings())
    assert exc.value.retryable is False


def test_exif_orientation_is_applied_on_load():
    decoded = load_image(_jpeg_bytes(20, 10, orientation=6))
    assert decoded.pixels.shape == (20, 10, 3)
    assert decoded.exif is not None
    assert decoded.has_alpha is False


def test_color_metadata_is_carried_only_when_asked():
    data = _jpeg_bytes(orientation=1)
    pipeline = CutoutPipeline(_FakeModel(_ones))
    assert pipeline.process(data, CutoutSettings()).exif is None
    assert pipeline.process(data, CutoutSettings(), preserve_color_metadata=True).exif is not None


def test_saved_png_is_rgba(tmp_path):
    result = CutoutPipeline(_FakeModel(_center_box)).process_decoded(_decoded(), CRISP)
    out = tmp_path / "nested" / "cutout.png"
    size = save_rgba_png(result.output, out)
    assert size == out.stat().st_size
    with Image.open(out) as img:
        assert img.mode == "RGBA"
        assert img.size == result.size


def test_set_model_swaps_reference():
    pipeline = CutoutPipeline()
    assert pipeline.model_name is None
    fake = _FakeModel(_ones, name="swapped")
    pipeline.set_model(fake)
    assert pipeline.model is fake
    assert pipeline.model_name == "swapped"


def test_refine_with_zero_threshold_and_no_filters_is_identity():
    settings = CutoutSettings(
        threshold=0.0,
        feather_radius=0.0,
        despeckle=False,
        keep_largest_object_only=False,
        edge_smoothing=False,
    )
    mask = np.random.default_rng(3).random((32, 32)).astype(np.float32)
    np.testing.assert_array_equal(refine_mask(mask, settings), mask)


def test_refine_with_full_threshold_keeps_only_opaque():
    settings = CutoutSettings(
        threshold=1.0,
        edge_quality=0.5,
        feather_radius=0.0,
        despeckle=False,
        keep_largest_object_only=False,
        edge_smoothing=False,
    )
    mask = np.array([[0.2, 0.99, 1.0, 1.0]], dtype=np.float32)
    np.testing.assert_array_equal(refine_mask(mask, settings), [[0.0, 0.0, 1.0, 1.0]])


def test_effective_feather_and_threshold():
    assert effective_feather_radius(CutoutSettings(feather_radius=2.0, edge_quality=1.0)) == pytest.approx(2.0)
    assert effective_feather_radius(CutoutSettings(feather_radius=2.0, edge_quality=0.5)) == pytest.approx(3.0)
    assert effective_feather_radius(CutoutSettings(feather_radius=0.0, hair_edge_mode=True)) == pytest.approx(4.0)
    assert effective_feather_radius(CutoutSettings(feather_radius=0.0, glass_handling_mode=True)) == pytest.approx(3.0)
    assert effective_threshold(CutoutSettings(threshold=0.5, edge_quality=0.7)) == pytest.approx(0.52)
    glass = CutoutSettings(threshold=0.5, edge_quality=0.7, glass_handling_mode=True)
    assert effective_threshold(glass) == pytest.approx(0.5 * 0.85 * 1.04)
