from __future__ import annotations

import numpy as np
import pytest

from cutout import transforms
from cutout.raster import Rect


def _box_mask(h: int = 40, w: int = 40) -> np.ndarray:
    m = np.zeros((h, w), dtype=np.float32)
    m[10:30, 10:30] = 1.0
    return m


def test_threshold_zero_is_noop():
    m = np.random.default_rng(1).random((12, 12)).astype(np.float32)
    np.testing.assert_array_equal(transforms.clamp_threshold(m, 0.0), m)


def test_threshold_one_keeps_only_opaque():
    m = np.array([[0.0, 0.5, 0.99, 1.0]], dtype=np.float32)
    np.testing.assert_array_equal(transforms.clamp_threshold(m, 1.0), [[0.0, 0.0, 0.0, 1.0]])


def test_threshold_passes_values_through_unchanged():
    m = np.array([[0.2, 0.6, 0.8]], dtype=np.float32)
    np.testing.assert_allclose(transforms.clamp_threshold(m, 0.5), [[0.0, 0.6, 0.8]])


def test_zero_radius_blur_is_noop():
    m = _box_mask()
    np.testing.assert_array_equal(transforms.gaussian_blur(m, 0), m)


def test_blur_softens_edges():
    out = transforms.feather(_box_mask(), 2.0)
    assert 0.0 < out[20, 10] < 1.0
    assert out.max() <= 1.0


def test_despeckle_removes_isolated_pixels():
    m = _box_mask()
    m[2, 2] = 1.0
    out = transforms.despeckle(m)
    assert out[2, 2] == 0.0
    np.testing.assert_array_equal(out[10:30, 10:30], 1.0)


def test_largest_component_drops_smaller_blobs():
    m = _box_mask()
    m[33:37, 33:37] = 1.0
    out = transforms.largest_connected_component(m)
    assert out[35, 35] == 0.0
    assert out[20, 20] == 1.0


def test_apply_mask_sets_alpha():
    rgb = np.full((40, 40, 3), 200, dtype=np.uint8)
    out = transforms.apply_mask(rgb, _box_mask())
    assert out.shape == (40, 40, 4)
    assert out[20, 20, 3] == 255
    assert out[0, 0, 3] == 0
    np.testing.assert_array_equal(out[..., :3], rgb)


def test_apply_mask_rejects_mismatched_mask():
    with pytest.raises(ValueError):
        transforms.apply_mask(np.zeros((10, 10, 3), dtype=np.uint8), np.zeros((5, 5), dtype=np.float32))


def test_pad_rect_grows_by_own_size_and_clips():
    rect = transforms.pad_rect(Rect(10, 10, 30, 30), 10, 40, 40)
    assert rect == Rect(8, 8, 32, 32)
    assert transforms.pad_rect(Rect(0, 0, 40, 40), 50, 40, 40) == Rect(0, 0, 40, 40)


def test_add_padding_extent():
    rgba = np.zeros((50, 100, 4), dtype=np.uint8)
    assert transforms.add_padding(rgba, 10).shape == (60, 120, 4)
    assert transforms.add_padding(np.zeros((50, 100), dtype=np.float32), 10).shape == (60, 120)
    assert transforms.add_padding(rgba, 0).shape == (50, 100, 4)


def test_white_background_is_opaque():
    rgba = np.zeros((4, 4, 4), dtype=np.uint8)
    rgba[1, 1] = (10, 20, 30, 255)
    out = transforms.add_white_background(rgba)
    np.testing.assert_array_equal(out[..., 3], 255)
    np.testing.assert_array_equal(out[0, 0], (255, 255, 255, 255))
    np.testing.assert_array_equal(out[1, 1], (10, 20, 30, 255))


def test_shadow_layer_is_black_and_faint():
    rgba = transforms.apply_mask(np.full((40, 40, 3), 255, dtype=np.uint8), _box_mask())
    layer = transforms.shadow_layer(rgba, 4.0)
    np.testing.assert_array_equal(layer[..., :3], 0)
    assert layer[..., 3].max() <= int(round(0.35 * 255))
    assert layer[20, 20, 3] > 0


def test_add_shadow_keeps_foreground():
    rgba = transforms.apply_mask(np.full((40, 40, 3), 255, dtype=np.uint8), _box_mask())
    out = transforms.add_shadow(rgba, 8.0)
    np.testing.assert_array_equal(out[20, 20], (255, 255, 255, 255))
    assert out[8, 20, 3] > 0


def test_downscale_to_max_caps_longer_edge():
    img = np.zeros((100, 5000, 3), dtype=np.uint8)
    out, scale = transforms.downscale_to_max(img, 4096)
    assert out.shape[1] == 4096
    assert scale == pytest.approx(4096 / 5000)
    same, unit = transforms.downscale_to_max(img[:, :300], 4096)
    assert unit == 1.0 and same.shape == (100, 300, 3)


@pytest.mark.parametrize("h,w", [(256, 1024), (1024, 256), (800, 800)])
def test_letterbox_round_trip_shapes(h, w):
    img = np.zeros((h, w, 3), dtype=np.uint8)
    padded, meta = transforms.resize_with_letterbox(img, 512, 512, pad_value=127)
    assert padded.shape == (512, 512, 3)
    assert meta.resized_h <= 512 and meta.resized_w <= 512
    if h == w:
        assert meta.x_offset == meta.y_offset

    restored = transforms.restore_from_letterbox(np.ones((512, 512), dtype=np.float32), meta)
    assert restored.shape == (h, w)
    assert np.isfinite(restored).all()


def test_auto_white_balance_neutralizes_cast():
    img = np.zeros((8, 8, 3), dtype=np.uint8)
    img[...] = (200, 100, 100)
    out = transforms.auto_white_balance(img).astype(np.float32)
    means = out.reshape(-1, 3).mean(axis=0)
    assert means.max() - means.min() < 2.0


def test_auto_white_balance_keeps_alpha():
    img = np.full((4, 4, 4), 90, dtype=np.uint8)
    img[..., 3] = 17
    np.testing.assert_array_equal(transforms.auto_white_balance(img)[..., 3], 17)


def test_difference_image():
    a = np.full((4, 4, 3), 100, dtype=np.uint8)
    b = a.copy()
    b[0, 0] = (90, 110, 100)
    diff = transforms.difference_image(a, b)
    np.testing.assert_array_equal(diff[0, 0], (10, 10, 0))
    assert diff[1:, 1:].sum() == 0
