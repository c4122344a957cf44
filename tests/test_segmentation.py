from __future__ import annotations

from types import SimpleNamespace

import numpy as np
import pytest
import torch

from cutout.errors import InferenceError
from cutout.segmentation import (
    NeuralModel,
    StubModel,
    _extract_primary_output,
    load_model,
    resolve_model_path,
)


class _ConstLogits(torch.nn.Module):
    def __init__(self, value: float, size=None):
        super().__init__()
        self.value = value
        self.size = size

    def forward(self, x):
        h, w = self.size or (x.shape[2], x.shape[3])
        return torch.full((x.shape[0], 1, h, w), self.value)


class _DeepSupervision(torch.nn.Module):
    def forward(self, x):
        shape = (x.shape[0], 1, x.shape[2], x.shape[3])
        return (torch.full(shape, -10.0), torch.full(shape, 10.0))


class _NoTensor(torch.nn.Module):
    def forward(self, x):
        return {"status": "ok"}


class _Broken(torch.nn.Module):
    def forward(self, x):
        raise RuntimeError("backend exploded")


def _cpu_model(module) -> NeuralModel:
    return NeuralModel(module, torch.device("cpu"), name="test")


def _image(h: int = 30, w: int = 40) -> np.ndarray:
    return np.full((h, w, 3), 128, dtype=np.uint8)


def test_stub_model_is_unavailable_and_opaque():
    stub = StubModel()
    assert stub.is_available is False
    mask = stub.predict_mask(_image())
    assert mask.shape == (30, 40)
    assert mask.dtype == np.float32
    assert np.all(mask == 1.0)


def test_neural_model_restores_input_extent():
    mask = _cpu_model(_ConstLogits(10.0)).predict_mask(_image(30, 40))
    assert mask.shape == (30, 40)
    assert mask.min() > 0.99


def test_neural_model_upsamples_low_res_output():
    mask = _cpu_model(_ConstLogits(0.0, size=(64, 64))).predict_mask(_image(50, 20))
    assert mask.shape == (50, 20)
    np.testing.assert_allclose(mask, 0.5, atol=1e-4)


def test_neural_model_uses_final_stage_of_tuple_output():
    mask = _cpu_model(_DeepSupervision()).predict_mask(_image())
    assert mask.min() > 0.99


def test_neural_model_ignores_alpha_channel():
    rgba = np.zeros((16, 16, 4), dtype=np.uint8)
    assert _cpu_model(_ConstLogits(10.0)).predict_mask(rgba).shape == (16, 16)


def test_neural_model_returns_none_without_tensor_output():
    assert _cpu_model(_NoTensor()).predict_mask(_image()) is None


def test_neural_model_wraps_backend_failure():
    with pytest.raises(InferenceError) as exc:
        _cpu_model(_Broken()).predict_mask(_image())
    assert exc.value.retryable is True
    assert "backend exploded" in exc.value.message


def test_neural_model_rejects_nan_output():
    with pytest.raises(InferenceError):
        _cpu_model(_ConstLogits(float("nan"))).predict_mask(_image())


def test_extract_primary_output_variants():
    t = torch.zeros(1, 1, 2, 2)
    assert _extract_primary_output(t) is t
    assert _extract_primary_output(SimpleNamespace(logits=t)) is t
    assert _extract_primary_output({"pred": t}) is t
    assert _extract_primary_output([t, "not-a-tensor"]) is t
    assert _extract_primary_output("nothing") is None


@pytest.mark.parametrize("name", [None, "", "stub"])
def test_load_model_stub_names(name):
    assert isinstance(load_model(name), StubModel)


def test_load_model_falls_back_to_stub_when_missing(tmp_path, monkeypatch):
    monkeypatch.delenv("CUTOUT_MODELS_DIR", raising=False)
    model = load_model("no-such-model", models_dir=str(tmp_path))
    assert isinstance(model, StubModel)
    assert model.is_available is False


def test_load_model_falls_back_to_stub_on_corrupt_asset(tmp_path):
    (tmp_path / "broken.pt").write_bytes(b"definitely not torchscript")
    assert isinstance(load_model("broken", models_dir=str(tmp_path)), StubModel)


def test_resolve_model_path(tmp_path):
    asset = tmp_path / "birefnet-lite.torchscript"
    asset.write_bytes(b"")
    assert resolve_model_path("birefnet-lite", str(tmp_path)) == str(asset)
    assert resolve_model_path(str(asset)) == str(asset)
    assert resolve_model_path("missing", str(tmp_path)) is None
    assert resolve_model_path("missing") is None
