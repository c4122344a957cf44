from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import numpy as np
import torch

from .config import IMAGENET_MEAN, IMAGENET_STD, MODEL_FILE_SUFFIXES, MODEL_INPUT_SIZE, PAD_COLOR
from .errors import InferenceError
from .transforms import resize_with_letterbox, restore_from_letterbox

logger = logging.getLogger(__name__)

DEFAULT_HF_REPO = "ZhengPeng7/BiRefNet"


class SegmentationModel(ABC):
    """
    Capability surface shared by every model variant. Callers never branch on the concrete type.
    """

    name: str = ""

    @property
    @abstractmethod
    def is_available(self) -> bool: ...

    @abstractmethod
    def predict_mask(self, image: np.ndarray) -> Optional[np.ndarray]:
        """
        image: uint8 (H, W, 3|4). Returns float32 (H, W) in [0,1], or None if no usable output.
        """


class StubModel(SegmentationModel):
    """Stands in when no model asset is present: every pixel is foreground."""

    name = "stub"

    @property
    def is_available(self) -> bool:
        return False

    def predict_mask(self, image: np.ndarray) -> Optional[np.ndarray]:
        return np.ones(image.shape[:2], dtype=np.float32)


def get_device() -> torch.device:
    if torch.backends.mps.is_available():
        return torch.device("mps")
    if torch.cuda.is_available():
        return torch.device("cuda")
    return torch.device("cpu")


def _extract_primary_output(y: Any) -> Any:
    """
    BiRefNet / segmentation models may return:
      - a single tensor
      - (tensor, ...) tuple/list (final stage is typically last)
      - dict / ModelOutput with tensor fields
    """
    if isinstance(y, torch.Tensor):
        return y
    if hasattr(y, "logits") and isinstance(y.logits, torch.Tensor):
        return y.logits
    if isinstance(y, (list, tuple)):
        for item in reversed(y):
            found = _extract_primary_output(item)
            if isinstance(found, torch.Tensor):
                return found
        return None
    if isinstance(y, dict):
        for k in ("logits", "pred", "alpha", "mask"):
            v = y.get(k, None)
            if isinstance(v, torch.Tensor):
                return v
        for v in y.values():
            if isinstance(v, torch.Tensor):
                return v
    return None


class NeuralModel(SegmentationModel):
    """
    Wraps a loaded torch segmentation/matting module.

    Input is letterboxed to MODEL_INPUT_SIZE, ImageNet-normalized, and the sigmoid of the
    primary output is restored to the input extent.
    """

    def __init__(self, module: torch.nn.Module, device: torch.device, name: str = "", apply_sigmoid: bool = True):
        self.module = module
        self.device = device
        self.name = name or type(module).__name__
        self.apply_sigmoid = apply_sigmoid

    @property
    def is_available(self) -> bool:
        return True

    def _to_tensor(self, padded: np.ndarray) -> torch.Tensor:
        x = padded.astype(np.float32) / 255.0
        mean = np.array(IMAGENET_MEAN, dtype=np.float32).reshape(1, 1, 3)
        std = np.array(IMAGENET_STD, dtype=np.float32).reshape(1, 1, 3)
        x = (x - mean) / std
        x = np.transpose(x, (2, 0, 1))  # CHW
        return torch.from_numpy(x).unsqueeze(0).contiguous().to(self.device)  # NCHW

    def predict_mask(self, image: np.ndarray) -> Optional[np.ndarray]:
        rgb = image[..., :3]
        padded, meta = resize_with_letterbox(rgb, MODEL_INPUT_SIZE, MODEL_INPUT_SIZE, pad_value=PAD_COLOR)
        x = self._to_tensor(padded)

        try:
            with torch.no_grad():
                y = self.module(x)
        except Exception as e:  # noqa: BLE001
            raise InferenceError(f"Segmentation inference failed ({self.name}): {e}") from e

        y = _extract_primary_output(y)
        if not isinstance(y, torch.Tensor):
            logger.warning("Model %s returned no tensor output (%s)", self.name, type(y).__name__)
            return None

        # Expect either (1,C,H,W) or (1,H,W) or (H,W)
        if y.ndim == 4:
            y = y[0, 0]
        elif y.ndim == 3:
            y = y[0]
        elif y.ndim != 2:
            logger.warning("Model %s returned unexpected shape %s", self.name, tuple(y.shape))
            return None

        if tuple(y.shape[-2:]) != (MODEL_INPUT_SIZE, MODEL_INPUT_SIZE):
            y = torch.nn.functional.interpolate(
                y.unsqueeze(0).unsqueeze(0).float(),
                size=(MODEL_INPUT_SIZE, MODEL_INPUT_SIZE),
                mode="bilinear",
                align_corners=False,
            )[0, 0]

        p = torch.sigmoid(y.float()) if self.apply_sigmoid else y.float()
        if torch.isnan(p).any():
            raise InferenceError(f"NaNs detected in predicted mask ({self.name}).")

        matte = np.clip(p.detach().to("cpu").numpy().astype(np.float32, copy=False), 0.0, 1.0)
        return restore_from_letterbox(matte, meta)


def load_torchscript_module(model_path: str, device: torch.device) -> torch.nn.Module:
    """
    Load a TorchScript matting/segmentation module saved via torch.jit.save().
    """
    if not os.path.exists(model_path):
        raise FileNotFoundError(f"Model not found: {model_path}")

    # Register torchvision custom TorchScript ops (e.g. deform_conv2d) before loading.
    import torchvision  # noqa: F401

    # Load on CPU first; some archives carry float64 attributes that MPS rejects.
    module = torch.jit.load(model_path, map_location="cpu")
    module.eval()
    for p in module.parameters():
        p.requires_grad_(False)
    module = module.to(dtype=torch.float32)
    module.to(device)
    return module


def load_birefnet_hf(hf_repo: str, device: torch.device) -> torch.nn.Module:
    """
    Load BiRefNet via Hugging Face transformers (trust_remote_code).
    Meta-device init paths are disabled to avoid `.item()` on meta tensors.
    """
    from transformers import AutoModelForImageSegmentation

    module = AutoModelForImageSegmentation.from_pretrained(
        hf_repo,
        trust_remote_code=True,
        low_cpu_mem_usage=False,
        device_map=None,
    )
    module.eval()
    for p in module.parameters():
        p.requires_grad_(False)
    return module.to(dtype=torch.float32).to(device)


def resolve_model_path(name: str, models_dir: Optional[str] = None) -> Optional[str]:
    if os.path.isfile(name):
        return name
    if models_dir:
        for suffix in MODEL_FILE_SUFFIXES:
            candidate = Path(models_dir) / f"{name}{suffix}"
            if candidate.is_file():
                return str(candidate)
    return None


def load_model(name: Optional[str], models_dir: Optional[str] = None) -> SegmentationModel:
    """
    Resolve a named model asset:
      - None / "" / "stub"      -> StubModel
      - "hf:<repo>" / "birefnet" -> BiRefNet from the Hugging Face hub
      - file path or <models_dir>/<name>.{torchscript,pt,pth} -> TorchScript

    Any resolution or construction failure falls back to StubModel.
    """
    if not name or name == StubModel.name:
        return StubModel()

    try:
        device = get_device()
        if name.startswith("hf:"):
            module = load_birefnet_hf(name[len("hf:") :], device)
        elif name == "birefnet":
            module = load_birefnet_hf(DEFAULT_HF_REPO, device)
        else:
            path = resolve_model_path(name, models_dir or os.getenv("CUTOUT_MODELS_DIR"))
            if path is None:
                raise FileNotFoundError(f"No model asset named {name!r}")
            module = load_torchscript_module(path, device)
    except Exception as e:  # noqa: BLE001 - fall back to the stub
        logger.warning("Could not load segmentation model %r, using stub: %s", name, e)
        return StubModel()

    logger.info("Loaded segmentation model %s on %s", name, device)
    return NeuralModel(module, device, name=name)
