"""Backbone + head composition for the on-device classifier.

A pretrained torchvision backbone is truncated at a named intermediate layer
and a small trainable head is attached on top of the resulting feature map:

    pool -> flatten -> dense -> bn -> dropout -> dense -> bn -> dropout -> dense -> softmax

Inputs arrive in [0, 1]; the graph standardises them with the mean and std the
backbone weights were trained on before the first convolution.

The composed graph is compiled with an Adam optimizer over the head and a
negative log-likelihood loss over the softmax output so that a handle can be
fine-tuned in place. Inference never touches either.
"""

from __future__ import annotations

import importlib
import pickle
import zipfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final

import torch
from torch import Tensor, nn
from torch.optim.adam import Adam
from torch.optim.optimizer import Optimizer
from torchvision.models.feature_extraction import create_feature_extractor

from ..errors import LoadError, LoadErrorKind
from ..logging import get_logger

_FEATURE_KEY: Final[str] = "features"
_SOURCE_NONE: Final[str] = "none"
_STATE_DICT_ERRORS: Final[tuple[type[BaseException], ...]] = (
    RuntimeError,
    ValueError,
    TypeError,
    EOFError,
    pickle.UnpicklingError,
    zipfile.BadZipFile,
)


@dataclass(frozen=True)
class BackboneSpec:
    name: str
    builder: str
    weights_enum: str
    default_cut_layer: str
    # Channel statistics of the torchvision ImageNet weights
    mean: tuple[float, float, float] = (0.485, 0.456, 0.406)
    std: tuple[float, float, float] = (0.229, 0.224, 0.225)


BACKBONES: Final[dict[str, BackboneSpec]] = {
    "mobilenet_v2": BackboneSpec(
        name="mobilenet_v2",
        builder="mobilenet_v2",
        weights_enum="MobileNet_V2_Weights",
        default_cut_layer="features.18",
    ),
    "resnet18": BackboneSpec(
        name="resnet18",
        builder="resnet18",
        weights_enum="ResNet18_Weights",
        default_cut_layer="layer4",
    ),
}


@dataclass(frozen=True)
class HeadConfig:
    n_classes: int
    hidden_units: tuple[int, int] = (256, 128)
    dropout: float = 0.3
    learning_rate: float = 1e-3


class SoftmaxNLLLoss(nn.Module):
    """Categorical cross-entropy for a graph whose last layer is already a softmax."""

    def __init__(self, eps: float = 1e-7) -> None:
        super().__init__()
        self._eps = eps
        self._nll = nn.NLLLoss()

    def forward(self, probs: Tensor, target: Tensor) -> Tensor:
        return self._nll(torch.log(probs.clamp_min(self._eps)), target)


class InputNormalization(nn.Module):
    def __init__(self, mean: tuple[float, float, float], std: tuple[float, float, float]) -> None:
        super().__init__()
        self.register_buffer("mean", torch.tensor(mean, dtype=torch.float32).view(1, 3, 1, 1))
        self.register_buffer("std", torch.tensor(std, dtype=torch.float32).view(1, 3, 1, 1))

    def forward(self, x: Tensor) -> Tensor:
        out: Tensor = (x - self.mean) / self.std
        return out


class ComposedClassifier(nn.Module):
    def __init__(
        self, backbone: nn.Module, head: nn.Sequential, normalize: InputNormalization
    ) -> None:
        super().__init__()
        self.normalize = normalize
        self.backbone = backbone
        self.head = head

    def forward(self, x: Tensor) -> Tensor:
        feats = self.backbone(self.normalize(x))[_FEATURE_KEY]
        out: Tensor = self.head(feats)
        return out


@dataclass(frozen=True)
class ModelHandle:
    model: ComposedClassifier
    optimizer: Optimizer
    loss_fn: nn.Module
    labels: tuple[str, ...]
    input_size: int
    model_id: str
    backbone: str
    cut_layer: str

    @property
    def input_shape(self) -> tuple[int, int, int, int]:
        return (1, 3, self.input_size, self.input_size)


def load(
    backbone_source: str,
    labels: Sequence[str],
    head: HeadConfig,
    *,
    backbone: str = "mobilenet_v2",
    cut_layer: str = "",
    input_size: int = 224,
    model_id: str = "",
    seed: int | None = None,
) -> ModelHandle:
    """Build a ready-to-use handle. Every call returns an independent graph.

    Raises:
        LoadError: `network_unavailable` when backbone weights cannot be fetched,
            `incompatible_shape` for unknown layers or label/head mismatches,
            `out_of_memory` when allocation fails.
    """
    label_set = tuple(labels)
    if len(label_set) < 2 or len(set(label_set)) != len(label_set):
        raise LoadError(
            LoadErrorKind.incompatible_shape, "label set must hold at least two distinct labels"
        )
    if head.n_classes != len(label_set):
        raise LoadError(
            LoadErrorKind.incompatible_shape,
            f"head outputs {head.n_classes} classes but label set has {len(label_set)}",
        )
    bb = BACKBONES.get(backbone)
    if bb is None:
        raise LoadError(LoadErrorKind.incompatible_shape, f"unknown backbone: {backbone}")
    layer = cut_layer or bb.default_cut_layer

    try:
        base = _build_backbone(bb, backbone_source)
        try:
            extractor = create_feature_extractor(base, return_nodes={layer: _FEATURE_KEY})
        except (ValueError, KeyError, RuntimeError):
            raise LoadError(
                LoadErrorKind.incompatible_shape, f"layer {layer!r} not found in {bb.name}"
            ) from None
        in_features = _probe_feature_width(extractor, input_size)
        with torch.random.fork_rng(devices=[]):
            if seed is not None:
                torch.manual_seed(seed)
            head_mod = build_head(in_features, head)
        model = ComposedClassifier(extractor, head_mod, InputNormalization(bb.mean, bb.std))
        for p in model.backbone.parameters():
            p.requires_grad_(False)
        optimizer = Adam(model.head.parameters(), lr=head.learning_rate)
        model.eval()
    except LoadError:
        raise
    except MemoryError:
        raise LoadError(LoadErrorKind.out_of_memory, "host allocation failed") from None
    except RuntimeError as exc:
        if _is_oom(exc):
            raise LoadError(LoadErrorKind.out_of_memory, "device allocation failed") from None
        raise

    mid = model_id or f"{bb.name}-{layer}-{len(label_set)}"
    get_logger().info(
        "model_built model_id=%s backbone=%s cut_layer=%s in_features=%d n_classes=%d",
        mid,
        bb.name,
        layer,
        in_features,
        len(label_set),
    )
    return ModelHandle(
        model=model,
        optimizer=optimizer,
        loss_fn=SoftmaxNLLLoss(),
        labels=label_set,
        input_size=input_size,
        model_id=mid,
        backbone=bb.name,
        cut_layer=layer,
    )


def build_head(in_features: int, cfg: HeadConfig) -> nn.Sequential:
    h1, h2 = cfg.hidden_units
    return nn.Sequential(
        nn.AdaptiveAvgPool2d(1),
        nn.Flatten(),
        nn.Linear(in_features, h1),
        nn.ReLU(inplace=True),
        nn.BatchNorm1d(h1),
        nn.Dropout(cfg.dropout),
        nn.Linear(h1, h2),
        nn.ReLU(inplace=True),
        nn.BatchNorm1d(h2),
        nn.Dropout(cfg.dropout),
        nn.Linear(h2, cfg.n_classes),
        nn.Softmax(dim=1),
    )


def load_head_weights(handle: ModelHandle, path: Path) -> None:
    """Load trained head weights into `handle`; shapes must match the built head."""
    try:
        sd = _load_state_dict_file(path)
    except OSError:
        raise LoadError(LoadErrorKind.network_unavailable, f"cannot read {path.name}") from None
    except _STATE_DICT_ERRORS:
        raise LoadError(LoadErrorKind.incompatible_shape, f"invalid state dict {path.name}") from None
    _validate_state_dict(sd, handle.model.head.state_dict())
    handle.model.head.load_state_dict(sd)
    handle.model.eval()


def _build_backbone(bb: BackboneSpec, source: str) -> nn.Module:
    tv_models = importlib.import_module("torchvision.models")
    builder = getattr(tv_models, bb.builder, None)
    if not callable(builder):
        raise LoadError(LoadErrorKind.incompatible_shape, f"torchvision has no {bb.builder}")
    src = source.strip()
    if src.lower() == _SOURCE_NONE:
        return _as_module(builder(weights=None))
    path = Path(src)
    if path.suffix in (".pt", ".pth") or path.exists():
        model = _as_module(builder(weights=None))
        try:
            sd = _load_state_dict_file(path)
        except OSError:
            raise LoadError(
                LoadErrorKind.network_unavailable, f"backbone weights unavailable: {path}"
            ) from None
        except _STATE_DICT_ERRORS:
            raise LoadError(
                LoadErrorKind.incompatible_shape, f"invalid backbone state dict: {path}"
            ) from None
        _validate_state_dict(sd, model.state_dict())
        model.load_state_dict(sd)
        return model
    weights_cls = getattr(tv_models, bb.weights_enum)
    weights = getattr(weights_cls, src.upper(), None)
    if weights is None:
        raise LoadError(LoadErrorKind.incompatible_shape, f"unknown weights {src!r} for {bb.name}")
    try:
        return _as_module(builder(weights=weights))
    except OSError as exc:
        # URLError and HTTPError are OSError subclasses
        get_logger().info("backbone_download_failed backbone=%s error=%s", bb.name, exc)
        raise LoadError(
            LoadErrorKind.network_unavailable, f"could not fetch {bb.name} weights"
        ) from None


def _probe_feature_width(extractor: nn.Module, input_size: int) -> int:
    extractor.eval()
    with torch.inference_mode():
        try:
            out = extractor(torch.zeros((1, 3, input_size, input_size), dtype=torch.float32))
        except RuntimeError as exc:
            if _is_oom(exc):
                raise
            raise LoadError(
                LoadErrorKind.incompatible_shape, f"backbone rejected {input_size}px input"
            ) from None
    feats = out[_FEATURE_KEY]
    if feats.ndim != 4:
        raise LoadError(
            LoadErrorKind.incompatible_shape, f"cut layer yields {feats.ndim}D output, need 4D"
        )
    return int(feats.shape[1])


def _as_module(obj: object) -> nn.Module:
    if not isinstance(obj, nn.Module):
        raise LoadError(LoadErrorKind.incompatible_shape, "backbone builder did not return a Module")
    return obj


def _is_oom(exc: BaseException) -> bool:
    return isinstance(exc, torch.cuda.OutOfMemoryError) or "out of memory" in str(exc).lower()


def _load_state_dict_file(path: Path) -> dict[str, Tensor]:
    obj = torch.load(path.as_posix(), map_location=torch.device("cpu"), weights_only=True)
    sd_obj = obj["state_dict"] if isinstance(obj, dict) and "state_dict" in obj else obj
    if not isinstance(sd_obj, dict):
        raise ValueError("state dict file did not contain a dict")
    out: dict[str, Tensor] = {}
    for k, v in sd_obj.items():
        if isinstance(k, str) and torch.is_tensor(v):
            out[k] = v
        else:
            raise ValueError("invalid state dict entry")
    return out


def _validate_state_dict(sd: dict[str, Tensor], expected: dict[str, Tensor]) -> None:
    missing = [k for k in expected if k not in sd]
    unexpected = [k for k in sd if k not in expected]
    if missing or unexpected:
        raise LoadError(
            LoadErrorKind.incompatible_shape,
            f"state dict keys differ (missing={len(missing)} unexpected={len(unexpected)})",
        )
    for k, ref in expected.items():
        if tuple(sd[k].shape) != tuple(ref.shape):
            raise LoadError(
                LoadErrorKind.incompatible_shape,
                f"{k} has shape {tuple(sd[k].shape)}, expected {tuple(ref.shape)}",
            )
