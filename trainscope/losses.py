"""Loss and metric builders.

Selectors follow the compile-time names users pick in the studio
("mse", "binary_crossentropy", ...). The camelCase names used by browser
tooling ("meanSquaredError", "binaryCrossentropy", ...) are accepted as aliases.
Classification losses expect probabilities from a sigmoid/softmax output layer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

try:
    import torch
    import torch.nn.functional as F
except Exception:
    torch = None  # type: ignore
    F = None  # type: ignore

from .types import ShapeMismatchError


logger = logging.getLogger(__name__)


_EPS = 1e-7

LOSS_ALIASES: Dict[str, str] = {
    "mse": "mse",
    "mean_squared_error": "mse",
    "meansquarederror": "mse",
    "mae": "mae",
    "mean_absolute_error": "mae",
    "meanabsoluteerror": "mae",
    "binary_crossentropy": "binary_crossentropy",
    "binarycrossentropy": "binary_crossentropy",
    "categorical_crossentropy": "categorical_crossentropy",
    "categoricalcrossentropy": "categorical_crossentropy",
    "sparse_categorical_crossentropy": "sparse_categorical_crossentropy",
    "sparsecategoricalcrossentropy": "sparse_categorical_crossentropy",
}

METRIC_ALIASES: Dict[str, str] = {
    "accuracy": "accuracy",
    "acc": "accuracy",
    "mae": "mae",
    "mse": "mse",
}


@dataclass
class LossSpec:
    """Description of the selected loss function."""

    name: str
    criterion: Callable[[Any, Any], Any]


def normalize_loss_name(name: Optional[str]) -> str:
    key = (name or "mse").replace("-", "_").lower()
    if key in LOSS_ALIASES:
        return LOSS_ALIASES[key]
    compact = key.replace("_", "")
    if compact in LOSS_ALIASES:
        return LOSS_ALIASES[compact]
    raise ValueError(f"Unsupported loss '{name}'")


def default_loss(problem_type: str, num_classes: int = 2) -> str:
    """Pick a loss for the problem type."""
    if problem_type == "classification":
        return "binary_crossentropy" if num_classes <= 2 else "sparse_categorical_crossentropy"
    return "mse"


def default_metrics(problem_type: str) -> List[str]:
    return ["accuracy"] if problem_type == "classification" else ["mae"]


def _require_same_shape(outputs: "torch.Tensor", targets: "torch.Tensor") -> None:
    if tuple(outputs.shape) != tuple(targets.shape):
        raise ShapeMismatchError(
            f"Output shape {list(outputs.shape)} does not match target shape {list(targets.shape)}"
        )


def _mse(outputs, targets):
    _require_same_shape(outputs, targets)
    return F.mse_loss(outputs, targets)


def _mae(outputs, targets):
    _require_same_shape(outputs, targets)
    return F.l1_loss(outputs, targets)


def _binary_crossentropy(outputs, targets):
    _require_same_shape(outputs, targets)
    probs = outputs.clamp(_EPS, 1.0 - _EPS)
    return F.binary_cross_entropy(probs, targets)


def _categorical_crossentropy(outputs, targets):
    _require_same_shape(outputs, targets)
    probs = outputs.clamp(_EPS, 1.0)
    return -(targets * probs.log()).sum(dim=1).mean()


def _sparse_categorical_crossentropy(outputs, targets):
    if outputs.dim() != 2 or targets.reshape(-1).shape[0] != outputs.shape[0]:
        raise ShapeMismatchError(
            f"Output shape {list(outputs.shape)} is incompatible with sparse targets of shape {list(targets.shape)}"
        )
    labels = targets.reshape(-1).long()
    num_classes = outputs.shape[1]
    if labels.numel() and (int(labels.min()) < 0 or int(labels.max()) >= num_classes):
        raise ShapeMismatchError(
            f"Target class {int(labels.max())} is out of bounds for an output layer with {num_classes} units"
        )
    probs = outputs.clamp(_EPS, 1.0)
    return F.nll_loss(probs.log(), labels)


_LOSSES: Dict[str, Callable[[Any, Any], Any]] = {
    "mse": _mse,
    "mae": _mae,
    "binary_crossentropy": _binary_crossentropy,
    "categorical_crossentropy": _categorical_crossentropy,
    "sparse_categorical_crossentropy": _sparse_categorical_crossentropy,
}


def build_loss(name: str) -> LossSpec:
    """Build a loss function specification from name."""
    if torch is None:
        raise RuntimeError("PyTorch is required for loss functions")
    try:
        key = normalize_loss_name(name)
    except ValueError:
        logger.warning("Unsupported loss %r; falling back to mean squared error", name)
        key = "mse"
    return LossSpec(name=key, criterion=_LOSSES[key])


def compute_metric(name: str, outputs: "torch.Tensor", targets: "torch.Tensor") -> float:
    """Compute one metric over a batch.

    Accuracy thresholds single-unit outputs at 0.5 and uses argmax otherwise;
    targets may be class indices or one-hot rows.
    """
    key = METRIC_ALIASES.get((name or "").lower())
    with torch.no_grad():
        if key == "mae":
            return float((outputs - targets.reshape(outputs.shape)).abs().mean())
        if key == "mse":
            return float(((outputs - targets.reshape(outputs.shape)) ** 2).mean())
        if key == "accuracy":
            if outputs.shape[-1] == 1:
                predicted = (outputs.reshape(-1) > 0.5).float()
                actual = targets.reshape(-1).float()
            else:
                predicted = outputs.argmax(dim=1).float()
                if targets.dim() == 2 and targets.shape[1] == outputs.shape[1]:
                    actual = targets.argmax(dim=1).float()
                else:
                    actual = targets.reshape(-1).float()
            return float((predicted == actual).float().mean())
    raise ValueError(f"Unsupported metric '{name}'")


def normalize_metrics(names: Optional[List[str]]) -> List[str]:
    """Keep supported metrics in order, dropping duplicates and unknown names."""
    result: List[str] = []
    for name in names or []:
        key = METRIC_ALIASES.get(str(name).lower())
        if key is None:
            logger.warning("Unsupported metric %r ignored", name)
            continue
        if key not in result:
            result.append(key)
    return result
