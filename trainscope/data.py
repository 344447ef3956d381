"""Dataset preparation utilities for TrainScope.

Turns raw feature/target columns into the index-aligned training view used by
the worker, infers whether the targets describe a regression or a
classification problem, and generates the small sample datasets used when the
user has not supplied one.
"""

from __future__ import annotations

import math
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

from .types import Dataset, DatasetError


MAX_CLASSIFICATION_LABELS = 10


def _flatten_targets(targets: Sequence[Any]) -> List[Any]:
    values: List[Any] = []
    for target in targets:
        if isinstance(target, (list, tuple)):
            values.extend(target)
        else:
            values.append(target)
    return values


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool)


def infer_problem_type(targets: Sequence[Any]) -> str:
    """Guess the problem type from the target column.

    Non-numeric labels always mean classification. Numeric targets with at
    most ten distinct values that are all whole numbers are treated as class
    indices; anything else is regression.
    """
    values = _flatten_targets(targets)
    if not values:
        return "regression"
    if not all(_is_number(v) for v in values):
        return "classification"
    unique = set(float(v) for v in values)
    if len(unique) <= MAX_CLASSIFICATION_LABELS and all(v.is_integer() for v in unique):
        return "classification"
    return "regression"


def encode_labels(targets: Sequence[Any]) -> Tuple[List[float], List[Any]]:
    """Map categorical targets to sorted integer class indices.

    Returns the encoded targets and the class list (index -> original label).
    """
    values = _flatten_targets(targets)
    if len(values) != len(targets):
        raise DatasetError("Classification targets must hold exactly one label per row")
    if all(_is_number(v) for v in values):
        classes: List[Any] = sorted(set(float(v) for v in values))
        classes = [int(c) if float(c).is_integer() else c for c in classes]
        lookup = {float(c): idx for idx, c in enumerate(classes)}
        return [float(lookup[float(v)]) for v in values], classes
    classes = sorted(set(str(v) for v in values))
    lookup = {c: idx for idx, c in enumerate(classes)}
    return [float(lookup[str(v)]) for v in values], classes


def make_dataset(
    features: Sequence[Any],
    targets: Sequence[Any],
    *,
    problem_type: str = "auto",
) -> Dataset:
    """Build the training view from raw columns, validating index alignment."""
    if len(features) != len(targets):
        raise DatasetError(
            f"Dataset has {len(features)} feature rows but {len(targets)} target rows"
        )
    kind = (problem_type or "auto").lower()
    if kind == "auto":
        kind = infer_problem_type(targets)
    if kind not in {"regression", "classification"}:
        raise DatasetError(f"Unknown problem type '{problem_type}'")

    if kind == "classification":
        encoded, classes = encode_labels(targets)
        return Dataset(
            xs=list(features),
            ys=[[value] for value in encoded],
            problem_type=kind,
            classes=classes,
        )
    return Dataset(xs=list(features), ys=list(targets), problem_type=kind)


def split_index(num_samples: int, validation_split: float) -> int:
    """Number of leading rows used for training; the rest is validation.

    The split is positional and never shuffles. At least one row is always
    kept for training.
    """
    if num_samples <= 0:
        raise DatasetError("Cannot split an empty dataset")
    count = int(math.floor(num_samples * (1.0 - float(validation_split))))
    return min(max(count, 1), num_samples)


def sample_dataset(
    problem_type: str = "regression",
    num_points: int = 100,
    *,
    seed: Optional[int] = None,
) -> Dataset:
    """Generate a one-feature sample dataset on x in [-5, 5].

    Regression targets follow a noisy quadratic. Classification labels are
    0/1 draws from a sigmoid-shaped decision boundary.
    """
    rng = np.random.default_rng(seed)
    xs = (rng.random(num_points) - 0.5) * 10.0
    if (problem_type or "regression").lower() == "classification":
        prob = 1.0 / (1.0 + np.exp(-(xs + np.sin(xs) * 0.5)))
        labels = (rng.random(num_points) < prob).astype(int)
        return make_dataset(
            [[float(x)] for x in xs],
            [int(label) for label in labels],
            problem_type="classification",
        )
    ys = 0.5 * xs * xs + 2.0 * xs + 1.0 + (rng.random(num_points) - 0.5) * 2.0
    return make_dataset(
        [[float(x)] for x in xs],
        [[float(y)] for y in ys],
        problem_type="regression",
    )
