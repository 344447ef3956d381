"""Architecture versus data compatibility checks.

``validate`` never mutates its inputs. Each issue comes with a suggestion that
carries the corrected layer list (or input size); callers decide whether to
apply them, and :func:`apply_fixes` applies a batch of suggestions all at once
or not at all.
"""

from __future__ import annotations

import math
from typing import Any, List, Optional, Sequence, Tuple

from .types import (
    Dataset,
    LayerSpec,
    ShapeFix,
    ShapeIssue,
    ShapeValidationResult,
)


INPUT_RATIO = 10
BOTTLENECK_RATIO = 0.1
BOTTLENECK_MAX_UNITS = 16
BOTTLENECK_SUGGESTION_RATIO = 0.25


def _replace_layer(layers: Sequence[LayerSpec], index: int, **changes: Any) -> tuple:
    updated = list(layers)
    updated[index] = updated[index].with_changes(**changes)
    return tuple(updated)


def _layer_id(layer: LayerSpec, index: int) -> str:
    return layer.id or f"layer-{index}"


def _display_kind(layer: LayerSpec) -> str:
    return {"dense": "Dense", "conv1d": "Conv1D", "conv2d": "Conv2D", "flatten": "Flatten"}.get(
        layer.kind, layer.kind
    )


def validate(
    layers: Sequence[LayerSpec],
    input_size: int,
    expected_output_size: Optional[int] = None,
    *,
    bottleneck_ratio: float = BOTTLENECK_RATIO,
    bottleneck_max_units: int = BOTTLENECK_MAX_UNITS,
    suggestion_ratio: float = BOTTLENECK_SUGGESTION_RATIO,
) -> ShapeValidationResult:
    """Check ``layers`` against the data's input and output widths.

    Three independent rules, any of which may fire:

    - input: the first dense layer is more than ten times narrower than the
      input features;
    - output: the last layer's width differs from ``expected_output_size``;
    - bottleneck: an interior dense layer right after a dense layer is below
      ``bottleneck_ratio`` of it and below ``bottleneck_max_units``.
    """
    layers = list(layers)
    if not layers:
        return ShapeValidationResult(is_valid=True)

    issues: List[ShapeIssue] = []
    suggestions: List[ShapeFix] = []
    input_size = int(input_size)
    current_size = input_size

    for index, layer in enumerate(layers):
        if layer.kind != "dense":
            continue
        if index == 0 and layer.units and input_size > layer.units * INPUT_RATIO:
            target = max(layer.units, math.ceil(input_size / 2))
            issues.append(
                ShapeIssue(
                    kind="input_mismatch",
                    layer_index=index,
                    layer_id=_layer_id(layer, index),
                    layer_name=f"Layer {index + 1} ({_display_kind(layer)})",
                    expected=input_size,
                    actual=layer.units,
                    message=(
                        f"First layer has {layer.units} units but input has {input_size} "
                        "features. This may cause information loss."
                    ),
                )
            )
            suggestions.append(
                ShapeFix(
                    kind="adjust_layer",
                    layer_index=index,
                    layer_id=_layer_id(layer, index),
                    description=f"Increase first layer to {target} units to better handle input features",
                    layers=_replace_layer(layers, index, units=target),
                )
            )
        current_size = layer.units or current_size

    if expected_output_size:
        index = len(layers) - 1
        last = layers[index]
        actual = last.output_units or current_size
        if actual != expected_output_size:
            issues.append(
                ShapeIssue(
                    kind="output_mismatch",
                    layer_index=index,
                    layer_id=_layer_id(last, index),
                    layer_name=f"Output Layer ({_display_kind(last)})",
                    expected=int(expected_output_size),
                    actual=int(actual),
                    message=(
                        f"Output layer has {actual} units but expected {expected_output_size} "
                        "for the target data."
                    ),
                )
            )
            changes = {"units": int(expected_output_size)}
            if last.kind != "dense":
                changes = {"filters": int(expected_output_size)}
            suggestions.append(
                ShapeFix(
                    kind="adjust_output",
                    layer_index=index,
                    layer_id=_layer_id(last, index),
                    description=f"Adjust output layer to {expected_output_size} units to match target data",
                    layers=_replace_layer(layers, index, **changes),
                )
            )

    for index in range(1, len(layers) - 1):
        layer = layers[index]
        previous = layers[index - 1]
        if layer.kind != "dense" or previous.kind != "dense":
            continue
        units = layer.units or 0
        prev_units = previous.units or 0
        if units < prev_units * bottleneck_ratio and units < bottleneck_max_units:
            target = math.ceil(prev_units * suggestion_ratio)
            issues.append(
                ShapeIssue(
                    kind="layer_mismatch",
                    layer_index=index,
                    layer_id=_layer_id(layer, index),
                    layer_name=f"Layer {index + 1} ({_display_kind(layer)})",
                    expected=target,
                    actual=units,
                    message=(
                        f"Layer {index + 1} has only {units} units, which may create a "
                        f"bottleneck after {prev_units} units."
                    ),
                )
            )
            suggestions.append(
                ShapeFix(
                    kind="adjust_layer",
                    layer_index=index,
                    layer_id=_layer_id(layer, index),
                    description=f"Increase layer to {target} units to avoid bottleneck",
                    layers=_replace_layer(layers, index, units=target),
                )
            )

    return ShapeValidationResult(
        is_valid=not issues,
        issues=tuple(issues),
        suggestions=tuple(suggestions),
    )


def apply_fixes(
    layers: Sequence[LayerSpec],
    input_size: int,
    fixes: Sequence[ShapeFix],
) -> Tuple[List[LayerSpec], int]:
    """Apply every fix to ``layers``/``input_size`` and return the result.

    Each layer-list fix contributes the layer it targets; later fixes win when
    two target the same layer. Nothing is returned unless every fix applies.
    """
    updated = list(layers)
    new_input = int(input_size)
    for fix in fixes:
        value = fix.action()
        if isinstance(value, list):
            if not 0 <= fix.layer_index < len(updated) or fix.layer_index >= len(value):
                raise ValueError(f"Fix '{fix.description}' targets a missing layer")
            updated[fix.layer_index] = value[fix.layer_index]
        else:
            new_input = int(value)
    return updated, new_input


def input_size_from_dataset(dataset: Optional[Dataset]) -> int:
    """Number of feature columns; 1 when there is no dataset."""
    if dataset is None or len(dataset) == 0:
        return 1
    return dataset.input_width or 1


def count_classes(targets: Sequence[Any]) -> int:
    values = set()
    for target in targets:
        if isinstance(target, (list, tuple)):
            values.update(target)
        else:
            values.add(target)
    return len(values)


def expected_output_size(dataset: Optional[Dataset], problem_type: Optional[str] = None) -> int:
    """Output width implied by the targets.

    Regression uses the target width. Classification with exactly two classes
    uses one sigmoid unit; otherwise one unit per class.
    """
    kind = problem_type or (dataset.problem_type if dataset is not None else "regression")
    if kind != "classification":
        return dataset.output_width if dataset is not None else 1
    if dataset is None:
        return 1
    classes = len(dataset.classes) if dataset.classes else count_classes(dataset.ys)
    return 1 if classes == 2 else max(classes, 1)


def output_activation(problem_type: str, output_size: int) -> str:
    if problem_type == "classification":
        return "softmax" if output_size > 1 else "sigmoid"
    return "linear"


def auto_fix_for_error(layers: Sequence[LayerSpec], dataset: Dataset) -> Optional[ShapeFix]:
    """Single-shot fix after a shape failure during training.

    Only the last layer's width and activation are rewritten, from the
    dataset's actual label cardinality and problem type.
    """
    layers = list(layers)
    if not layers:
        return None
    index = len(layers) - 1
    last = layers[index]
    size = expected_output_size(dataset)
    activation = output_activation(dataset.problem_type, size)
    changes = {
        "kind": "dense",
        "units": size,
        "activation": activation,
        "custom_activation": None,
    }
    return ShapeFix(
        kind="adjust_output",
        layer_index=index,
        layer_id=_layer_id(last, index),
        description=f"Set output layer to {size} units with {activation} activation",
        layers=_replace_layer(layers, index, **changes),
    )
