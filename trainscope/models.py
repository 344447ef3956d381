"""Model building utilities.

Translates the declarative layer list into a :class:`SequentialModel`. The
builder tracks the per-sample shape as it goes so convolutional layers can
reshape flat feature vectors, and layers that cannot be constructed for the
current shape are skipped with a warning. When nothing usable remains a small
fallback network is substituted so a run can always proceed.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

try:
    from torch import nn
except Exception:
    nn = None  # type: ignore

from .engine import EngineLayer, Reshape, SequentialModel, build_activation
from .types import LayerSpec, ModelConfig, TrainingConfig
from .utils import require_torch


logger = logging.getLogger(__name__)

DEFAULT_KERNEL_SIZE = 3
FALLBACK_HIDDEN_UNITS = 10
CUSTOM_ACTIVATION_FALLBACK = "relu"

Shape = Tuple[int, ...]


def fallback_layers(output_units: int = 1) -> List[LayerSpec]:
    """One hidden dense layer plus a linear output layer."""
    return [
        LayerSpec(kind="dense", units=FALLBACK_HIDDEN_UNITS, activation="relu", id="fallback-1"),
        LayerSpec(kind="dense", units=max(1, int(output_units)), activation="linear", id="fallback-2"),
    ]


def annotate_input_shape(layers: Sequence[LayerSpec], input_width: int) -> List[LayerSpec]:
    """Copy ``layers`` with an input shape on the first layer only."""
    annotated = [layer.with_changes(input_shape=None) for layer in layers]
    if annotated:
        annotated[0] = annotated[0].with_changes(input_shape=[int(input_width)])
    return annotated


def resolve_activation(spec: LayerSpec) -> str:
    """Activation actually used in training.

    User-authored activation code is preview-only and never executed by the
    engine; such layers train with a built-in activation instead.
    """
    name = (spec.activation or "linear").lower()
    if spec.custom_activation or name == "custom":
        logger.warning(
            "Custom activation on layer %s is preview-only; training with %s",
            spec.id or spec.kind,
            CUSTOM_ACTIVATION_FALLBACK,
        )
        return CUSTOM_ACTIVATION_FALLBACK
    return name


@dataclass
class LayerPlan:
    """Shape bookkeeping for one constructible layer."""

    kind: str
    input_shape: Shape
    output_shape: Shape
    reshape_to: Optional[Shape]
    flatten_first: bool
    params: int


def _positive(value: Optional[int], what: str) -> int:
    if value is None or int(value) <= 0:
        raise ValueError(f"{what} must be a positive integer, got {value!r}")
    return int(value)


def plan_layer(spec: LayerSpec, shape: Shape) -> LayerPlan:
    """Work out the output shape and parameter count of ``spec`` on ``shape``.

    Raises ValueError when the layer cannot be built for that input shape.
    """
    kind = spec.kind
    if kind == "dense":
        units = _positive(spec.units, "Dense units")
        in_features = int(math.prod(shape))
        return LayerPlan(kind, shape, (units,), None, len(shape) > 1, in_features * units + units)

    if kind == "flatten":
        return LayerPlan(kind, shape, (int(math.prod(shape)),), None, False, 0)

    if kind == "conv1d":
        filters = _positive(spec.filters, "Conv1D filters")
        kernel = _positive(spec.kernel_size or DEFAULT_KERNEL_SIZE, "Conv1D kernel size")
        reshape_to: Optional[Shape] = None
        if len(shape) == 1:
            reshape_to = (1, shape[0])
            channels, length = reshape_to
        elif len(shape) == 2:
            channels, length = shape
        else:
            raise ValueError(f"Conv1D cannot follow an output of shape {list(shape)}")
        if kernel > length:
            raise ValueError(f"Conv1D kernel size {kernel} exceeds input length {length}")
        return LayerPlan(
            kind,
            shape,
            (filters, length - kernel + 1),
            reshape_to,
            False,
            filters * channels * kernel + filters,
        )

    if kind == "conv2d":
        filters = _positive(spec.filters, "Conv2D filters")
        kernel = _positive(spec.kernel_size or DEFAULT_KERNEL_SIZE, "Conv2D kernel size")
        reshape_to = None
        if len(shape) == 1:
            side = math.isqrt(shape[0])
            if side * side != shape[0]:
                raise ValueError(
                    f"Conv2D needs a square number of input features, got {shape[0]}"
                )
            reshape_to = (1, side, side)
            channels, height, width = reshape_to
        elif len(shape) == 3:
            channels, height, width = shape
        else:
            raise ValueError(f"Conv2D cannot follow an output of shape {list(shape)}")
        if kernel > min(height, width):
            raise ValueError(f"Conv2D kernel size {kernel} exceeds input size {height}x{width}")
        return LayerPlan(
            kind,
            shape,
            (filters, height - kernel + 1, width - kernel + 1),
            reshape_to,
            False,
            filters * channels * kernel * kernel + filters,
        )

    raise ValueError(f"Unsupported layer type '{spec.kind}'")


def plan_layers(layers: Sequence[LayerSpec], input_width: int) -> List[Tuple[int, LayerSpec, LayerPlan]]:
    """Plan every constructible layer, skipping the rest with a warning."""
    shape: Shape = (int(input_width),)
    planned = []
    for index, spec in enumerate(layers):
        try:
            plan = plan_layer(spec, shape)
        except ValueError as exc:
            logger.warning("Skipping layer %d (%s): %s", index + 1, spec.kind, exc)
            continue
        planned.append((index, spec, plan))
        shape = plan.output_shape
    return planned


def count_parameters(layers: Sequence[LayerSpec], input_width: int) -> int:
    """Trainable parameter count of the network the builder would produce."""
    return sum(plan.params for _, _, plan in plan_layers(layers, input_width))


def estimate_memory_bytes(layers: Sequence[LayerSpec], input_width: int) -> int:
    """Float32 storage needed for the parameters."""
    return count_parameters(layers, input_width) * 4


def _construct(index: int, spec: LayerSpec, plan: LayerPlan) -> EngineLayer:
    modules = []
    if plan.flatten_first:
        modules.append(nn.Flatten())
    if plan.reshape_to is not None:
        modules.append(Reshape(plan.reshape_to))

    core = None
    if plan.kind == "dense":
        core = nn.Linear(int(math.prod(plan.input_shape)), plan.output_shape[0])
    elif plan.kind == "conv1d":
        channels = (plan.reshape_to or plan.input_shape)[0]
        core = nn.Conv1d(channels, plan.output_shape[0], int(spec.kernel_size or DEFAULT_KERNEL_SIZE))
    elif plan.kind == "conv2d":
        channels = (plan.reshape_to or plan.input_shape)[0]
        core = nn.Conv2d(channels, plan.output_shape[0], int(spec.kernel_size or DEFAULT_KERNEL_SIZE))
    else:
        modules.append(nn.Flatten())
    if core is not None:
        modules.append(core)

    activation = "linear"
    if plan.kind != "flatten":
        activation = resolve_activation(spec)
        try:
            module = build_activation(activation)
        except ValueError:
            logger.warning(
                "Unknown activation '%s' on layer %d; using %s",
                activation,
                index + 1,
                CUSTOM_ACTIVATION_FALLBACK,
            )
            activation = CUSTOM_ACTIVATION_FALLBACK
            module = build_activation(activation)
        if module is not None:
            modules.append(module)

    return EngineLayer(
        name=f"layer_{index + 1}",
        kind=plan.kind,
        block=nn.Sequential(*modules),
        core=core,
        output_shape=plan.output_shape,
        activation=activation,
        layer_id=spec.id or f"layer-{index}",
    )


def build_model(
    layers: Sequence[LayerSpec],
    input_width: int,
    *,
    output_units: int = 1,
    device=None,
) -> SequentialModel:
    """Build an uncompiled model for ``input_width`` features.

    Falls back to :func:`fallback_layers` when ``layers`` is empty or none of
    them can be constructed.
    """
    require_torch()
    planned = plan_layers(annotate_input_shape(layers, input_width), input_width)
    if not planned:
        logger.warning(
            "No constructible layers in the declared architecture; using the fallback network"
        )
        planned = plan_layers(fallback_layers(output_units), input_width)

    model = SequentialModel(device=device)
    for index, spec, plan in planned:
        model.add(_construct(index, spec, plan))
    return model


def build_compiled_model(
    model_config: ModelConfig,
    training_config: TrainingConfig,
    input_width: int,
    *,
    output_units: int = 1,
    device=None,
) -> SequentialModel:
    """Build and compile a model ready for training."""
    model = build_model(model_config.layers, input_width, output_units=output_units, device=device)
    model.compile(
        optimizer=training_config.optimizer,
        learning_rate=training_config.learning_rate,
        loss=model_config.loss,
        metrics=model_config.metrics,
    )
    return model
