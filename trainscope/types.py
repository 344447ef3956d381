"""Shared type definitions for TrainScope training."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union


Number = Union[int, float]
Vector = List[float]


class TrainScopeError(RuntimeError):
    """Base class for TrainScope errors."""


class ConfigurationError(TrainScopeError):
    """Raised when a run cannot start because its configuration is incomplete or invalid."""


class DatasetError(ConfigurationError):
    """Raised when a dataset does not pair every feature row with a target row."""


class InvalidTransitionError(TrainScopeError):
    """Raised when a store command is not legal in the current training state."""


class ShapeValidationError(TrainScopeError):
    """Raised before training when the architecture does not fit the dataset."""

    def __init__(self, result: "ShapeValidationResult") -> None:
        messages = "; ".join(issue.message for issue in result.issues)
        super().__init__(f"Model shape validation failed: {messages}")
        self.result = result


class ShapeMismatchError(TrainScopeError):
    """Raised by the numeric engine when tensor shapes are incompatible."""


class ResourceDisposedError(TrainScopeError):
    """Raised when an engine resource is used or disposed after disposal."""


class TrainingInterrupted(TrainScopeError):
    """Control-flow signal raised at a yield point when a pause or stop was observed."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Training {reason}")
        self.reason = reason


class MissingDependencyError(TrainScopeError):
    """Raised when the numeric engine dependencies are not installed."""


class TrainingState(str, Enum):
    """Lifecycle state of the training run owned by the store."""

    IDLE = "idle"
    TRAINING = "training"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"
    ERROR = "error"


class ErrorType(str, Enum):
    """Classification of a runtime training error, used to route auto-fixes."""

    SHAPE_MISMATCH = "shape_mismatch"
    GENERAL = "general"


_SHAPE_ERROR_MARKERS = (
    "shape",
    "cannot be multiplied",
    "size mismatch",
    "sizes of tensors must match",
    "target size",
    "out of bounds",
    "expected input",
    "dimension",
)


def classify_error(error: Union[BaseException, str]) -> ErrorType:
    """Classify a runtime training failure for auto-fix routing."""
    if isinstance(error, ShapeMismatchError):
        return ErrorType.SHAPE_MISMATCH
    message = str(error).lower()
    if any(marker in message for marker in _SHAPE_ERROR_MARKERS):
        return ErrorType.SHAPE_MISMATCH
    return ErrorType.GENERAL


LAYER_KINDS = ("dense", "conv1d", "conv2d", "flatten")
OPTIMIZERS = ("sgd", "adam", "rmsprop", "adagrad")


@dataclass
class LayerSpec:
    """Declarative description of one layer of the network."""

    kind: str = "dense"
    units: Optional[int] = None
    filters: Optional[int] = None
    kernel_size: Optional[int] = None
    activation: str = "relu"
    input_shape: Optional[List[int]] = None
    id: str = ""
    custom_activation: Optional[str] = None

    def __post_init__(self) -> None:
        self.kind = (self.kind or "dense").lower()

    @property
    def output_units(self) -> Optional[int]:
        """Width of the layer's output along the feature axis, if declared."""
        if self.kind == "dense":
            return self.units
        if self.kind in {"conv1d", "conv2d"}:
            return self.filters
        return None

    def with_changes(self, **changes: Any) -> "LayerSpec":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.kind,
            "units": self.units,
            "filters": self.filters,
            "kernelSize": self.kernel_size,
            "activation": self.activation,
            "inputShape": list(self.input_shape) if self.input_shape else None,
            "id": self.id,
            "customActivation": self.custom_activation,
        }
        return {key: value for key, value in data.items() if value not in (None, "")}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LayerSpec":
        """Build a layer from either snake_case or camelCase keys."""
        input_shape = data.get("input_shape", data.get("inputShape"))
        return cls(
            kind=str(data.get("kind", data.get("type", "dense"))),
            units=_optional_int(data.get("units")),
            filters=_optional_int(data.get("filters")),
            kernel_size=_optional_int(data.get("kernel_size", data.get("kernelSize"))),
            activation=str(data.get("activation") or "relu"),
            input_shape=[int(v) for v in input_shape] if input_shape else None,
            id=str(data.get("id") or ""),
            custom_activation=data.get("custom_activation", data.get("customActivation")),
        )


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


@dataclass
class ModelConfig:
    """Ordered layer list plus the loss and metric selectors."""

    layers: List[LayerSpec] = field(default_factory=list)
    loss: str = "mse"
    metrics: List[str] = field(default_factory=lambda: ["mae"])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "layers": [layer.to_dict() for layer in self.layers],
            "loss": self.loss,
            "metrics": list(self.metrics),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelConfig":
        return cls(
            layers=[LayerSpec.from_dict(layer) for layer in data.get("layers") or []],
            loss=str(data.get("loss") or "mse"),
            metrics=list(data.get("metrics") or []),
        )


@dataclass(frozen=True)
class TrainingConfig:
    """Hyperparameters copied into the worker when a run starts."""

    epochs: int = 100
    batch_size: int = 32
    learning_rate: float = 1e-3
    optimizer: str = "adam"
    validation_split: float = 0.2

    def __post_init__(self) -> None:
        if int(self.epochs) <= 0:
            raise ConfigurationError(f"epochs must be positive, got {self.epochs}")
        if int(self.batch_size) <= 0:
            raise ConfigurationError(f"batch_size must be positive, got {self.batch_size}")
        if float(self.learning_rate) <= 0:
            raise ConfigurationError(f"learning_rate must be positive, got {self.learning_rate}")
        if str(self.optimizer).lower() not in OPTIMIZERS:
            raise ConfigurationError(
                f"optimizer must be one of {', '.join(OPTIMIZERS)}, got {self.optimizer!r}"
            )
        if not 0.0 <= float(self.validation_split) < 1.0:
            raise ConfigurationError(
                f"validation_split must be in [0, 1), got {self.validation_split}"
            )

    @classmethod
    def from_hyperparameters(cls, hp: Dict[str, Any]) -> "TrainingConfig":
        defaults = cls()
        return cls(
            epochs=int(hp.get("epochs", defaults.epochs)),
            batch_size=int(hp.get("batch_size", hp.get("batchSize", defaults.batch_size))),
            learning_rate=float(hp.get("learning_rate", hp.get("learningRate", defaults.learning_rate))),
            optimizer=str(hp.get("optimizer", defaults.optimizer)).lower(),
            validation_split=float(
                hp.get("validation_split", hp.get("validationSplit", defaults.validation_split))
            ),
        )

    def to_wire(self) -> Dict[str, Any]:
        return {
            "epochs": self.epochs,
            "batchSize": self.batch_size,
            "learningRate": self.learning_rate,
            "optimizer": self.optimizer,
        }


@dataclass
class Dataset:
    """Training view of a dataset: index-aligned feature and target rows."""

    xs: List[Vector]
    ys: List[Vector]
    problem_type: str = "regression"
    classes: Optional[List[Any]] = None

    def __post_init__(self) -> None:
        if not self.xs or not self.ys:
            raise DatasetError("Dataset must contain at least one sample")
        if len(self.xs) != len(self.ys):
            raise DatasetError(
                f"Dataset has {len(self.xs)} feature rows but {len(self.ys)} target rows"
            )
        self.xs = [_as_row(row, "feature", idx) for idx, row in enumerate(self.xs)]
        self.ys = [_as_row(row, "target", idx) for idx, row in enumerate(self.ys)]
        for name, rows in (("feature", self.xs), ("target", self.ys)):
            width = len(rows[0])
            if width == 0:
                raise DatasetError(f"Dataset {name} rows must not be empty")
            for idx, row in enumerate(rows):
                if len(row) != width:
                    raise DatasetError(
                        f"Dataset {name} row {idx} has {len(row)} values, expected {width}"
                    )

    def __len__(self) -> int:
        return len(self.xs)

    @property
    def input_width(self) -> int:
        return len(self.xs[0])

    @property
    def output_width(self) -> int:
        return len(self.ys[0])


def _as_row(row: Union[Number, Sequence[Number]], name: str, index: int) -> Vector:
    if isinstance(row, (int, float)):
        return [float(row)]
    try:
        return [float(value) for value in row]
    except (TypeError, ValueError) as exc:
        raise DatasetError(f"Dataset {name} row {index} is not numeric: {row!r}") from exc


@dataclass
class MetricPoint:
    """Metrics recorded once per completed epoch."""

    epoch: int
    loss: float
    accuracy: Optional[float] = None
    val_loss: Optional[float] = None
    val_accuracy: Optional[float] = None
    timestamp: int = 0

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "MetricPoint":
        return cls(
            epoch=int(payload["epoch"]),
            loss=float(payload["loss"]),
            accuracy=_optional_float(payload.get("accuracy")),
            val_loss=_optional_float(payload.get("valLoss")),
            val_accuracy=_optional_float(payload.get("valAccuracy")),
            timestamp=int(payload.get("timestamp") or 0),
        )


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


@dataclass
class LayerActivationSnapshot:
    """Most recent known state of one layer."""

    layer_id: str
    layer_name: str
    activations: Vector
    gradients: Optional[Vector] = None
    weights: Optional[List[Vector]] = None
    biases: Optional[Vector] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "layerId": self.layer_id,
            "layerName": self.layer_name,
            "activations": list(self.activations),
            "gradients": list(self.gradients) if self.gradients is not None else None,
            "weights": self.weights,
            "biases": self.biases,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "LayerActivationSnapshot":
        return cls(
            layer_id=str(payload["layerId"]),
            layer_name=str(payload.get("layerName") or payload["layerId"]),
            activations=list(payload.get("activations") or []),
            gradients=payload.get("gradients"),
            weights=payload.get("weights"),
            biases=payload.get("biases"),
        )


@dataclass
class PredictionSample:
    """Model output for one dataset row, aligned by index."""

    index: int
    prediction: Union[float, Vector]
    input: Union[float, Vector]
    actual: Union[float, Vector]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "PredictionSample":
        return cls(
            index=int(payload["index"]),
            prediction=payload["prediction"],
            input=payload["input"],
            actual=payload["actual"],
        )


@dataclass(frozen=True)
class ShapeIssue:
    """A detected incompatibility between the architecture and the data."""

    kind: str  # 'input_mismatch', 'layer_mismatch', 'output_mismatch'
    layer_index: int
    layer_id: str
    layer_name: str
    expected: int
    actual: int
    message: str


@dataclass(frozen=True)
class ShapeFix:
    """A suggested correction; carries the replacement value rather than applying it."""

    kind: str  # 'adjust_input', 'adjust_layer', 'adjust_output'
    layer_index: int
    layer_id: str
    description: str
    layers: Optional[tuple] = None
    input_size: Optional[int] = None

    def action(self) -> Union[List[LayerSpec], int]:
        """Return the revised layer list or the revised input size."""
        if self.layers is not None:
            return [layer.with_changes() for layer in self.layers]
        if self.input_size is not None:
            return self.input_size
        raise ValueError(f"Shape fix '{self.description}' carries no corrective value")


@dataclass(frozen=True)
class ShapeValidationResult:
    """Outcome of a shape validation pass."""

    is_valid: bool
    issues: tuple = ()
    suggestions: tuple = ()
