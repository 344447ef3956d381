"""Numeric engine facade over PyTorch.

A small sequential-model abstraction with the contract the training worker
relies on: layers are added in order, the model is compiled with an optimizer,
loss and metrics, then trained batch by batch or through ``fit`` with per-batch
and per-epoch callbacks. Every heavy object (models, data slices, truncated
layer views) is a :class:`Disposable` owned by exactly one context.

Disposal is strict: using or disposing a released resource raises
:class:`ResourceDisposedError`. Callers that cannot guarantee ordering go
through :func:`safe_dispose`, which logs and swallows disposal failures.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

try:
    import torch
    from torch import nn
except Exception:
    torch = None  # type: ignore
    nn = None  # type: ignore

from .losses import LossSpec, build_loss, compute_metric, normalize_metrics
from .optimizers import build_optimizer
from .types import ResourceDisposedError, ShapeMismatchError, classify_error, ErrorType
from .utils import require_torch


logger = logging.getLogger(__name__)


class Disposable:
    """Base class for engine resources with explicit, single-shot disposal."""

    _label = "resource"

    def __init__(self) -> None:
        self._disposed = False

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def _check_alive(self) -> None:
        if self._disposed:
            raise ResourceDisposedError(f"{self._label} has already been disposed")

    def _release(self) -> None:
        """Drop references to owned tensors/modules."""

    def dispose(self) -> None:
        self._check_alive()
        try:
            self._release()
        finally:
            self._disposed = True


def safe_dispose(resource: Optional[Any], label: str = "resource") -> bool:
    """Dispose a resource, logging instead of raising on failure.

    Returns True when the resource was released by this call.
    """
    if resource is None:
        return False
    try:
        resource.dispose()
        return True
    except Exception as exc:
        logger.warning("Ignoring error while disposing %s: %s", label, exc)
        return False


class DataSlice(Disposable):
    """Paired feature/target tensors for one partition of a dataset."""

    _label = "data slice"

    def __init__(self, xs: "torch.Tensor", ys: "torch.Tensor") -> None:
        super().__init__()
        if xs.shape[0] != ys.shape[0]:
            raise ShapeMismatchError(
                f"Feature rows ({xs.shape[0]}) and target rows ({ys.shape[0]}) differ"
            )
        self._xs = xs
        self._ys = ys

    @classmethod
    def from_rows(
        cls,
        xs: Sequence[Sequence[float]],
        ys: Sequence[Sequence[float]],
        device: Optional["torch.device"] = None,
    ) -> "DataSlice":
        require_torch()
        return cls(
            torch.tensor(xs, dtype=torch.float32, device=device),
            torch.tensor(ys, dtype=torch.float32, device=device),
        )

    @property
    def xs(self) -> "torch.Tensor":
        self._check_alive()
        return self._xs

    @property
    def ys(self) -> "torch.Tensor":
        self._check_alive()
        return self._ys

    def __len__(self) -> int:
        self._check_alive()
        return int(self._xs.shape[0])

    def slice(self, start: int, stop: Optional[int] = None) -> "DataSlice":
        """Positional sub-range as a new, independently owned slice."""
        self._check_alive()
        return DataSlice(self._xs[start:stop].clone(), self._ys[start:stop].clone())

    def _release(self) -> None:
        self._xs = None  # type: ignore[assignment]
        self._ys = None  # type: ignore[assignment]


if nn is not None:
    class Reshape(nn.Module):
        """Reshape each sample to a fixed per-sample shape."""

        def __init__(self, shape: Sequence[int]) -> None:
            super().__init__()
            self.shape = tuple(int(v) for v in shape)

        def forward(self, x: "torch.Tensor") -> "torch.Tensor":
            return x.reshape(x.shape[0], *self.shape)

        def extra_repr(self) -> str:
            return f"shape={self.shape}"

else:  # pragma: no cover - torch missing path
    Reshape = None  # type: ignore


def build_activation(name: Optional[str]) -> Optional["nn.Module"]:
    """Map an activation selector to a module; None means linear."""
    require_torch()
    key = (name or "linear").replace("-", "_").lower()
    if key in {"linear", "none", "identity"}:
        return None
    mapping = {
        "relu": nn.ReLU,
        "relu6": nn.ReLU6,
        "sigmoid": nn.Sigmoid,
        "tanh": nn.Tanh,
        "elu": nn.ELU,
        "selu": nn.SELU,
        "softplus": nn.Softplus,
        "softsign": nn.Softsign,
        "leaky_relu": nn.LeakyReLU,
        "leakyrelu": nn.LeakyReLU,
    }
    if key == "softmax":
        return nn.Softmax(dim=1)
    if key in mapping:
        return mapping[key]()
    raise ValueError(f"Unknown activation '{name}'")


class EngineLayer:
    """One layer of a :class:`SequentialModel`.

    ``block`` is the full computation (optional reshape, core op, activation);
    ``core`` is the parametric module whose weights are reported.
    """

    def __init__(
        self,
        name: str,
        kind: str,
        block: "nn.Module",
        *,
        core: Optional["nn.Module"] = None,
        output_shape: Sequence[int] = (),
        activation: str = "linear",
        layer_id: str = "",
    ) -> None:
        self.name = name
        self.layer_id = layer_id or name
        self.kind = kind
        self.block = block
        self.core = core
        self.output_shape = tuple(int(v) for v in output_shape)
        self.activation = activation

    def get_weights(self) -> List["torch.Tensor"]:
        """Detached copies of the kernel and bias, if the layer has any."""
        if self.core is None:
            return []
        weights = []
        for attr in ("weight", "bias"):
            param = getattr(self.core, attr, None)
            if param is not None:
                weights.append(param.detach().cpu().clone())
        return weights

    def __repr__(self) -> str:
        return f"EngineLayer(name={self.name!r}, kind={self.kind!r}, output_shape={self.output_shape})"


class Callback:
    """Hooks invoked by :meth:`SequentialModel.fit`; override what you need.

    Raising from a hook aborts ``fit``; batches already recorded stay recorded.
    """

    def on_batch_end(self, batch: int, logs: Dict[str, float]) -> None:
        pass

    def on_epoch_end(self, epoch: int, logs: Dict[str, float]) -> None:
        pass


@dataclass
class EpochProgress:
    """Resumable position inside an epoch plus running metric sums."""

    epoch: int = 0
    next_batch: int = 0
    samples: int = 0
    sums: Dict[str, float] = field(default_factory=dict)

    def record(self, logs: Dict[str, float], count: int) -> None:
        for key, value in logs.items():
            self.sums[key] = self.sums.get(key, 0.0) + float(value) * count
        self.samples += count
        self.next_batch += 1

    def averages(self) -> Dict[str, float]:
        if not self.samples:
            return {}
        return {key: value / self.samples for key, value in self.sums.items()}

    def advance(self, epoch: int) -> None:
        self.epoch = epoch
        self.next_batch = 0
        self.samples = 0
        self.sums = {}


def num_batches(num_samples: int, batch_size: int) -> int:
    return max(1, int(math.ceil(num_samples / float(batch_size))))


class LayerView(Disposable):
    """Temporary model computing the output of the first ``depth`` layers."""

    _label = "layer view"

    def __init__(self, blocks: List["nn.Module"], name: str) -> None:
        super().__init__()
        self._blocks = blocks
        self.name = name

    def predict(self, xs: "torch.Tensor") -> "torch.Tensor":
        self._check_alive()
        with torch.no_grad():
            out = xs
            for block in self._blocks:
                out = block(out)
        return out

    def _release(self) -> None:
        self._blocks = []


class SequentialModel(Disposable):
    """Ordered stack of layers trained with a single optimizer."""

    _label = "model"

    def __init__(self, name: str = "sequential", device: Optional["torch.device"] = None) -> None:
        require_torch()
        super().__init__()
        self.name = name
        self.device = device or torch.device("cpu")
        self._layers: List[EngineLayer] = []
        self._net = nn.ModuleList()
        self._optimizer = None
        self._loss: Optional[LossSpec] = None
        self._metrics: List[str] = []

    @property
    def layers(self) -> List[EngineLayer]:
        self._check_alive()
        return list(self._layers)

    @property
    def is_compiled(self) -> bool:
        return self._optimizer is not None and self._loss is not None

    @property
    def metrics(self) -> List[str]:
        return list(self._metrics)

    @property
    def loss_name(self) -> Optional[str]:
        return self._loss.name if self._loss else None

    def add(self, layer: EngineLayer) -> None:
        self._check_alive()
        if self._optimizer is not None:
            raise RuntimeError("Cannot add layers to a compiled model")
        layer.block.to(self.device)
        self._layers.append(layer)
        self._net.append(layer.block)

    def compile(self, *, optimizer: str, learning_rate: float, loss: str, metrics: Sequence[str] = ()) -> None:
        self._check_alive()
        if not self._layers:
            raise RuntimeError("Cannot compile a model without layers")
        self._loss = build_loss(loss)
        self._metrics = normalize_metrics(list(metrics))
        self._optimizer = build_optimizer(optimizer, self._net.parameters(), lr=learning_rate)

    def count_params(self) -> int:
        self._check_alive()
        return int(sum(p.numel() for p in self._net.parameters()))

    def _forward(self, xs: "torch.Tensor") -> "torch.Tensor":
        out = xs
        try:
            for block in self._net:
                out = block(out)
        except RuntimeError as exc:
            if classify_error(exc) is ErrorType.SHAPE_MISMATCH:
                raise ShapeMismatchError(str(exc)) from exc
            raise
        return out

    def _batch_logs(self, outputs: "torch.Tensor", targets: "torch.Tensor", loss: "torch.Tensor") -> Dict[str, float]:
        logs = {"loss": float(loss.detach())}
        for metric in self._metrics:
            logs[metric] = compute_metric(metric, outputs.detach(), targets)
        return logs

    def train_on_batch(self, xs: "torch.Tensor", ys: "torch.Tensor") -> Dict[str, float]:
        """Run one optimizer step and return the batch logs."""
        self._check_alive()
        if not self.is_compiled:
            raise RuntimeError("Model must be compiled before training")
        self._net.train()
        self._optimizer.zero_grad()
        outputs = self._forward(xs)
        loss = self._loss.criterion(outputs, ys)
        loss.backward()
        self._optimizer.step()
        return self._batch_logs(outputs, ys, loss)

    def evaluate(self, xs: "torch.Tensor", ys: "torch.Tensor") -> Dict[str, float]:
        self._check_alive()
        if not self.is_compiled:
            raise RuntimeError("Model must be compiled before evaluation")
        self._net.eval()
        with torch.no_grad():
            outputs = self._forward(xs)
            loss = self._loss.criterion(outputs, ys)
        return self._batch_logs(outputs, ys, loss)

    def predict(self, xs: "torch.Tensor") -> "torch.Tensor":
        self._check_alive()
        self._net.eval()
        with torch.no_grad():
            return self._forward(xs)

    def fit(
        self,
        data: DataSlice,
        *,
        batch_size: int,
        epochs: int = 1,
        initial_epoch: int = 0,
        validation_data: Optional[DataSlice] = None,
        callbacks: Optional[Callback] = None,
        progress: Optional[EpochProgress] = None,
        max_batches: Optional[int] = None,
    ) -> List[Dict[str, float]]:
        """Train in order over ``data`` and return per-epoch logs.

        When ``progress`` is given, training resumes at its epoch and batch and
        the object is updated in place, so an aborted call can be continued.
        ``max_batches`` bounds the number of batches run by this call.
        """
        self._check_alive()
        callbacks = callbacks or Callback()
        if progress is None:
            progress = EpochProgress(epoch=initial_epoch)
        last_epoch = progress.epoch + epochs
        total = len(data)
        batches = num_batches(total, batch_size)
        history: List[Dict[str, float]] = []
        ran = 0

        while progress.epoch < last_epoch:
            while progress.next_batch < batches:
                if max_batches is not None and ran >= max_batches:
                    return history
                batch = progress.next_batch
                start = batch * batch_size
                xs = data.xs[start:start + batch_size]
                ys = data.ys[start:start + batch_size]
                logs = self.train_on_batch(xs, ys)
                progress.record(logs, int(xs.shape[0]))
                ran += 1
                callbacks.on_batch_end(batch, logs)

            epoch = progress.epoch
            epoch_logs = progress.averages()
            if validation_data is not None and len(validation_data) > 0:
                val_logs = self.evaluate(validation_data.xs, validation_data.ys)
                epoch_logs.update({f"val_{key}": value for key, value in val_logs.items()})
            progress.advance(epoch + 1)
            history.append(epoch_logs)
            callbacks.on_epoch_end(epoch, epoch_logs)
        return history

    def get_weights(self) -> List["torch.Tensor"]:
        self._check_alive()
        weights: List["torch.Tensor"] = []
        for layer in self._layers:
            weights.extend(layer.get_weights())
        return weights

    def truncated(self, index: int) -> LayerView:
        """Return a disposable view computing the output of layer ``index``."""
        self._check_alive()
        if not 0 <= index < len(self._layers):
            raise IndexError(f"Layer index {index} out of range for {len(self._layers)} layers")
        blocks = [layer.block for layer in self._layers[: index + 1]]
        return LayerView(blocks, name=self._layers[index].name)

    def summary(self) -> List[Dict[str, Any]]:
        self._check_alive()
        rows = []
        for layer in self._layers:
            params = sum(p.numel() for p in layer.block.parameters())
            rows.append(
                {
                    "name": layer.name,
                    "kind": layer.kind,
                    "output_shape": list(layer.output_shape),
                    "activation": layer.activation,
                    "params": int(params),
                }
            )
        return rows

    def _release(self) -> None:
        self._optimizer = None
        self._loss = None
        self._layers = []
        self._net = nn.ModuleList()
